from __future__ import annotations

from uuid import uuid4

import structlog
from fastapi import Request

CORRELATION_HEADER = "X-Correlation-ID"


async def correlation_id_middleware(request: Request, call_next):
    """Bind a correlation id for the request's log lines and echo it back."""
    correlation_id = (
        request.headers.get(CORRELATION_HEADER)
        or request.headers.get("X-Request-ID")
        or str(uuid4())
    )
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
    try:
        response = await call_next(request)
    finally:
        structlog.contextvars.unbind_contextvars("correlation_id")
    response.headers[CORRELATION_HEADER] = correlation_id
    return response
