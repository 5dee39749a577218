from __future__ import annotations

from datetime import datetime, timezone

import psycopg2
import structlog
from fastapi import APIRouter
from fastapi.responses import JSONResponse

from relay.infra.db import Postgres
from relay.settings import settings

router = APIRouter(tags=["health"])
log = structlog.get_logger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/health")
def health():
    return {"status": "ok", "timestamp": _now()}


@router.get("/ready")
def ready():
    """Readiness: the database answers. Memory mode is always ready."""
    if settings.DB_MODE == "memory":
        return {"status": "ready", "timestamp": _now(), "checks": {"database": "memory"}}
    healthy = False
    try:
        db = Postgres(settings.DATABASE_URL)
        try:
            healthy = db.ping()
        finally:
            db.close()
    except psycopg2.Error as e:
        log.warning("readiness_db_unhealthy", error=str(e))
    if not healthy:
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "timestamp": _now(), "checks": {"database": "unhealthy"}},
        )
    return {"status": "ready", "timestamp": _now(), "checks": {"database": "healthy"}}
