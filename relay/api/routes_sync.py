from __future__ import annotations

import json
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Body, Depends, HTTPException, Request
from pydantic import ValidationError

from relay.api.deps import get_ingestion
from relay.contracts.events import SyncRequest, SyncResponse
from relay.infra.auth import ROLE_EDGE, ROLE_OPERATOR, require_auth, require_role
from relay.services.ingestion import IngestionService, build_sync_response
from relay.settings import settings

router = APIRouter(prefix="/sync/v1", tags=["sync"])
log = structlog.get_logger(__name__)


@router.post("/events", response_model=SyncResponse, response_model_exclude_none=True)
def ingest_events(
    request: Request,
    body: Dict[str, Any] = Body(...),
    svc: IngestionService = Depends(get_ingestion),
):
    claims = require_auth(request)
    require_role(claims, [ROLE_EDGE, ROLE_OPERATOR])

    try:
        req = SyncRequest.model_validate(body)
    except ValidationError as e:
        raise HTTPException(
            status_code=400,
            detail={"error": "Invalid request body", "details": json.loads(e.json(include_url=False))},
        )
    if len(req.events) > settings.SYNC_MAX_EVENTS:
        raise HTTPException(
            status_code=400,
            detail={"error": "Invalid request body", "details": [f"at most {settings.SYNC_MAX_EVENTS} events per batch"]},
        )

    log.info("sync_request_received", origin_id=req.origin_id, event_count=len(req.events), cursor=req.cursor)
    try:
        result = svc.ingest(origin_id=req.origin_id, events=req.events)
    except Exception as e:
        log.exception("sync_ingest_failed", origin_id=req.origin_id, error=str(e))
        raise HTTPException(status_code=500, detail="Internal server error during event ingestion")
    return build_sync_response(result, req.cursor)
