from __future__ import annotations

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request

from relay.api.deps import get_read_models, get_signer
from relay.contracts.models import (
    CaseDetail,
    CaseListItem,
    CaseListResponse,
    PreviewResponse,
    PreviewTiles,
    SlideInfo,
    TileSignRequest,
    TileSignResponse,
)
from relay.infra.auth import ROLE_OPERATOR, ROLE_VIEWER, require_auth, require_role
from relay.infra.storage import InvalidKeyError, PreviewSigner, extract_slide_id_from_key, key_within_prefix
from relay.services.read_models import ReadModelStore
from relay.settings import settings

router = APIRouter(prefix="/api/v1", tags=["read"])
log = structlog.get_logger(__name__)


@router.get("/cases", response_model=CaseListResponse)
def list_cases(
    request: Request,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    store: ReadModelStore = Depends(get_read_models),
):
    claims = require_auth(request)
    require_role(claims, [ROLE_OPERATOR, ROLE_VIEWER])
    rows, total = store.list_cases(limit=limit, offset=offset)
    return CaseListResponse(
        cases=[
            CaseListItem(
                case_id=r["case_id"],
                title=r["title"],
                patient_ref=r["patient_ref"],
                status=r["status"],
                updated_at=r["updated_at"],
                slides_count=int(r.get("slides_count") or 0),
            )
            for r in rows
        ],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/cases/{case_id}", response_model=CaseDetail)
def get_case(request: Request, case_id: str, store: ReadModelStore = Depends(get_read_models)):
    claims = require_auth(request)
    require_role(claims, [ROLE_OPERATOR, ROLE_VIEWER])
    c = store.get_case(case_id)
    if not c:
        raise HTTPException(status_code=404, detail="Case not found")
    slides = store.slides_for_case(case_id)
    return CaseDetail(
        case_id=c["case_id"],
        title=c["title"],
        patient_ref=c["patient_ref"],
        status=c["status"],
        created_at=c["created_at"],
        updated_at=c["updated_at"],
        slides=[
            SlideInfo(
                slide_id=s["slide_id"],
                filename=s["filename"],
                width=s["width"],
                height=s["height"],
                mpp=s["mpp"],
                scanner=s.get("scanner"),
                has_preview=s["has_preview"],
                updated_at=s["updated_at"],
            )
            for s in slides
        ],
    )


@router.get("/slides/{slide_id}/preview", response_model=PreviewResponse)
def get_slide_preview(
    request: Request,
    slide_id: str,
    store: ReadModelStore = Depends(get_read_models),
    signer: PreviewSigner = Depends(get_signer),
):
    claims = require_auth(request)
    require_role(claims, [ROLE_OPERATOR, ROLE_VIEWER])
    p = store.get_preview_asset(slide_id)
    if not p:
        raise HTTPException(status_code=404, detail="Preview not found for this slide")

    def _sign(key: str) -> str:
        return signer.sign(
            key,
            settings.SIGNED_URL_TTL_SECONDS,
            p["storage_bucket"],
            endpoint=p["storage_endpoint"],
            region=p["storage_region"],
        )

    try:
        thumb_url = _sign(p["thumb_key"])
        manifest_url = _sign(p["manifest_key"])
    except InvalidKeyError as e:
        log.error("preview_key_invalid", slide_id=slide_id, error=str(e))
        raise HTTPException(status_code=500, detail="Stored preview key is invalid")

    return PreviewResponse(
        slide_id=p["slide_id"],
        case_id=p.get("case_id"),
        thumb_url=thumb_url,
        manifest_url=manifest_url,
        tiles=PreviewTiles(
            max_preview_level=p["max_preview_level"],
            tile_size=p["tile_size"],
            format=p["format"],
            preview_width=p.get("preview_width"),
            preview_height=p.get("preview_height"),
        ),
    )


def _allowed_prefix(p: dict, key: str) -> Optional[str]:
    thumb_dir = p["thumb_key"].rsplit("/", 1)[0] if "/" in p["thumb_key"] else p["thumb_key"]
    allowed = [p["storage_prefix"], p["tiles_prefix"], thumb_dir]
    return next((a for a in allowed if key_within_prefix(key, a)), None)


@router.post("/tiles/sign", response_model=TileSignResponse)
def sign_tile(
    request: Request,
    body: TileSignRequest,
    store: ReadModelStore = Depends(get_read_models),
    signer: PreviewSigner = Depends(get_signer),
):
    claims = require_auth(request)
    require_role(claims, [ROLE_OPERATOR, ROLE_VIEWER])

    slide_id = extract_slide_id_from_key(body.key)
    if not slide_id:
        raise HTTPException(status_code=403, detail="Invalid key format - cannot determine slide_id")
    p = store.get_preview_asset(slide_id)
    prefix = _allowed_prefix(p, body.key) if p else None
    if prefix is None:
        # Remapped previews keep the published slide id in their storage keys.
        fallback = store.find_preview_by_prefix(body.key)
        if fallback is not None:
            p, prefix = fallback, _allowed_prefix(fallback, body.key)
    if not p:
        raise HTTPException(status_code=403, detail="No preview found for this slide")
    if prefix is None:
        raise HTTPException(status_code=403, detail="Key is not within allowed preview prefix")

    url = signer.sign_within_prefix(
        body.key,
        prefix,
        body.expires_seconds,
        p["storage_bucket"],
        endpoint=p["storage_endpoint"],
        region=p["storage_region"],
    )
    log.info("tile_url_signed", slide_id=p["slide_id"], key=body.key, bucket=p["storage_bucket"])
    return TileSignResponse(url=url)
