from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog
from pydantic import ValidationError

from relay.contracts.events import (
    CaseUpsertedPayload,
    EventIn,
    PreviewPublishedPayload,
    SlideRegisteredPayload,
    UnprojectedPayload,
    parse_payload,
)
from relay.services.read_models import ReadModelStore

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ProjectionResult:
    success: bool
    error: Optional[str] = None
    skipped: bool = False


class Projector:
    """Applies one stored event to the read models.

    Rules per event type:
      - CaseUpserted: full replace of title/patient_ref/status/updated_at
        (last writer by arrival wins; payload timestamps are not compared).
      - SlideRegistered: merge; absent values keep what is already stored,
        and a first registration starts from the column defaults.
      - PreviewPublished: resolve the target slide (exact id, else the single
        preview-less slide of the case), mark it and upsert its preview asset.
        No target means skip, not failure: a later SlideRegistered may still
        create the linkage, and replay picks it up.
      - anything else: stored upstream, projected as a no-op.

    All writes for one event commit together. Re-projecting the same event
    yields the same state.
    """

    def __init__(self, read_models: ReadModelStore) -> None:
        self.read_models = read_models

    def project(self, event: EventIn) -> ProjectionResult:
        try:
            payload = parse_payload(event.event_type, event.payload)
        except ValidationError as e:
            return ProjectionResult(
                success=False,
                error=f"Invalid {event.event_type} payload: {e.error_count()} error(s): {_summarize(e)}",
            )

        if isinstance(payload, UnprojectedPayload):
            log.debug("event_not_projected", event_id=event.id, event_type=event.event_type)
            return ProjectionResult(success=True)

        with self.read_models.atomic():
            if isinstance(payload, CaseUpsertedPayload):
                return self._case_upserted(event, payload)
            if isinstance(payload, SlideRegisteredPayload):
                return self._slide_registered(event, payload)
            return self._preview_published(event, payload)

    def _case_upserted(self, event: EventIn, p: CaseUpsertedPayload) -> ProjectionResult:
        self.read_models.upsert_case(
            {
                "case_id": p.case_id,
                "title": p.title,
                "patient_ref": p.patient_ref,
                "status": p.status,
                "created_at": p.created_at,
                "updated_at": p.updated_at,
                "last_event_id": event.id,
                "last_occurred_at": event.occurred_at,
            }
        )
        return ProjectionResult(success=True)

    def _slide_registered(self, event: EventIn, p: SlideRegisteredPayload) -> ProjectionResult:
        tracking = {"last_event_id": event.id, "last_occurred_at": event.occurred_at}
        fields: Dict[str, Any] = dict(tracking)
        if p.case_id is not None:
            fields["case_id"] = p.case_id
        if p.filename:
            fields["filename"] = p.filename
        if p.width is not None:
            fields["width"] = p.width
        if p.height is not None:
            fields["height"] = p.height
        if p.mpp is not None:
            fields["mpp"] = p.mpp
        if p.scanner is not None:
            fields["scanner"] = p.scanner
        self.read_models.merge_slide(p.slide_id, fields)
        return ProjectionResult(success=True)

    def _resolve_preview_target(self, p: PreviewPublishedPayload) -> Optional[str]:
        if self.read_models.get_slide(p.slide_id) is not None:
            return p.slide_id
        candidates = self.read_models.slides_for_case(p.case_id, has_preview=False)
        if len(candidates) == 1:
            return candidates[0]["slide_id"]
        log.warning(
            "preview_target_unresolved",
            slide_id=p.slide_id,
            case_id=p.case_id,
            candidates=len(candidates),
        )
        return None

    def _preview_published(self, event: EventIn, p: PreviewPublishedPayload) -> ProjectionResult:
        target = self._resolve_preview_target(p)
        if target is None:
            return ProjectionResult(success=True, skipped=True)
        if target != p.slide_id:
            log.info("preview_slide_remapped", payload_slide_id=p.slide_id, slide_id=target, case_id=p.case_id)

        tracking = {"last_event_id": event.id, "last_occurred_at": event.occurred_at}
        self.read_models.update_slide(target, {"has_preview": True, **tracking})
        self.read_models.upsert_preview_asset(
            {
                "slide_id": target,
                "case_id": p.case_id,
                "storage_bucket": p.storage_bucket,
                "storage_region": p.storage_region,
                "storage_endpoint": p.storage_endpoint,
                "storage_prefix": p.storage_prefix,
                "thumb_key": p.thumb_key,
                "manifest_key": p.manifest_key,
                "tiles_prefix": p.normalized_tiles_prefix,
                "max_preview_level": p.max_preview_level,
                "tile_size": p.tile_size,
                "format": p.format,
                "preview_width": p.preview_width,
                "preview_height": p.preview_height,
                "published_at": event.occurred_at,
                **tracking,
            }
        )
        return ProjectionResult(success=True)


def _summarize(e: ValidationError) -> str:
    parts = []
    for err in e.errors(include_url=False):
        loc = ".".join(str(x) for x in err.get("loc", ())) or "payload"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)
