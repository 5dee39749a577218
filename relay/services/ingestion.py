from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

import structlog

from relay.contracts.events import EventIn, RejectedEvent, SyncResponse
from relay.services.event_log import EventLog
from relay.services.projector import Projector
from relay.services.read_models import ReadModelStore

log = structlog.get_logger(__name__)


@dataclass
class IngestionResult:
    accepted: List[str] = field(default_factory=list)
    duplicated: List[str] = field(default_factory=list)
    rejected: List[RejectedEvent] = field(default_factory=list)


class IngestionService:
    """Edge event intake: origin check -> dedupe -> atomic append -> project.

    The event log is the source of truth and read models are a rebuildable
    cache, so projection runs only after the append has committed and is
    never rolled back. A projection failure is logged and the event stays
    accepted. A storage failure during the append propagates to the caller,
    who retries the whole batch; since duplicates are filtered before the
    append, that retry is safe.
    """

    def __init__(self, event_log: EventLog, read_models: ReadModelStore) -> None:
        self.event_log = event_log
        self.projector = Projector(read_models)

    def ingest(self, *, origin_id: str, events: List[EventIn]) -> IngestionResult:
        result = IngestionResult()
        if not events:
            return result

        valid: List[EventIn] = []
        for ev in events:
            if ev.origin_id != origin_id:
                result.rejected.append(
                    RejectedEvent(
                        event_id=ev.id,
                        reason=f"Event origin_id '{ev.origin_id}' does not match request origin_id '{origin_id}'",
                    )
                )
            else:
                valid.append(ev)
        if not valid:
            self._log_summary(origin_id, result)
            return result

        existing = self.event_log.existing_ids(ev.id for ev in valid)
        fresh: List[EventIn] = []
        seen = set(existing)
        for ev in valid:
            if ev.id in seen:
                result.duplicated.append(ev.id)
                continue
            seen.add(ev.id)
            fresh.append(ev)

        if fresh:
            inserted = set(self.event_log.append_batch([ev.to_row() for ev in fresh]))
            for ev in fresh:
                if ev.id not in inserted:
                    # Lost a unique-key race with a concurrent batch.
                    result.duplicated.append(ev.id)
                    continue
                result.accepted.append(ev.id)
                self._project(ev)

        self._log_summary(origin_id, result)
        return result

    def _project(self, ev: EventIn) -> None:
        try:
            outcome = self.projector.project(ev)
        except Exception as e:
            log.exception("projection_exception", event_id=ev.id, event_type=ev.event_type, error=str(e))
            return
        if not outcome.success:
            log.error("projection_failed", event_id=ev.id, event_type=ev.event_type, error=outcome.error)
        elif outcome.skipped:
            log.warning("projection_skipped", event_id=ev.id, event_type=ev.event_type)

    def _log_summary(self, origin_id: str, result: IngestionResult) -> None:
        log.info(
            "events_ingested",
            origin_id=origin_id,
            accepted=len(result.accepted),
            duplicated=len(result.duplicated),
            rejected=len(result.rejected),
        )


def build_sync_response(result: IngestionResult, cursor: Optional[str] = None) -> SyncResponse:
    return SyncResponse(
        accepted=len(result.accepted),
        duplicated=len(result.duplicated),
        rejected=list(result.rejected),
        last_cursor=cursor,
    )
