from __future__ import annotations

import argparse
from typing import Optional

import structlog
from pydantic import ValidationError

from relay.contracts.events import EventIn
from relay.infra.db import Postgres
from relay.infra.logging import configure_logging
from relay.services.event_log import EventLog, PostgresEventLog
from relay.services.projector import Projector
from relay.services.read_models import PostgresReadModelStore, ReadModelStore

log = structlog.get_logger(__name__)


def replay(event_log: EventLog, read_models: ReadModelStore, limit: Optional[int] = None) -> dict:
    """Re-project stored events in arrival order onto the given read models.

    Projections are idempotent upserts, so replaying over existing rows
    converges to the same state as replaying into empty tables.
    """
    projector = Projector(read_models)
    stats = {"projected": 0, "failed": 0, "skipped": 0}
    for n, row in enumerate(event_log.iter_all()):
        if limit is not None and n >= limit:
            break
        try:
            ev = EventIn.model_validate(row)
        except ValidationError as e:
            log.error("replay_event_invalid", event_id=row.get("event_id"), error=str(e))
            stats["failed"] += 1
            continue
        outcome = projector.project(ev)
        if not outcome.success:
            log.error("replay_projection_failed", event_id=ev.id, event_type=ev.event_type, error=outcome.error)
            stats["failed"] += 1
        elif outcome.skipped:
            stats["skipped"] += 1
        else:
            stats["projected"] += 1
    log.info("replay_done", **stats)
    return stats


def main(argv=None):
    parser = argparse.ArgumentParser(description="Rebuild read models from the event log")
    parser.add_argument("--limit", type=int, default=None, help="stop after N events")
    args = parser.parse_args(argv)

    configure_logging()
    db = Postgres()
    try:
        replay(PostgresEventLog(db), PostgresReadModelStore(db), limit=args.limit)
    finally:
        db.close()


if __name__ == "__main__":
    main()
