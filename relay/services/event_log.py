from __future__ import annotations

import copy
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set

from relay.infra.db import Postgres
from relay.settings import settings


class EventLog(ABC):
    """Append-only store of edge-origin events, unique on event_id."""

    @abstractmethod
    def existing_ids(self, event_ids: Iterable[str]) -> Set[str]: ...

    @abstractmethod
    def append_batch(self, rows: List[Dict[str, Any]]) -> List[str]:
        """Insert all rows atomically and return the ids actually inserted.

        Rows whose event_id is already stored (a concurrent batch won the
        race) are skipped, not errors. Any other failure stores nothing.
        """

    @abstractmethod
    def get(self, event_id: str) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    def iter_all(self) -> Iterator[Dict[str, Any]]: ...


class PostgresEventLog(EventLog):
    def __init__(self, db: Postgres) -> None:
        self.db = db

    def existing_ids(self, event_ids: Iterable[str]) -> Set[str]:
        ids = list(event_ids)
        if not ids:
            return set()
        rows = self.db.fetchall("SELECT event_id FROM events WHERE event_id = ANY(%s)", (ids,))
        return {r["event_id"] for r in rows}

    def append_batch(self, rows: List[Dict[str, Any]]) -> List[str]:
        if not rows:
            return []
        values = [
            (
                r["event_id"],
                r["origin_id"],
                r["aggregate_type"],
                r["aggregate_id"],
                r["event_type"],
                r["occurred_at"],
                self.db.json(r["payload"]),
            )
            for r in rows
        ]
        with self.db.transaction() as cur:
            inserted = self.db.insert_values(
                cur,
                """INSERT INTO events(event_id, origin_id, aggregate_type, aggregate_id, event_type, occurred_at, payload)
                     VALUES %s
                     ON CONFLICT (event_id) DO NOTHING
                     RETURNING event_id""",
                values,
            )
        stored = {r["event_id"] for r in inserted}
        return [r["event_id"] for r in rows if r["event_id"] in stored]

    def get(self, event_id: str) -> Optional[Dict[str, Any]]:
        return self.db.fetchone("SELECT * FROM events WHERE event_id=%s", (event_id,))

    def iter_all(self, batch_size: int = 500) -> Iterator[Dict[str, Any]]:
        last_seq = 0
        while True:
            rows = self.db.fetchall(
                "SELECT * FROM events WHERE seq > %s ORDER BY seq LIMIT %s",
                (last_seq, batch_size),
            )
            if not rows:
                return
            yield from rows
            last_seq = rows[-1]["seq"]


class InMemoryEventLog(EventLog):
    """Process-local event log for DB_MODE=memory and tests."""

    def __init__(self) -> None:
        self._rows: Dict[str, Dict[str, Any]] = {}
        self._seq = 0
        self._lock = threading.Lock()

    def existing_ids(self, event_ids: Iterable[str]) -> Set[str]:
        with self._lock:
            return {i for i in event_ids if i in self._rows}

    def append_batch(self, rows: List[Dict[str, Any]]) -> List[str]:
        with self._lock:
            staged: Dict[str, Dict[str, Any]] = {}
            seq = self._seq
            for r in rows:
                if r["event_id"] in self._rows or r["event_id"] in staged:
                    continue
                seq += 1
                row = copy.deepcopy(r)
                row["seq"] = seq
                row["received_at"] = datetime.now(timezone.utc)
                staged[row["event_id"]] = row
            self._rows.update(staged)
            self._seq = seq
            return list(staged)

    def get(self, event_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._rows.get(event_id)
            return copy.deepcopy(row) if row else None

    def iter_all(self) -> Iterator[Dict[str, Any]]:
        with self._lock:
            rows = sorted(self._rows.values(), key=lambda r: r["seq"])
        for r in rows:
            yield copy.deepcopy(r)

    def __len__(self) -> int:
        return len(self._rows)


def make_event_log(db: Optional[Postgres] = None) -> EventLog:
    if settings.DB_MODE == "memory":
        return InMemoryEventLog()
    return PostgresEventLog(db or Postgres())
