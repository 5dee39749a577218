from __future__ import annotations

import copy
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Tuple

from relay.infra.db import Postgres
from relay.infra.storage import key_within_prefix
from relay.settings import settings

SLIDE_UPDATABLE = {
    "case_id",
    "filename",
    "width",
    "height",
    "mpp",
    "scanner",
    "has_preview",
    "last_event_id",
    "last_occurred_at",
}

# Mirrors the slides_read column defaults in db/migrations/001_init.sql.
SLIDE_DEFAULTS: Dict[str, Any] = {
    "case_id": None,
    "filename": "unknown",
    "width": 0,
    "height": 0,
    "mpp": 0.0,
    "scanner": None,
    "has_preview": False,
    "external_case_id": None,
    "external_case_base": None,
    "external_slide_label": None,
    "confirmed_case_link": False,
    "last_event_id": None,
    "last_occurred_at": None,
}


class ReadModelStore(ABC):
    """Derived, rebuildable views: cases_read, slides_read, preview_assets.

    Rows are plain dicts keyed by column name. Merge/replace decisions are
    made by the projector; the store only persists what it is given.
    """

    @abstractmethod
    def get_case(self, case_id: str) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    def upsert_case(self, row: Dict[str, Any]) -> None:
        """Insert, or overwrite everything except created_at."""

    @abstractmethod
    def list_cases(self, *, limit: int, offset: int) -> Tuple[List[Dict[str, Any]], int]: ...

    @abstractmethod
    def get_slide(self, slide_id: str) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    def merge_slide(self, slide_id: str, fields: Dict[str, Any]) -> None:
        """Create the slide with column defaults, or set only the given fields.

        A single statement either way, so concurrent registrations of a new
        slide merge instead of colliding.
        """

    @abstractmethod
    def update_slide(self, slide_id: str, fields: Dict[str, Any]) -> None: ...

    @abstractmethod
    def slides_for_case(self, case_id: str, *, has_preview: Optional[bool] = None) -> List[Dict[str, Any]]: ...

    @abstractmethod
    def get_preview_asset(self, slide_id: str) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    def find_preview_by_prefix(self, key: str) -> Optional[Dict[str, Any]]:
        """Preview asset whose storage or tiles prefix contains the key."""

    @abstractmethod
    def upsert_preview_asset(self, row: Dict[str, Any]) -> None: ...

    @abstractmethod
    def atomic(self):
        """Context manager: all writes inside commit together or not at all."""


def _check_slide_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - SLIDE_UPDATABLE
    if unknown:
        raise ValueError(f"Not updatable on slides_read: {sorted(unknown)}")


class PostgresReadModelStore(ReadModelStore):
    def __init__(self, db: Postgres) -> None:
        self.db = db

    def get_case(self, case_id: str) -> Optional[Dict[str, Any]]:
        return self.db.fetchone("SELECT * FROM cases_read WHERE case_id=%s", (case_id,))

    def upsert_case(self, row: Dict[str, Any]) -> None:
        self.db.execute(
            """INSERT INTO cases_read(case_id, title, patient_ref, status, created_at, updated_at,
                                      last_event_id, last_occurred_at)
                 VALUES (%s,%s,%s,%s,%s,%s,%s,%s)
                 ON CONFLICT (case_id) DO UPDATE SET
                   title=EXCLUDED.title,
                   patient_ref=EXCLUDED.patient_ref,
                   status=EXCLUDED.status,
                   updated_at=EXCLUDED.updated_at,
                   last_event_id=EXCLUDED.last_event_id,
                   last_occurred_at=EXCLUDED.last_occurred_at""",
            (
                row["case_id"],
                row["title"],
                row["patient_ref"],
                row["status"],
                row["created_at"],
                row["updated_at"],
                row.get("last_event_id"),
                row.get("last_occurred_at"),
            ),
        )

    def list_cases(self, *, limit: int, offset: int) -> Tuple[List[Dict[str, Any]], int]:
        rows = self.db.fetchall(
            """SELECT c.*, (SELECT count(*) FROM slides_read s WHERE s.case_id=c.case_id) AS slides_count
                 FROM cases_read c
                 ORDER BY c.updated_at DESC
                 LIMIT %s OFFSET %s""",
            (limit, offset),
        )
        total = self.db.fetchone("SELECT count(*) AS c FROM cases_read")
        return rows, int(total["c"]) if total else 0

    def get_slide(self, slide_id: str) -> Optional[Dict[str, Any]]:
        return self.db.fetchone("SELECT * FROM slides_read WHERE slide_id=%s", (slide_id,))

    def merge_slide(self, slide_id: str, fields: Dict[str, Any]) -> None:
        _check_slide_fields(fields)
        cols = sorted(fields)
        # Columns left out of the INSERT take the table defaults.
        col_list = "".join(f", {c}" for c in cols)
        placeholders = ",%s" * len(cols)
        updates = "".join(f"{c}=EXCLUDED.{c}, " for c in cols)
        self.db.execute(
            f"""INSERT INTO slides_read(slide_id{col_list})
                  VALUES (%s{placeholders})
                  ON CONFLICT (slide_id) DO UPDATE SET {updates}updated_at=now()""",
            (slide_id,) + tuple(fields[c] for c in cols),
        )

    def update_slide(self, slide_id: str, fields: Dict[str, Any]) -> None:
        if not fields:
            return
        _check_slide_fields(fields)
        cols = sorted(fields)
        assignments = ", ".join(f"{c}=%s" for c in cols)
        self.db.execute(
            f"UPDATE slides_read SET {assignments}, updated_at=now() WHERE slide_id=%s",
            tuple(fields[c] for c in cols) + (slide_id,),
        )

    def slides_for_case(self, case_id: str, *, has_preview: Optional[bool] = None) -> List[Dict[str, Any]]:
        if has_preview is None:
            return self.db.fetchall(
                "SELECT * FROM slides_read WHERE case_id=%s ORDER BY updated_at DESC", (case_id,)
            )
        return self.db.fetchall(
            "SELECT * FROM slides_read WHERE case_id=%s AND has_preview=%s ORDER BY updated_at DESC",
            (case_id, has_preview),
        )

    def get_preview_asset(self, slide_id: str) -> Optional[Dict[str, Any]]:
        return self.db.fetchone("SELECT * FROM preview_assets WHERE slide_id=%s", (slide_id,))

    def find_preview_by_prefix(self, key: str) -> Optional[Dict[str, Any]]:
        return self.db.fetchone(
            """SELECT * FROM preview_assets
                 WHERE starts_with(%s, rtrim(tiles_prefix, '/') || '/')
                    OR starts_with(%s, rtrim(storage_prefix, '/') || '/')
                 ORDER BY published_at DESC
                 LIMIT 1""",
            (key, key),
        )

    @contextmanager
    def atomic(self) -> Iterator[None]:
        with self.db.transaction():
            yield

    def upsert_preview_asset(self, row: Dict[str, Any]) -> None:
        self.db.execute(
            """INSERT INTO preview_assets(slide_id, case_id, storage_bucket, storage_region, storage_endpoint,
                                          storage_prefix, thumb_key, manifest_key, tiles_prefix, max_preview_level,
                                          tile_size, format, preview_width, preview_height, published_at,
                                          last_event_id, last_occurred_at)
                 VALUES (%s,%s,%s,%s,%s,%s,%s,%s,%s,%s,%s,%s,%s,%s,%s,%s,%s)
                 ON CONFLICT (slide_id) DO UPDATE SET
                   case_id=EXCLUDED.case_id,
                   storage_bucket=EXCLUDED.storage_bucket,
                   storage_region=EXCLUDED.storage_region,
                   storage_endpoint=EXCLUDED.storage_endpoint,
                   storage_prefix=EXCLUDED.storage_prefix,
                   thumb_key=EXCLUDED.thumb_key,
                   manifest_key=EXCLUDED.manifest_key,
                   tiles_prefix=EXCLUDED.tiles_prefix,
                   max_preview_level=EXCLUDED.max_preview_level,
                   tile_size=EXCLUDED.tile_size,
                   format=EXCLUDED.format,
                   preview_width=EXCLUDED.preview_width,
                   preview_height=EXCLUDED.preview_height,
                   published_at=EXCLUDED.published_at,
                   last_event_id=EXCLUDED.last_event_id,
                   last_occurred_at=EXCLUDED.last_occurred_at""",
            (
                row["slide_id"],
                row.get("case_id"),
                row["storage_bucket"],
                row["storage_region"],
                row["storage_endpoint"],
                row["storage_prefix"],
                row["thumb_key"],
                row["manifest_key"],
                row["tiles_prefix"],
                row["max_preview_level"],
                row["tile_size"],
                row["format"],
                row.get("preview_width"),
                row.get("preview_height"),
                row["published_at"],
                row.get("last_event_id"),
                row.get("last_occurred_at"),
            ),
        )


class InMemoryReadModelStore(ReadModelStore):
    def __init__(self) -> None:
        self.cases: Dict[str, Dict[str, Any]] = {}
        self.slides: Dict[str, Dict[str, Any]] = {}
        self.previews: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.RLock()

    def get_case(self, case_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self.cases.get(case_id)
            return dict(row) if row else None

    def upsert_case(self, row: Dict[str, Any]) -> None:
        with self._lock:
            existing = self.cases.get(row["case_id"])
            new = dict(row)
            if existing is not None:
                new["created_at"] = existing["created_at"]
            self.cases[row["case_id"]] = new

    def list_cases(self, *, limit: int, offset: int) -> Tuple[List[Dict[str, Any]], int]:
        with self._lock:
            ordered = sorted(self.cases.values(), key=lambda c: c["updated_at"], reverse=True)
            page = []
            for c in ordered[offset:offset + limit]:
                row = dict(c)
                row["slides_count"] = sum(1 for s in self.slides.values() if s.get("case_id") == c["case_id"])
                page.append(row)
            return page, len(ordered)

    def get_slide(self, slide_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self.slides.get(slide_id)
            return dict(row) if row else None

    def merge_slide(self, slide_id: str, fields: Dict[str, Any]) -> None:
        _check_slide_fields(fields)
        with self._lock:
            row = self.slides.get(slide_id)
            if row is None:
                row = {"slide_id": slide_id, **SLIDE_DEFAULTS}
                self.slides[slide_id] = row
            row.update(fields)
            row["updated_at"] = datetime.now(timezone.utc)

    def update_slide(self, slide_id: str, fields: Dict[str, Any]) -> None:
        if not fields:
            return
        _check_slide_fields(fields)
        with self._lock:
            row = self.slides.get(slide_id)
            if row is None:
                return
            row.update(fields)
            row["updated_at"] = datetime.now(timezone.utc)

    def slides_for_case(self, case_id: str, *, has_preview: Optional[bool] = None) -> List[Dict[str, Any]]:
        with self._lock:
            rows = [
                dict(s)
                for s in self.slides.values()
                if s.get("case_id") == case_id and (has_preview is None or s["has_preview"] == has_preview)
            ]
        return sorted(rows, key=lambda s: s["updated_at"], reverse=True)

    def get_preview_asset(self, slide_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self.previews.get(slide_id)
            return copy.deepcopy(row) if row else None

    def upsert_preview_asset(self, row: Dict[str, Any]) -> None:
        with self._lock:
            self.previews[row["slide_id"]] = dict(row)

    def find_preview_by_prefix(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            owners = [
                p
                for p in self.previews.values()
                if key_within_prefix(key, p["tiles_prefix"]) or key_within_prefix(key, p["storage_prefix"])
            ]
            if not owners:
                return None
            return copy.deepcopy(max(owners, key=lambda p: p["published_at"]))

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Holds the store lock and restores the prior state if the block raises."""
        with self._lock:
            snapshot = copy.deepcopy((self.cases, self.slides, self.previews))
            try:
                yield
            except Exception:
                self.cases, self.slides, self.previews = snapshot
                raise


def make_read_models(db: Optional[Postgres] = None) -> ReadModelStore:
    if settings.DB_MODE == "memory":
        return InMemoryReadModelStore()
    return PostgresReadModelStore(db or Postgres())
