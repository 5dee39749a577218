from __future__ import annotations
import psycopg2
import psycopg2.extras
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional, Sequence, Tuple, List
from relay.settings import settings

class Postgres:
    def __init__(self, dsn: Optional[str] = None) -> None:
        self._conn = psycopg2.connect(dsn or settings.DATABASE_URL)
        self._conn.autocommit = True

    @contextmanager
    def cursor(self):
        cur = self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
        try:
            yield cur
        finally:
            cur.close()

    @contextmanager
    def transaction(self) -> Iterator[Any]:
        """Run the block on one cursor inside a single transaction.

        Commits on success, rolls back and re-raises on any error. The
        connection is returned to autocommit afterwards.
        """
        self._conn.autocommit = False
        try:
            with self.cursor() as cur:
                yield cur
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise
        finally:
            self._conn.autocommit = True

    def execute(self, sql: str, params: Tuple[Any, ...] = ()) -> None:
        with self.cursor() as cur:
            cur.execute(sql, params)

    def fetchone(self, sql: str, params: Tuple[Any, ...] = ()) -> Optional[Dict[str, Any]]:
        with self.cursor() as cur:
            cur.execute(sql, params)
            row = cur.fetchone()
            return dict(row) if row else None

    def fetchall(self, sql: str, params: Tuple[Any, ...] = ()) -> List[Dict[str, Any]]:
        with self.cursor() as cur:
            cur.execute(sql, params)
            rows = cur.fetchall()
            return [dict(r) for r in rows]

    @staticmethod
    def insert_values(cur, sql: str, rows: Sequence[Tuple[Any, ...]]) -> List[Dict[str, Any]]:
        """Multi-row INSERT on an open cursor; returns RETURNING rows."""
        out = psycopg2.extras.execute_values(cur, sql, rows, fetch=True, page_size=max(len(rows), 1))
        return [dict(r) for r in out]

    def ping(self) -> bool:
        row = self.fetchone("SELECT 1 AS ok")
        return bool(row and row["ok"] == 1)

    def close(self) -> None:
        self._conn.close()

    @staticmethod
    def json(v: Any):
        return psycopg2.extras.Json(v)
