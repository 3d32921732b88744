"""
Repository: SQL operations for `events`.

This file contains only DB interaction code. It maps Pydantic models
to SQL parameters and converts DB rows to `StoredEvent` objects. Keep
business rules out of this module.

Important notes:
- Idempotency comes from the UNIQUE index on `event_id` together with
  `ON CONFLICT DO NOTHING`; no in-process locking is involved, so any
  number of API replicas may insert concurrently.
- `processed_at` is only ever set where it is still NULL, which makes
  `mark_processed` safe to repeat.
- Every method commits before returning and raises `StorageFailure`
  on any driver error.
"""

from datetime import datetime
from typing import Iterable, List, Optional

from psycopg.types.json import Jsonb

from db import get_conn, storage_errors
from models import EventEnvelope, StoredEvent


_COLUMNS = "event_id, type, ts, payload, device_id, meta, received_at, processed_at"


def _row_to_event(r) -> StoredEvent:
    return StoredEvent(
        event_id=str(r[0]),
        type=r[1],
        ts=r[2],
        payload=r[3] or {},
        device_id=r[4],
        meta=r[5],
        received_at=r[6],
        processed_at=r[7],
    )


class EventRepo:
    """DB access only. No business logic here.

    Responsibilities:
    - Map `EventEnvelope` -> SQL parameters
    - Execute queries and return `StoredEvent` objects
    - Keep transaction/commit boundaries local and explicit
    """

    def __init__(self, db_url: str, connect=get_conn):
        self.db_url = db_url
        self._connect = connect

    def insert_if_new(self, envelope: EventEnvelope) -> bool:
        """Insert one event unless its `event_id` already exists.

        Returns True if this call created the row, False for a duplicate.
        """

        with storage_errors("insert event"):
            with self._connect(self.db_url) as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        "INSERT INTO events (event_id, type, ts, payload, device_id, meta) "
                        "VALUES (%s, %s, %s, %s, %s, %s) "
                        "ON CONFLICT (event_id) DO NOTHING",
                        (
                            envelope.event_id,
                            envelope.type,
                            envelope.ts,
                            Jsonb(envelope.payload),
                            envelope.device_id,
                            Jsonb(envelope.meta),
                        ),
                    )
                    inserted = cur.rowcount == 1
                conn.commit()
        return inserted

    def fetch_unprocessed(self, type: Optional[str] = None, limit: int = 100) -> List[StoredEvent]:
        """Fetch the oldest `limit` unprocessed events, ascending by `ts`.

        This is the aggregation batch read by the digest worker.
        """

        sql = f"SELECT {_COLUMNS} FROM events WHERE processed_at IS NULL"
        params: list = []
        if type:
            sql += " AND type = %s"
            params.append(type)
        sql += " ORDER BY ts ASC, id ASC LIMIT %s"
        params.append(limit)
        return self._select(sql, params, "fetch unprocessed events")

    def list_events(
        self,
        unprocessed_only: bool = False,
        type: Optional[str] = None,
        limit: int = 100,
    ) -> List[StoredEvent]:
        """General listing, newest first."""

        clauses = []
        params: list = []
        if unprocessed_only:
            clauses.append("processed_at IS NULL")
        if type:
            clauses.append("type = %s")
            params.append(type)
        sql = f"SELECT {_COLUMNS} FROM events"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY ts DESC LIMIT %s"
        params.append(limit)
        return self._select(sql, params, "list events")

    def mark_processed(self, event_ids: Iterable[str], at: datetime) -> int:
        """Set `processed_at = at` on the given events that are still unprocessed.

        Returns the number of rows actually transitioned; ids that are
        unknown or already processed are ignored.
        """

        ids = list(dict.fromkeys(event_ids))
        if not ids:
            return 0
        with storage_errors("mark events processed"):
            with self._connect(self.db_url) as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        "UPDATE events SET processed_at = %s "
                        "WHERE event_id = ANY(%s) AND processed_at IS NULL",
                        (at, ids),
                    )
                    count = cur.rowcount
                conn.commit()
        return count

    def ping(self) -> None:
        """Lightweight DB health check. Raises `StorageFailure` on error."""

        with storage_errors("ping"):
            with self._connect(self.db_url) as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1;")

    def _select(self, sql: str, params: list, operation: str) -> List[StoredEvent]:
        with storage_errors(operation):
            with self._connect(self.db_url) as conn:
                with conn.cursor() as cur:
                    cur.execute(sql, params)
                    return [_row_to_event(r) for r in cur.fetchall()]
