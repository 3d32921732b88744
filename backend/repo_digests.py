"""
Repository: SQL operations for `digests`.

Same conventions as `repo_events.py`: SQL and row mapping only, one
connection per call, explicit commits, driver errors surfaced as
`StorageFailure`. `create_if_new` relies on the UNIQUE index on
`digest_id`; `sent_at` is written only through `mark_sent`.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg.types.json import Jsonb

from db import get_conn, storage_errors
from models import StoredDigest


_COLUMNS = "digest_id, payload, message, created_at, sent_at"


def _row_to_digest(r) -> StoredDigest:
    return StoredDigest(
        digest_id=str(r[0]),
        payload=r[1] or {},
        message=r[2],
        created_at=r[3],
        sent_at=r[4],
    )


class DigestRepo:
    """DB access for digests."""

    def __init__(self, db_url: str, connect=get_conn):
        self.db_url = db_url
        self._connect = connect

    def create_if_new(self, digest_id: str, payload: Dict[str, Any], message: Optional[str]) -> bool:
        """Insert a digest; returns False if `digest_id` already exists."""

        with storage_errors("insert digest"):
            with self._connect(self.db_url) as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        "INSERT INTO digests (digest_id, payload, message) "
                        "VALUES (%s, %s, %s) "
                        "ON CONFLICT (digest_id) DO NOTHING",
                        (digest_id, Jsonb(payload), message),
                    )
                    inserted = cur.rowcount == 1
                conn.commit()
        return inserted

    def list_digests(self, unsent_only: bool = False, limit: int = 100) -> List[StoredDigest]:
        """List digests newest first, optionally only those not yet delivered."""

        sql = f"SELECT {_COLUMNS} FROM digests"
        if unsent_only:
            sql += " WHERE sent_at IS NULL"
        sql += " ORDER BY created_at DESC LIMIT %s"
        with storage_errors("list digests"):
            with self._connect(self.db_url) as conn:
                with conn.cursor() as cur:
                    cur.execute(sql, (limit,))
                    return [_row_to_digest(r) for r in cur.fetchall()]

    def mark_sent(self, digest_id: str, sent_at: datetime) -> Optional[StoredDigest]:
        """Record a confirmed delivery. Returns None if the digest is unknown."""

        with storage_errors("mark digest sent"):
            with self._connect(self.db_url) as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"UPDATE digests SET sent_at = %s WHERE digest_id = %s RETURNING {_COLUMNS}",
                        (sent_at, digest_id),
                    )
                    row = cur.fetchone()
                conn.commit()
        return _row_to_digest(row) if row else None
