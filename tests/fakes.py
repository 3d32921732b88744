"""In-memory stand-ins for the repositories, the sink and psycopg connections."""

from __future__ import annotations

import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Iterable

from errors import DeliveryFailure
from models import EventEnvelope, PlaceIn, StoredDigest, StoredEvent, StoredPlace


FIXED_NOW = datetime(2025, 2, 23, 12, 0, tzinfo=timezone.utc)


def make_event(
    *,
    event_id: str | None = None,
    type: str = "location",
    ts: str = "2025-02-23T10:00:00+09:00",
    payload: dict | None = None,
) -> StoredEvent:
    """Build a stored event row with sensible defaults."""
    return StoredEvent(
        event_id=event_id or str(uuid.uuid4()),
        type=type,
        ts=datetime.fromisoformat(ts),
        payload=payload if payload is not None else {"event": "enter", "place_id": "office"},
        device_id="android-main",
    )


def loc(event: str, place_id: str, ts: str, event_id: str | None = None) -> StoredEvent:
    """Shorthand for a location event at `ts`."""
    return make_event(
        event_id=event_id, ts=ts, payload={"event": event, "place_id": place_id}
    )


class InMemoryEventRepo:
    """Event store keyed by event_id; the lock plays the role of the unique index."""

    def __init__(self, events: Iterable[StoredEvent] = ()) -> None:
        self._lock = threading.Lock()
        self.rows: dict[str, StoredEvent] = {e.event_id: e for e in events}
        self.fail_fetch: Exception | None = None
        self.fail_mark: Exception | None = None
        self.pings = 0

    def insert_if_new(self, envelope: EventEnvelope) -> bool:
        with self._lock:
            if envelope.event_id in self.rows:
                return False
            self.rows[envelope.event_id] = StoredEvent(
                event_id=envelope.event_id,
                type=envelope.type,
                ts=envelope.ts,
                payload=envelope.payload,
                device_id=envelope.device_id,
                meta=envelope.meta,
                received_at=datetime.now(timezone.utc),
            )
            return True

    def fetch_unprocessed(self, type: str | None = None, limit: int = 100) -> list[StoredEvent]:
        if self.fail_fetch:
            raise self.fail_fetch
        rows = [
            e for e in self.rows.values()
            if e.processed_at is None and (type is None or e.type == type)
        ]
        return sorted(rows, key=lambda e: e.ts)[:limit]

    def list_events(
        self, unprocessed_only: bool = False, type: str | None = None, limit: int = 100
    ) -> list[StoredEvent]:
        rows = [
            e for e in self.rows.values()
            if (not unprocessed_only or e.processed_at is None)
            and (type is None or e.type == type)
        ]
        return sorted(rows, key=lambda e: e.ts, reverse=True)[:limit]

    def mark_processed(self, event_ids: Iterable[str], at: datetime) -> int:
        if self.fail_mark:
            raise self.fail_mark
        count = 0
        with self._lock:
            for event_id in set(event_ids):
                row = self.rows.get(event_id)
                if row is not None and row.processed_at is None:
                    self.rows[event_id] = row.model_copy(update={"processed_at": at})
                    count += 1
        return count

    def ping(self) -> None:
        self.pings += 1


class InMemoryDigestRepo:
    """Digest store preserving insertion order (newest listed first)."""

    def __init__(self) -> None:
        self.rows: dict[str, StoredDigest] = {}
        self.fail_create: Exception | None = None

    def create_if_new(self, digest_id: str, payload: dict[str, Any], message: str | None) -> bool:
        if self.fail_create:
            raise self.fail_create
        if digest_id in self.rows:
            return False
        self.rows[digest_id] = StoredDigest(
            digest_id=digest_id,
            payload=payload,
            message=message,
            created_at=datetime.now(timezone.utc),
        )
        return True

    def list_digests(self, unsent_only: bool = False, limit: int = 100) -> list[StoredDigest]:
        rows = [d for d in reversed(list(self.rows.values())) if not unsent_only or d.sent_at is None]
        return rows[:limit]

    def mark_sent(self, digest_id: str, sent_at: datetime) -> StoredDigest | None:
        row = self.rows.get(digest_id)
        if row is None:
            return None
        self.rows[digest_id] = row.model_copy(update={"sent_at": sent_at})
        return self.rows[digest_id]


class InMemoryPlaceRepo:
    def __init__(self) -> None:
        self.rows: dict[str, StoredPlace] = {}

    def list_places(self) -> list[StoredPlace]:
        return list(self.rows.values())

    def upsert(self, place: PlaceIn) -> bool:
        existed = place.place_id in self.rows
        self.rows[place.place_id] = StoredPlace(**place.model_dump())
        return existed

    def delete(self, place_id: str) -> bool:
        return self.rows.pop(place_id, None) is not None


class RecordingSink:
    """Sink stub recording deliveries; ids in `fail_ids` (or all, if `fail_all`) fail."""

    def __init__(self, fail_ids: Iterable[str] = (), fail_all: bool = False) -> None:
        self.fail_ids = set(fail_ids)
        self.fail_all = fail_all
        self.calls: list[tuple[str, str | None]] = []

    def deliver(self, digest_id: str, message: str | None) -> None:
        self.calls.append((digest_id, message))
        if self.fail_all or digest_id in self.fail_ids:
            raise DeliveryFailure("sink responded 503", status_code=503)

    @property
    def delivered_ids(self) -> list[str]:
        return [digest_id for digest_id, _ in self.calls]


class FakeCursor:
    """psycopg cursor stub capturing executed SQL."""

    def __init__(self, conn: "FakeConnection") -> None:
        self.conn = conn
        self.rowcount = conn.rowcount

    def __enter__(self) -> "FakeCursor":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        return False

    def execute(self, sql: str, params: Any = None) -> None:
        if self.conn.execute_error:
            raise self.conn.execute_error
        self.conn.executed.append((sql, params))

    def fetchall(self) -> list[tuple]:
        return list(self.conn.rows)

    def fetchone(self) -> tuple | None:
        return self.conn.rows[0] if self.conn.rows else None


class FakeConnection:
    """psycopg connection stub; use `connect` as a repository's connection factory."""

    def __init__(self, rows: list[tuple] | None = None, rowcount: int = 1) -> None:
        self.rows = rows or []
        self.rowcount = rowcount
        self.executed: list[tuple[str, Any]] = []
        self.commits = 0
        self.execute_error: Exception | None = None
        self.urls: list[str] = []

    def connect(self, db_url: str) -> "FakeConnection":
        self.urls.append(db_url)
        return self

    def __enter__(self) -> "FakeConnection":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        return False

    def cursor(self) -> FakeCursor:
        return FakeCursor(self)

    def commit(self) -> None:
        self.commits += 1
