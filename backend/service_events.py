"""
Service / facade layer.

This module implements business rules and normalization before any DB
interaction. It is intentionally free of SQL — it calls the `repo_*`
classes to perform database operations. All write paths from the HTTP
surface go through this service so validation and limits are applied in
one place.

Key responsibilities:
- gate every event write behind `validation.validate_event`
- clamp listing limits to the configured maximum
- own the "now" used for processed/sent timestamps set through the API
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from errors import EventRejected
from models import DigestIn, PlaceIn, StoredDigest, StoredEvent, StoredPlace
from repo_digests import DigestRepo
from repo_events import EventRepo
from repo_places import PlaceRepo
from settings import Settings
from validation import validate_event


@dataclass(frozen=True)
class IngestResult:
    event_id: str
    inserted: bool

    @property
    def duplicate(self) -> bool:
        return not self.inserted


class EventService:
    """Business rules + validation + normalization.

    Example usage:
        svc = EventService.from_settings(settings)
        result = svc.ingest_event(request_json)
    """

    def __init__(
        self,
        repo: EventRepo,
        digests: DigestRepo,
        places: PlaceRepo,
        max_list_limit: int = 500,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.repo = repo
        self.digests = digests
        self.places = places
        self.max_list_limit = max_list_limit
        self._now = now

    @classmethod
    def from_settings(cls, cfg: Settings) -> "EventService":
        return cls(
            EventRepo(cfg.db_url),
            DigestRepo(cfg.db_url),
            PlaceRepo(cfg.db_url),
            max_list_limit=cfg.max_list_limit,
        )

    # --- events ---

    def ingest_event(self, body: Any) -> IngestResult:
        """Validate and persist one event exactly once per `event_id`.

        Raises:
        - `EventRejected` with the full violation list for malformed input
          (the store is not touched)
        - `StorageFailure` if the database write fails
        """

        result = validate_event(body)
        if not result.ok:
            raise EventRejected(result.label, result.violations)

        envelope = result.envelope
        inserted = self.repo.insert_if_new(envelope)
        return IngestResult(event_id=envelope.event_id, inserted=inserted)

    def list_events(
        self, unprocessed_only: bool = False, type: Optional[str] = None, limit: int = 100
    ) -> List[StoredEvent]:
        limit = max(1, min(limit, self.max_list_limit))
        return self.repo.list_events(unprocessed_only=unprocessed_only, type=type, limit=limit)

    def mark_processed(self, event_ids: List[str]) -> tuple[int, datetime]:
        """Mark events processed now; already-processed ids are skipped."""

        at = self._now()
        return self.repo.mark_processed(event_ids, at), at

    # --- digests ---

    def create_digest(self, digest: DigestIn) -> bool:
        """Store a digest; returns True if it was new."""

        return self.digests.create_if_new(digest.digest_id, digest.payload, digest.message)

    def list_digests(self, unsent_only: bool = False, limit: int = 100) -> List[StoredDigest]:
        limit = max(1, min(limit, self.max_list_limit))
        return self.digests.list_digests(unsent_only=unsent_only, limit=limit)

    def mark_digest_sent(self, digest_id: str, sent_at: Optional[datetime] = None) -> Optional[StoredDigest]:
        return self.digests.mark_sent(digest_id, sent_at or self._now())

    # --- places ---

    def list_places(self) -> List[StoredPlace]:
        return self.places.list_places()

    def upsert_place(self, place: PlaceIn) -> bool:
        """Returns True if an existing place was updated, False if created."""

        return self.places.upsert(place)

    def delete_place(self, place_id: str) -> bool:
        return self.places.delete(place_id)

    def health_check(self) -> None:
        """Perform a lightweight DB ping via the repository."""

        self.repo.ping()
