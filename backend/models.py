"""
Pydantic models used across the backend.

Three groups live here:
- inbound shapes (`EventEnvelope`, per-type payloads, request bodies),
- stored rows as read back from Postgres (`StoredEvent`, `StoredDigest`),
- derived values built by the worker (`StaySegment`, `Digest`).

Guidelines:
- Keep models minimal and stable. Business rules belong in
  `service_events.py` / `validation.py`, SQL in the `repo_*` modules.
- Datetimes are always timezone-aware and normalized to UTC on the way in.
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Annotated, Any, Dict, List, Literal, Optional
from datetime import datetime, timezone


UUID_PATTERN = (
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-"
    r"[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}$"
)

UuidStr = Annotated[str, Field(pattern=UUID_PATTERN)]

EventType = Literal["location", "email", "todo", "vital"]
SUPPORTED_TYPES = ("location", "email", "todo", "vital")


def parse_aware_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string that carries a UTC offset; return it in UTC.

    Only strings are accepted so numbers are never read as epoch seconds.
    """

    if not isinstance(value, str):
        raise ValueError("must be an ISO-8601 timestamp string")
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise ValueError("must be a valid ISO-8601 timestamp") from None
    if parsed.tzinfo is None:
        raise ValueError("must include a UTC offset (e.g., 2026-02-20T10:00:00+09:00)")
    try:
        return parsed.astimezone(timezone.utc)
    except OverflowError:
        # Year 1 or 9999 pushed past the datetime range by the offset.
        raise ValueError("must be a valid ISO-8601 timestamp") from None


# --- Inbound event envelope ---


class EventEnvelope(BaseModel):
    """Generic wrapper common to every event sent by clients.

    Fields:
    - `event_id`: client-generated UUID, the idempotency key.
    - `type`: one of `SUPPORTED_TYPES`; selects the payload schema.
    - `ts`: occurrence time, ISO-8601 with offset, normalized to UTC.
    - `payload`: type-specific object (see `PAYLOAD_SCHEMAS`).
    - `device_id`: optional free-text source tag (e.g., `android-main`).
    - `meta`: open-ended extension data.
    """

    event_id: UuidStr
    type: EventType
    ts: datetime
    payload: Dict[str, Any]
    device_id: Optional[str] = Field(default=None, min_length=1)
    meta: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("ts", mode="before")
    @classmethod
    def _parse_ts(cls, value: Any) -> datetime:
        return parse_aware_timestamp(value)


# --- Per-type payload schemas ---

Latitude = Annotated[float, Field(strict=True, ge=-90, le=90)]
Longitude = Annotated[float, Field(strict=True, ge=-180, le=180)]


class _Payload(BaseModel):
    # Unknown keys are kept so clients can attach extra context.
    model_config = ConfigDict(extra="allow")

    def normalized(self) -> Dict[str, Any]:
        """Dump with defaults filled in; optional fields the client left out are omitted."""

        absent = {
            name
            for name, info in type(self).model_fields.items()
            if info.default is None and name not in self.model_fields_set
        }
        return self.model_dump(by_alias=True, exclude=absent)


class LocationPayload(_Payload):
    event: Literal["enter", "exit", "dwell"]
    place_id: str = Field(min_length=1)
    lat: Optional[Latitude] = None
    lng: Optional[Longitude] = None
    accuracy_m: Optional[Annotated[float, Field(strict=True, ge=0)]] = None

    # May be omitted, but never sent as null.
    @field_validator("lat", "lng", "accuracy_m", mode="before")
    @classmethod
    def _reject_null(cls, value: Any) -> Any:
        if value is None:
            raise ValueError("must be a number when provided")
        return value


class EmailPayload(_Payload):
    subject: str = Field(min_length=1)
    from_: str = Field(min_length=1, alias="from")
    labels: List[str] = Field(default_factory=list)


class TodoPayload(_Payload):
    task_id: str = Field(min_length=1)
    old_status: str = Field(min_length=1)
    new_status: str = Field(min_length=1)


class VitalPayload(_Payload):
    sub_type: Literal["wake", "sleep", "exercise", "watch_off"]


PAYLOAD_SCHEMAS: Dict[str, type[_Payload]] = {
    "location": LocationPayload,
    "email": EmailPayload,
    "todo": TodoPayload,
    "vital": VitalPayload,
}


# --- Request bodies ---


class ProcessEventsIn(BaseModel):
    event_ids: List[UuidStr] = Field(min_length=1, max_length=1000)


class DigestIn(BaseModel):
    digest_id: UuidStr
    payload: Dict[str, Any]
    message: Optional[str] = Field(default=None, min_length=1)


class MarkSentIn(BaseModel):
    sent_at: Optional[datetime] = None

    @field_validator("sent_at", mode="before")
    @classmethod
    def _parse_sent_at(cls, value: Any) -> Optional[datetime]:
        if value is None:
            return None
        return parse_aware_timestamp(value)


class PlaceIn(BaseModel):
    place_id: str = Field(min_length=1, max_length=100)
    label: str = Field(min_length=1)
    lat: Optional[Latitude] = None
    lng: Optional[Longitude] = None
    radius_m: int = Field(default=100, gt=0)


# --- Stored rows ---


class StoredEvent(BaseModel):
    """An event row as read back from the `events` table."""

    event_id: str
    type: str
    ts: datetime
    payload: Dict[str, Any] = Field(default_factory=dict)
    device_id: Optional[str] = None
    meta: Optional[Dict[str, Any]] = None
    received_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None


class StoredDigest(BaseModel):
    """A digest row as read back from the `digests` table."""

    digest_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    message: Optional[str] = None
    created_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None


class StoredPlace(BaseModel):
    place_id: str
    label: str
    lat: Optional[float] = None
    lng: Optional[float] = None
    radius_m: int = 100
    created_at: Optional[datetime] = None


# --- Derived values ---


class StaySegment(BaseModel):
    """Continuous presence at one place; `exit_at is None` while still open."""

    model_config = ConfigDict(frozen=True)

    place_id: str
    enter_at: datetime
    exit_at: Optional[datetime] = None
    duration_min: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self.exit_at is None


class DigestPayload(BaseModel):
    type: Literal["location"] = "location"
    segments: List[StaySegment]
    period_start: datetime
    period_end: datetime
    event_ids: List[str]


class Digest(BaseModel):
    """One batch compressed into a message plus its structured payload."""

    digest_id: str
    message: str
    payload: DigestPayload
