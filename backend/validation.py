"""
Envelope and payload validation for inbound events.

`validate_event()` is a pure function: it takes whatever the client sent
(already JSON-decoded) and returns a `ValidationResult`. Malformed input
is a normal outcome reported as a list of `Violation`s, never an
exception, so callers decide how to surface it.

Two labels distinguish where validation failed:
- `ENVELOPE_ERROR` — the generic wrapper is wrong (bad id, ts, type...)
- `payload_error(type)` — the wrapper is fine but the type's payload is not
"""

from dataclasses import dataclass, field
from typing import Any, List, Optional

from pydantic import ValidationError

from errors import Violation
from models import PAYLOAD_SCHEMAS, SUPPORTED_TYPES, EventEnvelope


ENVELOPE_ERROR = "Invalid event payload"

_FIELD_MESSAGES = {
    "event_id": "event_id must be a valid UUID.",
    "type": f"type must be one of: {', '.join(SUPPORTED_TYPES)}.",
    "ts": "ts must be a valid ISO-8601 timestamp string with a UTC offset.",
    "payload": "payload must be a JSON object.",
    "device_id": "device_id must be a non-empty string when provided.",
    "meta": "meta must be an object when provided.",
}


def payload_error(event_type: str) -> str:
    return f"Invalid payload for type '{event_type}'"


@dataclass
class ValidationResult:
    envelope: Optional[EventEnvelope] = None
    label: Optional[str] = None
    violations: List[Violation] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.envelope is not None


def _path(loc: tuple) -> str:
    return ".".join(str(part) for part in loc)


def _violations(exc: ValidationError, prefix: str = "", messages: dict | None = None) -> List[Violation]:
    out: List[Violation] = []
    for err in exc.errors(include_url=False):
        path = _path(err["loc"])
        head = str(err["loc"][0]) if err["loc"] else ""
        message = (messages or {}).get(head)
        if message is None:
            message = f"{path}: {err['msg']}" if path else err["msg"]
        if prefix:
            path = f"{prefix}.{path}" if path else prefix
        out.append(Violation(path=path, message=message))
    return out


def validate_event(body: Any) -> ValidationResult:
    """Validate an inbound event; return the normalized envelope or violations.

    Steps:
    1. Reject anything that is not a JSON object.
    2. Validate the envelope (`EventEnvelope`).
    3. Validate `payload` against the schema registered for `type`, and
       replace it with the normalized form (defaults filled, absent
       optionals omitted, extra keys kept as sent).
    """

    if not isinstance(body, dict):
        return ValidationResult(
            label=ENVELOPE_ERROR,
            violations=[Violation(path="", message="Request body must be a JSON object.")],
        )

    try:
        envelope = EventEnvelope.model_validate(body)
    except ValidationError as exc:
        return ValidationResult(
            label=ENVELOPE_ERROR,
            violations=_violations(exc, messages=_FIELD_MESSAGES),
        )

    schema = PAYLOAD_SCHEMAS.get(envelope.type)
    if schema is None:
        return ValidationResult(envelope=envelope)

    try:
        payload = schema.model_validate(envelope.payload)
    except ValidationError as exc:
        return ValidationResult(
            label=payload_error(envelope.type),
            violations=_violations(exc, prefix="payload"),
        )

    normalized = envelope.model_copy(
        update={"payload": payload.normalized()}
    )
    return ValidationResult(envelope=normalized)
