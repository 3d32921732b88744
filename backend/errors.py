"""
Error taxonomy shared by the service, repositories, sink and worker.

- `EventRejected`   — envelope or payload shape violations (HTTP 400, never retried)
- `StorageFailure`  — transient database fault (HTTP 500, left to the client to retry)
- `DeliveryFailure` — sink unreachable, timed out or non-2xx (retried next tick)
- `TickStageFailed` — one worker stage failed; aborts only the rest of that tick

A duplicate event is not an error: ingestion reports `duplicate: true`.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class Violation:
    """One field-level validation problem."""

    path: str
    message: str

    def to_dict(self) -> dict:
        return {"path": self.path, "message": self.message}


class EventRejected(ValueError):
    """Raised when an inbound event fails envelope or payload validation."""

    def __init__(self, label: str, violations: list[Violation]):
        super().__init__(label)
        self.label = label
        self.violations = violations


class StorageFailure(RuntimeError):
    """Raised by repositories when the database call fails."""


class DeliveryFailure(RuntimeError):
    """Raised by the sink client when a digest could not be delivered."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TickStageFailed(RuntimeError):
    """Wraps the error that aborted a worker tick at a given stage."""

    def __init__(self, stage, cause: Exception):
        super().__init__(f"{stage.value} failed: {cause}")
        self.stage = stage
        self.cause = cause
