"""
Stay segmentation: turn a stream of location enter/dwell/exit events into
stay segments.

The scan is a left fold (`functools.reduce`) over the events in
timestamp order. The accumulator `_Scan` is immutable and carries the
segments emitted so far plus the index of the single open segment, if
any. Each event maps one `_Scan` to the next:

- enter(P, t): close the open segment at t (if any), then open a new
  segment for P. Re-entering the same place still starts a new segment.
- dwell(P, t): absorbed when the open segment is already at P, otherwise
  opens a new segment for P at t.
- exit(P, t): closes the open segment when it is at P; otherwise records
  an instant segment (enter_at == exit_at == t, 0 min) and leaves the open
  segment alone.

A segment still open at the end of the batch keeps `exit_at=None`.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from functools import reduce
from typing import Iterable, List, NamedTuple, Optional, Sequence

from models import StaySegment, StoredEvent

logger = logging.getLogger(__name__)


def duration_minutes(enter_at: datetime, exit_at: datetime) -> int:
    """Whole minutes between two instants, rounding half away from zero."""

    minutes = (exit_at - enter_at).total_seconds() / 60
    return int(math.copysign(math.floor(abs(minutes) + 0.5), minutes))


def close_segment(segment: StaySegment, exit_at: datetime) -> StaySegment:
    return segment.model_copy(
        update={
            "exit_at": exit_at,
            "duration_min": duration_minutes(segment.enter_at, exit_at),
        }
    )


class _Scan(NamedTuple):
    segments: tuple
    open_index: Optional[int]

    @property
    def open_segment(self) -> Optional[StaySegment]:
        return None if self.open_index is None else self.segments[self.open_index]


_EMPTY = _Scan(segments=(), open_index=None)


def _close_open(scan: _Scan, at: datetime) -> _Scan:
    if scan.open_index is None:
        return scan
    segments = list(scan.segments)
    segments[scan.open_index] = close_segment(segments[scan.open_index], at)
    return _Scan(tuple(segments), None)


def _open(scan: _Scan, place_id: str, at: datetime) -> _Scan:
    segment = StaySegment(place_id=place_id, enter_at=at)
    return _Scan(scan.segments + (segment,), len(scan.segments))


def _on_enter(scan: _Scan, place_id: str, at: datetime) -> _Scan:
    return _open(_close_open(scan, at), place_id, at)


def _on_dwell(scan: _Scan, place_id: str, at: datetime) -> _Scan:
    current = scan.open_segment
    if current is not None and current.place_id == place_id:
        return scan
    return _open(scan, place_id, at)


def _on_exit(scan: _Scan, place_id: str, at: datetime) -> _Scan:
    current = scan.open_segment
    if current is not None and current.place_id == place_id:
        return _close_open(scan, at)
    instant = StaySegment(place_id=place_id, enter_at=at, exit_at=at, duration_min=0)
    return _Scan(scan.segments + (instant,), scan.open_index)


_TRANSITIONS = {
    "enter": _on_enter,
    "dwell": _on_dwell,
    "exit": _on_exit,
}


def step(scan: _Scan, event: StoredEvent) -> _Scan:
    """Apply one location event to the scan state."""

    transition = _TRANSITIONS.get(event.payload.get("event"))
    place_id = event.payload.get("place_id")
    if transition is None or not place_id:
        # Validated at ingest; rows written before payload schemas existed may not be.
        logger.warning("Skipping malformed location event %s", event.event_id)
        return scan
    return transition(scan, place_id, event.ts)


@dataclass(frozen=True)
class SegmentationResult:
    segments: List[StaySegment]
    event_ids: List[str]


def location_events(events: Iterable[StoredEvent]) -> List[StoredEvent]:
    """Location-typed events only, in timestamp order (stable for ties)."""

    return sorted((e for e in events if e.type == "location"), key=lambda e: e.ts)


def aggregate_location_events(events: Sequence[StoredEvent]) -> SegmentationResult:
    """Fold a batch of events into stay segments.

    Non-location events are ignored. Returns the segments in start order
    and the ids of every location event consumed by the scan.
    """

    ordered = location_events(events)
    scan = reduce(step, ordered, _EMPTY)
    return SegmentationResult(
        segments=list(scan.segments),
        event_ids=[e.event_id for e in ordered],
    )
