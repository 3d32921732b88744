"""
Digest construction: compress one batch of events into a short message
plus a structured payload for the notification sink.

Example message:
    [LocationDigest] 08:00-09:00 home → 09:30 office到着 | メール1件, タスク変更1件
"""

import uuid
from collections import Counter
from datetime import tzinfo
from typing import List, Optional, Sequence
from zoneinfo import ZoneInfo

from models import Digest, DigestPayload, StaySegment, StoredEvent
from segmentation import aggregate_location_events


EMPTY_LOCATION_MESSAGE = "[LocationDigest] イベントなし"
LOCATION_PREFIX = "[LocationDigest] "
SEGMENT_SEPARATOR = " → "

# Order here is the order fragments appear in the message.
OTHER_EVENT_LABELS = {
    "email": "メール",
    "todo": "タスク変更",
    "vital": "バイタル",
}

SINK_NAME = "EventDigest"


def resolve_timezone(name: str) -> tzinfo:
    return ZoneInfo(name)


def render_segment(segment: StaySegment, tz: tzinfo) -> str:
    enter = segment.enter_at.astimezone(tz).strftime("%H:%M")
    if segment.exit_at is not None and segment.exit_at != segment.enter_at:
        exit_ = segment.exit_at.astimezone(tz).strftime("%H:%M")
        return f"{enter}-{exit_} {segment.place_id}"
    return f"{enter} {segment.place_id}到着"


def build_digest_message(segments: Sequence[StaySegment], tz: tzinfo) -> str:
    if not segments:
        return EMPTY_LOCATION_MESSAGE
    return LOCATION_PREFIX + SEGMENT_SEPARATOR.join(render_segment(s, tz) for s in segments)


def summarize_other_events(events: Sequence[StoredEvent]) -> List[str]:
    """One `<label><n>件` fragment per non-location type that occurred."""

    counts = Counter(e.type for e in events)
    return [
        f"{label}{counts[event_type]}件"
        for event_type, label in OTHER_EVENT_LABELS.items()
        if counts[event_type] > 0
    ]


def generate_digest(events: Sequence[StoredEvent], tz: tzinfo) -> Optional[Digest]:
    """Build a digest for a batch, or None when the batch is empty.

    `payload.event_ids` lists every event in the batch (all types), since
    that is the set the worker marks processed once the digest is stored.
    """

    if not events:
        return None

    segmentation = aggregate_location_events(events)

    message = build_digest_message(segmentation.segments, tz)
    fragments = summarize_other_events(events)
    if fragments:
        message = f"{message} | {', '.join(fragments)}"

    timestamps = [e.ts for e in events]
    return Digest(
        digest_id=str(uuid.uuid4()),
        message=message,
        payload=DigestPayload(
            segments=segmentation.segments,
            period_start=min(timestamps),
            period_end=max(timestamps),
            event_ids=[e.event_id for e in events],
        ),
    )


def build_sink_payload(digest_id: str, message: Optional[str]) -> dict:
    """Request body for the sink; the `[digest:<id>]` tag lets it drop repeats."""

    tag = f"[digest:{digest_id}]"
    return {
        "message": tag if message is None else f"{tag} {message}",
        "name": SINK_NAME,
        "wakeMode": "now",
        "deliver": True,
        "channel": "last",
    }
