"""Unit tests for digest message and payload construction."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from digest import (
    build_digest_message,
    build_sink_payload,
    generate_digest,
    render_segment,
    resolve_timezone,
)
from fakes import loc, make_event
from models import StaySegment

TOKYO = resolve_timezone("Asia/Tokyo")


def _segment(place_id: str, enter: str, exit_: str | None = None, duration: int | None = None) -> StaySegment:
    return StaySegment(
        place_id=place_id,
        enter_at=datetime.fromisoformat(enter),
        exit_at=datetime.fromisoformat(exit_) if exit_ else None,
        duration_min=duration,
    )


def test_message_for_no_segments() -> None:
    assert build_digest_message([], TOKYO) == "[LocationDigest] イベントなし"


def test_open_segment_renders_as_arrival() -> None:
    segment = _segment("office", "2025-02-23T10:30:00+09:00")

    assert render_segment(segment, TOKYO) == "10:30 office到着"


def test_zero_span_segment_renders_as_arrival() -> None:
    segment = _segment("gym", "2025-02-23T20:00:00+09:00", "2025-02-23T20:00:00+09:00", 0)

    assert render_segment(segment, TOKYO) == "20:00 gym到着"


def test_segments_are_joined_with_arrows() -> None:
    message = build_digest_message(
        [
            _segment("home", "2025-02-23T08:00:00+09:00", "2025-02-23T09:00:00+09:00", 60),
            _segment("office", "2025-02-23T09:30:00+09:00"),
        ],
        TOKYO,
    )

    assert message == "[LocationDigest] 08:00-09:00 home → 09:30 office到着"


def test_times_render_in_display_timezone() -> None:
    segment = _segment("home", "2025-02-22T23:00:00+00:00")

    assert render_segment(segment, TOKYO) == "08:00 home到着"
    assert render_segment(segment, timezone.utc) == "23:00 home到着"


def test_generate_digest_returns_none_for_empty_batch() -> None:
    assert generate_digest([], TOKYO) is None


def test_generate_digest_builds_payload() -> None:
    events = [
        loc("enter", "office", "2025-02-23T10:00:00+09:00", "fff-1"),
        loc("exit", "office", "2025-02-23T10:30:00+09:00", "fff-2"),
    ]

    digest = generate_digest(events, TOKYO)

    assert uuid.UUID(digest.digest_id).version == 4
    assert digest.message == "[LocationDigest] 10:00-10:30 office"
    assert digest.payload.type == "location"
    assert len(digest.payload.segments) == 1
    assert digest.payload.event_ids == ["fff-1", "fff-2"]
    assert digest.payload.period_start == datetime(2025, 2, 23, 1, 0, tzinfo=timezone.utc)
    assert digest.payload.period_end == datetime(2025, 2, 23, 1, 30, tzinfo=timezone.utc)


def test_generate_digest_counts_other_event_types() -> None:
    events = [
        loc("enter", "home", "2025-02-23T10:00:00+09:00", "ggg-1"),
        make_event(
            event_id="ggg-2",
            type="email",
            ts="2025-02-23T10:05:00+09:00",
            payload={"subject": "test", "from": "a@b.com"},
        ),
        make_event(
            event_id="ggg-3",
            type="todo",
            ts="2025-02-23T10:10:00+09:00",
            payload={"task_id": "t1", "old_status": "pending", "new_status": "done"},
        ),
    ]

    digest = generate_digest(events, TOKYO)

    assert "メール1件" in digest.message
    assert "タスク変更1件" in digest.message
    assert digest.message == "[LocationDigest] 10:00 home到着 | メール1件, タスク変更1件"
    assert sorted(digest.payload.event_ids) == ["ggg-1", "ggg-2", "ggg-3"]


def test_generate_digest_without_location_events() -> None:
    events = [
        make_event(type="vital", ts="2025-02-23T06:30:00+09:00", payload={"sub_type": "wake"}),
        make_event(type="vital", ts="2025-02-23T07:30:00+09:00", payload={"sub_type": "exercise"}),
    ]

    digest = generate_digest(events, TOKYO)

    assert digest.message == "[LocationDigest] イベントなし | バイタル2件"
    assert digest.payload.segments == []
    assert len(digest.payload.event_ids) == 2


def test_each_digest_gets_a_fresh_id() -> None:
    events = [loc("enter", "home", "2025-02-23T10:00:00+09:00")]

    assert generate_digest(events, TOKYO).digest_id != generate_digest(events, TOKYO).digest_id


def test_payload_serializes_to_json_types() -> None:
    digest = generate_digest([loc("enter", "home", "2025-02-23T10:00:00+09:00")], TOKYO)

    dumped = digest.payload.model_dump(mode="json")

    assert dumped["segments"][0]["exit_at"] is None
    assert dumped["segments"][0]["duration_min"] is None
    assert isinstance(dumped["period_start"], str)


def test_sink_payload_structure() -> None:
    payload = build_sink_payload("abc", "[LocationDigest] イベントなし")

    assert payload == {
        "message": "[digest:abc] [LocationDigest] イベントなし",
        "name": "EventDigest",
        "wakeMode": "now",
        "deliver": True,
        "channel": "last",
    }


def test_sink_message_is_passed_through_verbatim() -> None:
    assert build_sink_payload("abc", "trailing  ")["message"] == "[digest:abc] trailing  "
    assert build_sink_payload("abc", None)["message"] == "[digest:abc]"
