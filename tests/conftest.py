"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from fakes import FIXED_NOW, InMemoryDigestRepo, InMemoryEventRepo, InMemoryPlaceRepo, RecordingSink
from service_events import EventService


@pytest.fixture
def event_repo() -> InMemoryEventRepo:
    return InMemoryEventRepo()


@pytest.fixture
def digest_repo() -> InMemoryDigestRepo:
    return InMemoryDigestRepo()


@pytest.fixture
def place_repo() -> InMemoryPlaceRepo:
    return InMemoryPlaceRepo()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def service(event_repo, digest_repo, place_repo) -> EventService:
    return EventService(event_repo, digest_repo, place_repo, now=lambda: FIXED_NOW)


@pytest.fixture
def sample_event() -> dict:
    return {
        "event_id": "550e8400-e29b-41d4-a716-446655440000",
        "type": "location",
        "ts": "2025-02-23T10:30:00+09:00",
        "payload": {
            "event": "enter",
            "place_id": "office",
            "lat": 34.855,
            "lng": 136.381,
            "accuracy_m": 15,
        },
        "device_id": "android-main",
        "meta": {"source": "tasker"},
    }
