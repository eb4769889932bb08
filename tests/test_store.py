from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from cam_watch.store import EventStore

_NOW = datetime(2024, 5, 8, 12, 0, tzinfo=timezone.utc)


def test_events_round_trip_through_sqlite(tmp_path: Path) -> None:
    db = tmp_path / "data" / "events.db"
    store = EventStore(db)
    record = store.create_event("front", "MOTION_START", "/videos/a.mkv", _NOW)

    reopened = EventStore(db)
    fetched = reopened.get_event(record.id)
    assert fetched == record
    assert fetched is not None and fetched.event_time.tzinfo is not None
    assert fetched.to_dict()["event_time"] == _NOW.isoformat()
    assert reopened.get_event(9999) is None


def test_naive_timestamps_are_treated_as_utc() -> None:
    store = EventStore(":memory:")
    record = store.create_event("front", "START_UP", None, datetime(2024, 5, 8, 12, 0))
    assert record.event_time == _NOW


def test_list_events_filters_by_device_and_kind() -> None:
    store = EventStore(":memory:")
    store.create_event("front", "MOTION_START", None, _NOW)
    store.create_event("back", "MOTION_START", None, _NOW)
    store.create_event("front", "RECORD_START", "a.mkv", _NOW)

    assert len(store.list_events()) == 3
    assert [r.event_type for r in store.list_events("front")] == ["MOTION_START", "RECORD_START"]
    assert [r.device_name for r in store.list_events(kinds=["MOTION_START"])] == ["front", "back"]


def test_validation_errors() -> None:
    store = EventStore(":memory:")
    with pytest.raises(ValueError):
        store.create_event("", "MOTION_START", None, _NOW)
    frame = store.create_frame(None, _NOW)
    with pytest.raises(ValueError):
        store.add_detection(frame.id, "x" * 51, 0.5, (0, 0, 1, 1))


def test_find_old_events_returns_only_file_events() -> None:
    store = EventStore(":memory:")
    old = _NOW - timedelta(days=10)
    store.create_event("front", "RECORD_START", "old.mkv", old)
    store.create_event("front", "HISTORY_STOP", "old.png", old)
    store.create_event("front", "MOTION_START", "old.mkv", old)
    store.create_event("front", "RECORD_START", "new.mkv", _NOW)
    store.create_event("back", "RECORD_START", "other.mkv", old)

    found = store.find_events_older_than("front", _NOW - timedelta(days=7))
    assert [record.event_data for record in found] == ["old.mkv", "old.png"]


def test_delete_old_events_keeps_lifecycle_and_cascades() -> None:
    store = EventStore(":memory:")
    old = _NOW - timedelta(days=10)
    store.create_event("front", "START_UP", "front", old)
    motion = store.create_event("front", "MOTION_START", None, old)
    store.create_event("front", "SHUT_DOWN", "done", old)
    keep = store.create_event("front", "MOTION_START", None, _NOW)
    frame = store.create_frame(motion.id, old)
    store.add_detection(frame.id, "person", 0.9, (1, 2, 3, 4))
    kept_frame = store.create_frame(keep.id, _NOW)

    removed = store.delete_events_older_than("front", _NOW - timedelta(days=7))

    assert removed == 1
    assert [r.event_type for r in store.list_events()] == ["START_UP", "SHUT_DOWN", "MOTION_START"]
    assert store.list_frames() == [kept_frame]
    assert store.list_detections(frame.id) == []
