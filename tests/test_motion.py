from __future__ import annotations

from datetime import datetime, timedelta, timezone

import cv2
import numpy as np
import pytest

from cam_watch.config import ConfigError, MotionSettings
from cam_watch.events import Event, EventBus, EventKind
from cam_watch.frames import Frame
from cam_watch.motion import MotionDetector, MotionEngine, MotionTransition, load_ignore_mask
from cam_watch.store import EventStore

_BASE = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _still(value: int = 0) -> np.ndarray:
    return np.full((64, 64, 3), value, dtype=np.uint8)


def _square() -> np.ndarray:
    frame = _still()
    frame[16:48, 16:48, :] = 255
    return frame


class _Harness:
    def __init__(self, settings: MotionSettings | None = None, engine: MotionEngine | None = None) -> None:
        self.bus = EventBus()
        self.store = EventStore(":memory:")
        self.engine = engine or MotionEngine(settings or MotionSettings())
        self.detector = MotionDetector(self.bus, self.engine, self.store, "front").attach()
        self.seen: list[Event] = []
        self._tick = 0
        for kind in EventKind:
            if kind not in (EventKind.FRAME, EventKind.FRAME_ERROR):
                self.bus.subscribe(kind, self.seen.append)

    def feed(self, pixels: np.ndarray) -> list[EventKind]:
        start = len(self.seen)
        self._tick += 1
        timestamp = _BASE + timedelta(seconds=self._tick)
        self.bus.publish(Event(EventKind.FRAME, timestamp, Frame(pixels, timestamp)))
        return [event.kind for event in self.seen[start:]]

    def fail(self) -> list[EventKind]:
        start = len(self.seen)
        self.bus.publish(Event.now(EventKind.FRAME_ERROR, "gone"))
        return [event.kind for event in self.seen[start:]]

    def stored(self) -> list[str]:
        return [record.event_type for record in self.store.list_events()]

    def close(self) -> None:
        self.bus.close()
        self.store.close()


class _ScriptedEngine(MotionEngine):
    """Report a fixed sequence of percentages with a matching 100x100 mask."""

    def __init__(self, percents: list[float], settings: MotionSettings | None = None) -> None:
        super().__init__(settings or MotionSettings())
        self._percents = list(percents)

    def detect(self, pixels: np.ndarray) -> float:
        percent = self._percents.pop(0)
        mask = np.zeros(10000, dtype=np.uint8)
        mask[: int(round(percent * 100))] = 255
        self._mask = mask.reshape(100, 100)
        self._percent_changed = percent
        return percent


def test_engine_measures_changed_area() -> None:
    engine = MotionEngine(MotionSettings())
    assert engine.detect(_still()) == 0.0
    percent = engine.detect(_square())
    # The 32x32 square covers a quarter of the frame, blurring widens it.
    assert 25.0 < percent < 50.0
    assert engine.mask is not None
    assert engine.mask.shape == (64, 64)
    assert set(np.unique(engine.mask)) <= {0, 255}


def test_engine_accepts_grayscale_frames() -> None:
    engine = MotionEngine(MotionSettings())
    engine.detect(np.zeros((64, 64), dtype=np.uint8))
    gray = np.zeros((64, 64), dtype=np.uint8)
    gray[16:48, 16:48] = 255
    assert engine.detect(gray) > 25.0


def test_engine_resets_background_on_global_change() -> None:
    engine = MotionEngine(MotionSettings())
    engine.detect(_still())
    assert engine.detect(_still(255)) > 50.0
    assert engine.classify(False) is MotionTransition.RESET
    # The fresh reference means an unchanged scene reads as still.
    assert engine.detect(_still(255)) == 0.0


def test_ignore_mask_suppresses_motion_and_is_resized() -> None:
    ignore = np.zeros((32, 32), dtype=np.uint8)
    engine = MotionEngine(MotionSettings(), ignore)
    engine.detect(_still())
    assert engine.detect(_square()) == 0.0


def test_load_ignore_mask(tmp_path) -> None:
    path = tmp_path / "mask.png"
    mask = np.full((8, 8), 255, dtype=np.uint8)
    assert cv2.imwrite(str(path), mask)
    loaded = load_ignore_mask(path)
    assert loaded.shape == (8, 8)
    with pytest.raises(FileNotFoundError):
        load_ignore_mask(tmp_path / "missing.png")


def test_classify_hysteresis() -> None:
    engine = MotionEngine(MotionSettings(start_threshold=3.0, stop_threshold=1.0))
    assert engine.classify(False, 2.0) is MotionTransition.IDLE
    assert engine.classify(False, 3.0) is MotionTransition.IDLE
    assert engine.classify(False, 3.1) is MotionTransition.START
    assert engine.classify(True, 2.0) is MotionTransition.CONTINUE
    assert engine.classify(True, 1.0) is MotionTransition.STOP
    assert engine.classify(True, 0.0) is MotionTransition.STOP


def test_classify_reset_is_exclusive() -> None:
    engine = MotionEngine(MotionSettings())
    assert engine.classify(False, 75.0) is MotionTransition.RESET
    assert engine.classify(True, 75.0) is MotionTransition.RESET


def test_start_threshold_must_exceed_stop_threshold() -> None:
    with pytest.raises(ConfigError):
        MotionSettings(start_threshold=1.0, stop_threshold=1.0)


def test_motion_episode_publishes_and_persists() -> None:
    harness = _Harness()
    assert harness.feed(_still()) == []

    started = harness.feed(_square())
    assert started == [EventKind.MOTION_START, EventKind.HISTORY_START, EventKind.MOTION_START_ENTITY]
    assert harness.detector.motion_active is True
    entity = harness.seen[-1].entity
    assert entity is not None
    assert entity.event_type == "MOTION_START"

    assert harness.feed(_square()) == [EventKind.MOTION_FRAME, EventKind.HISTORY_FRAME]

    stopped = harness.feed(_still())
    assert stopped == [EventKind.MOTION_STOP, EventKind.HISTORY_STOP]
    assert harness.detector.motion_active is False
    # Continuation frames are not persisted.
    assert harness.stored() == ["MOTION_START", "MOTION_STOP"]
    harness.close()


def test_history_events_carry_the_mask() -> None:
    harness = _Harness()
    harness.feed(_still())
    harness.feed(_square())
    history = [event for event in harness.seen if event.kind is EventKind.HISTORY_START][0]
    motion = [event for event in harness.seen if event.kind is EventKind.MOTION_START][0]
    assert history.frame is not None
    assert history.frame.pixels.ndim == 2
    assert motion.frame is not None
    assert motion.frame.pixels.shape == (64, 64, 3)
    harness.close()


def test_reset_while_active_keeps_motion_state() -> None:
    harness = _Harness()
    harness.feed(_still())
    harness.feed(_square())

    assert harness.feed(_still(255)) == [EventKind.MOTION_RESET, EventKind.HISTORY_RESET]
    assert harness.detector.motion_active is True

    assert harness.feed(_still(255)) == [EventKind.MOTION_STOP, EventKind.HISTORY_STOP]
    assert harness.stored() == ["MOTION_START", "MOTION_RESET", "MOTION_STOP"]
    harness.close()


def test_reset_while_idle_does_not_start_motion() -> None:
    harness = _Harness()
    harness.feed(_still())
    assert harness.feed(_still(255)) == [EventKind.MOTION_RESET, EventKind.HISTORY_RESET]
    assert harness.detector.motion_active is False
    assert harness.feed(_still(255)) == []
    harness.close()


def test_frame_error_forces_motion_stop() -> None:
    harness = _Harness()
    harness.feed(_still())
    harness.feed(_square())

    assert harness.fail() == [EventKind.MOTION_STOP, EventKind.HISTORY_STOP]
    assert harness.detector.motion_active is False
    stop = [event for event in harness.seen if event.kind is EventKind.MOTION_STOP][0]
    assert stop.frame is None
    assert harness.stored() == ["MOTION_START", "MOTION_STOP"]
    harness.close()


def test_motion_events_reference_current_recording() -> None:
    harness = _Harness()
    harness.bus.publish(Event(EventKind.RECORD_START, _BASE, "/videos/front-main.mkv"))
    harness.feed(_still())
    harness.feed(_square())

    records = harness.store.list_events()
    assert [record.event_type for record in records] == ["RECORD_START", "MOTION_START"]
    assert all(record.event_data == "/videos/front-main.mkv" for record in records)
    harness.close()


def test_quiet_scene_never_starts_motion() -> None:
    settings = MotionSettings(start_threshold=3.0, stop_threshold=1.0)
    percents = [0.0, 0.5, 1.0, 2.0, 2.9, 3.0, 1.5, 0.2, 2.99, 3.0]
    harness = _Harness(engine=_ScriptedEngine(percents, settings))

    published = [kind for _ in percents for kind in harness.feed(_still())]

    assert published == []
    assert harness.detector.motion_active is False
    assert harness.stored() == []
    harness.close()


def test_hysteresis_band_keeps_motion_running() -> None:
    settings = MotionSettings(start_threshold=3.0, stop_threshold=1.0)
    band = [2.9, 1.01, 3.0, 2.0, 1.5, 1.2]
    harness = _Harness(engine=_ScriptedEngine([5.0, *band, 1.0], settings))

    assert harness.feed(_still())[:2] == [EventKind.MOTION_START, EventKind.HISTORY_START]
    for percent in band:
        assert harness.feed(_still()) == [EventKind.MOTION_FRAME, EventKind.HISTORY_FRAME]
        assert harness.detector.motion_active is True
        history = harness.seen[-1].frame
        assert history is not None
        assert cv2.countNonZero(history.pixels) == int(round(percent * 100))

    assert harness.feed(_still()) == [EventKind.MOTION_STOP, EventKind.HISTORY_STOP]
    assert harness.stored() == ["MOTION_START", "MOTION_STOP"]
    harness.close()
