"""Background subtraction motion detection."""
from __future__ import annotations

import logging
import math
from enum import Enum
from pathlib import Path

import cv2
import numpy as np

from .config import MotionSettings
from .events import Event, EventBus, EventKind
from .frames import Frame
from .store import EventStore

logger = logging.getLogger(__name__)


class MotionTransition(Enum):
    """Outcome of classifying the latest frame against the motion state."""

    IDLE = "idle"
    RESET = "reset"
    START = "start"
    STOP = "stop"
    CONTINUE = "continue"


def load_ignore_mask(path: Path | str) -> np.ndarray:
    """Read an ignore mask image as single channel intensity."""

    mask = cv2.imread(str(path), cv2.IMREAD_GRAYSCALE)
    if mask is None:
        raise FileNotFoundError(f"Unable to read ignore mask {path}")
    return mask


class MotionEngine:
    """Moving average background model measuring percent of changed pixels.

    All buffers are owned by the engine and refilled on every call to
    :meth:`detect`; :attr:`mask` is only valid until the next frame.
    """

    def __init__(self, settings: MotionSettings, ignore_mask: np.ndarray | None = None) -> None:
        self._settings = settings
        self._kernel = (int(settings.kernel_size[0]), int(settings.kernel_size[1]))
        self._ignore_mask = ignore_mask
        self._background: np.ndarray | None = None
        self._mask: np.ndarray | None = None
        self._percent_changed = 0.0

    @property
    def settings(self) -> MotionSettings:
        return self._settings

    @property
    def percent_changed(self) -> float:
        return self._percent_changed

    @property
    def mask(self) -> np.ndarray | None:
        return self._mask

    @property
    def background(self) -> np.ndarray | None:
        return self._background

    def reset(self) -> None:
        self._background = None
        self._percent_changed = 0.0

    def detect(self, pixels: np.ndarray) -> float:
        settings = self._settings
        work = cv2.blur(pixels, self._kernel)
        if self._background is None or self._background.shape != work.shape:
            self._background = work.astype(np.float32)
        cv2.accumulateWeighted(work, self._background, settings.alpha)
        scaled = cv2.convertScaleAbs(self._background)
        diff = cv2.absdiff(work, scaled)
        gray = self._to_gray(diff)
        if self._mask is None or self._mask.shape != gray.shape:
            self._mask = np.empty(gray.shape, dtype=np.uint8)
        # For uint8 input "> ceil(t) - 1" is ">= t".
        cv2.threshold(
            gray,
            math.ceil(settings.black_threshold) - 1,
            settings.max_threshold,
            cv2.THRESH_BINARY,
            dst=self._mask,
        )
        ignore = self._resolve_ignore_mask(self._mask.shape)
        if ignore is not None:
            cv2.bitwise_and(self._mask, ignore, dst=self._mask)
        self._percent_changed = 100.0 * cv2.countNonZero(self._mask) / float(self._mask.size)
        if self._percent_changed > settings.max_change:
            # Camera is adjusting (exposure, IR switch): start a fresh reference.
            self._background = work.astype(np.float32)
            logger.info("Motion reset %.2f%%", self._percent_changed)
        return self._percent_changed

    def classify(self, motion_active: bool, percent: float | None = None) -> MotionTransition:
        """Map the last measurement, or *percent*, onto exactly one transition."""

        settings = self._settings
        if percent is None:
            percent = self._percent_changed
        if percent > settings.max_change:
            return MotionTransition.RESET
        if percent > settings.start_threshold and not motion_active:
            return MotionTransition.START
        if percent <= settings.stop_threshold and motion_active:
            return MotionTransition.STOP
        if motion_active:
            return MotionTransition.CONTINUE
        return MotionTransition.IDLE

    @staticmethod
    def _to_gray(image: np.ndarray) -> np.ndarray:
        if image.ndim == 2:
            return image
        channels = image.shape[2]
        if channels == 1:
            return image[:, :, 0]
        if channels == 4:
            return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
        return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)

    def _resolve_ignore_mask(self, shape: tuple[int, ...]) -> np.ndarray | None:
        mask = self._ignore_mask
        if mask is None or mask.shape == shape:
            return mask
        height, width = shape[:2]
        logger.warning(
            "Ignore mask %dx%d does not match frame %dx%d, resizing",
            mask.shape[1],
            mask.shape[0],
            width,
            height,
        )
        self._ignore_mask = cv2.resize(mask, (width, height), interpolation=cv2.INTER_NEAREST)
        return self._ignore_mask


_PAIRS: dict[MotionTransition, tuple[EventKind, EventKind]] = {
    MotionTransition.RESET: (EventKind.MOTION_RESET, EventKind.HISTORY_RESET),
    MotionTransition.START: (EventKind.MOTION_START, EventKind.HISTORY_START),
    MotionTransition.STOP: (EventKind.MOTION_STOP, EventKind.HISTORY_STOP),
    MotionTransition.CONTINUE: (EventKind.MOTION_FRAME, EventKind.HISTORY_FRAME),
}


class MotionDetector:
    """Drive the motion state machine from FRAME events.

    Owns the ``motion_active`` flag. Every motion event except
    MOTION_FRAME is persisted, and the stored MOTION_START record is
    published as MOTION_START_ENTITY.
    """

    def __init__(self, bus: EventBus, engine: MotionEngine, store: EventStore, device_name: str) -> None:
        self._bus = bus
        self._engine = engine
        self._store = store
        self._device_name = device_name
        self._motion_active = False
        self._file_name: str | None = None

    def attach(self) -> "MotionDetector":
        self._bus.subscribe(EventKind.FRAME, self.on_frame)
        self._bus.subscribe(EventKind.FRAME_ERROR, self.on_frame_error)
        self._bus.subscribe(EventKind.RECORD_START, self.on_record_event)
        self._bus.subscribe(EventKind.RECORD_STOP, self.on_record_event)
        return self

    @property
    def motion_active(self) -> bool:
        return self._motion_active

    @property
    def engine(self) -> MotionEngine:
        return self._engine

    # ------------------------------------------------------------------
    def on_frame(self, event: Event) -> None:
        frame = event.frame
        if frame is None:
            return
        engine = self._engine
        engine.detect(frame.pixels)
        transition = engine.classify(self._motion_active)
        if transition is MotionTransition.IDLE:
            return
        if transition is MotionTransition.START:
            logger.info("Motion start %.2f%%", engine.percent_changed)
            self._motion_active = True
        elif transition is MotionTransition.STOP:
            logger.info("Motion stop %.2f%%", engine.percent_changed)
            self._motion_active = False
        motion_kind, history_kind = _PAIRS[transition]
        self._publish(motion_kind, history_kind, event, frame)

    def on_frame_error(self, event: Event) -> None:
        self._motion_active = False
        self._publish(EventKind.MOTION_STOP, EventKind.HISTORY_STOP, event, None)

    def on_record_event(self, event: Event) -> None:
        if event.kind is EventKind.RECORD_START:
            self._file_name = event.text
        self._store.create_event(self._device_name, event.kind.name, self._file_name, event.timestamp)

    # ------------------------------------------------------------------
    def _publish(
        self,
        motion_kind: EventKind,
        history_kind: EventKind,
        source: Event,
        frame: Frame | None,
    ) -> None:
        timestamp = source.timestamp
        mask = self._engine.mask
        self._bus.publish(Event(motion_kind, timestamp, frame))
        self._bus.publish(Event(history_kind, timestamp, Frame(mask, timestamp) if mask is not None else None))
        if motion_kind is EventKind.MOTION_FRAME:
            return
        record = self._store.create_event(self._device_name, motion_kind.name, self._file_name, timestamp)
        if motion_kind is EventKind.MOTION_START:
            self._bus.publish(Event(EventKind.MOTION_START_ENTITY, timestamp, record))


__all__ = [
    "MotionDetector",
    "MotionEngine",
    "MotionTransition",
    "load_ignore_mask",
]
