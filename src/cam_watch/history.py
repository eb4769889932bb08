"""Motion history image accumulated over a motion episode."""
from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

import cv2
import numpy as np
import simplejpeg

from .config import OutputSettings
from .events import Event, EventBus, EventKind
from .recording import recording_path
from .store import EventStore

logger = logging.getLogger(__name__)

HISTORY_SUFFIX = "motion"


def encode_history(image: np.ndarray, extension: str, jpeg_quality: int = 90) -> bytes:
    """Encode a single channel history image as PNG or JPEG."""

    if extension in {".jpg", ".jpeg"}:
        gray = np.ascontiguousarray(image.reshape(image.shape[0], image.shape[1], 1))
        return simplejpeg.encode_jpeg(gray, quality=jpeg_quality, colorspace="GRAY")
    ok, buffer = cv2.imencode(extension, image)
    if not ok:
        raise ValueError(f"Unable to encode history image as {extension}")
    return buffer.tobytes()


class HistoryAccumulator:
    """OR together every motion mask of an episode and save the result.

    Pixels that moved at any point end up dark on a white background once
    the episode stops.
    """

    def __init__(
        self,
        store: EventStore,
        device_name: str,
        output: OutputSettings,
        *,
        extension: str = ".png",
        jpeg_quality: int = 90,
    ) -> None:
        self._store = store
        self._device_name = device_name
        self._output = output
        self._extension = extension
        self._jpeg_quality = jpeg_quality
        self._accumulator: np.ndarray | None = None
        self._episode: datetime | None = None
        self._last_path: Path | None = None

    def attach(self, bus: EventBus) -> "HistoryAccumulator":
        bus.subscribe(EventKind.HISTORY_START, self.on_start)
        bus.subscribe(EventKind.HISTORY_FRAME, self.on_merge)
        bus.subscribe(EventKind.HISTORY_RESET, self.on_merge)
        bus.subscribe(EventKind.HISTORY_STOP, self.on_stop)
        return self

    @property
    def active(self) -> bool:
        return self._accumulator is not None

    @property
    def accumulator(self) -> np.ndarray | None:
        return self._accumulator

    @property
    def last_path(self) -> Path | None:
        return self._last_path

    # ------------------------------------------------------------------
    def on_start(self, event: Event) -> None:
        frame = event.frame
        if frame is None:
            return
        self._accumulator = np.zeros_like(frame.pixels)
        self._episode = event.timestamp
        self._merge(frame.pixels)

    def on_merge(self, event: Event) -> None:
        frame = event.frame
        if frame is not None and self._accumulator is not None:
            self._merge(frame.pixels)

    def on_stop(self, event: Event) -> None:
        if self._accumulator is None:
            return
        frame = event.frame
        if frame is not None:
            self._merge(frame.pixels)
        episode = self._episode or event.timestamp
        image = self.finish()
        if image is None:  # pragma: no cover - guarded above
            return
        path = recording_path(
            self._output.path,
            self._device_name,
            episode,
            self._output.dir_pattern,
            self._output.file_pattern,
            HISTORY_SUFFIX,
            self._extension.lstrip("."),
        )
        path.write_bytes(encode_history(image, self._extension, self._jpeg_quality))
        self._last_path = path
        logger.info("Motion history saved to %s", path)
        self._store.create_event(self._device_name, EventKind.HISTORY_STOP.name, str(path), event.timestamp)

    def finish(self) -> np.ndarray | None:
        """Close the episode and return the inverted history image."""

        accumulator = self._accumulator
        self._accumulator = None
        self._episode = None
        if accumulator is None:
            return None
        return cv2.bitwise_not(accumulator)

    def _merge(self, mask: np.ndarray) -> None:
        accumulator = self._accumulator
        if accumulator is None:
            return
        if mask.shape != accumulator.shape:
            logger.warning("Skipping history mask %s, expected %s", mask.shape, accumulator.shape)
            return
        cv2.bitwise_or(accumulator, mask, dst=accumulator)


__all__ = ["HISTORY_SUFFIX", "HistoryAccumulator", "encode_history"]
