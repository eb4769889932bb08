"""Single-flight remote object detection on motion frames."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping

import httpx
import numpy as np
import simplejpeg

from .events import Event, EventBus, EventKind
from .store import EventStore

logger = logging.getLogger(__name__)

DETECTION_PATH = "/v1/vision/detection"


class DetectionError(RuntimeError):
    """Raised when the remote detector cannot produce predictions."""


@dataclass(frozen=True, slots=True)
class Prediction:
    label: str
    confidence: float
    x_min: int
    y_min: int
    x_max: int
    y_max: int

    @property
    def box(self) -> tuple[int, int, int, int]:
        return (self.x_min, self.y_min, self.x_max, self.y_max)


def parse_predictions(payload: Any) -> list[Prediction]:
    """Convert a detector response body into :class:`Prediction` objects."""

    if not isinstance(payload, Mapping):
        raise DetectionError("Detector response must be an object")
    if payload.get("success") is False:
        raise DetectionError(str(payload.get("error") or "Detector reported failure"))
    raw = payload.get("predictions") or []
    if not isinstance(raw, list):
        raise DetectionError("Detector predictions must be a list")
    predictions: list[Prediction] = []
    for entry in raw:
        if not isinstance(entry, Mapping):
            raise DetectionError("Detector prediction must be an object")
        try:
            predictions.append(
                Prediction(
                    label=str(entry["label"]),
                    confidence=float(entry["confidence"]),
                    x_min=int(entry["x_min"]),
                    y_min=int(entry["y_min"]),
                    x_max=int(entry["x_max"]),
                    y_max=int(entry["y_max"]),
                )
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise DetectionError(f"Malformed detector prediction: {entry!r}") from exc
    return predictions


class DetectorClient:
    """HTTP client for a DeepStack compatible detection endpoint."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._url = url.rstrip("/")
        self._client = httpx.Client(base_url=self._url, timeout=timeout, transport=transport)

    @property
    def url(self) -> str:
        return self._url

    def detect(self, image: bytes, *, filename: str = "frame.jpg") -> list[Prediction]:
        try:
            response = self._client.post(
                DETECTION_PATH,
                files={"image": (filename, image, "image/jpeg")},
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as exc:
            raise DetectionError(f"Detector request failed: {exc}") from exc
        except ValueError as exc:
            raise DetectionError("Detector returned invalid JSON") from exc
        return parse_predictions(payload)

    def close(self) -> None:
        self._client.close()


def encode_frame(pixels: np.ndarray, quality: int = 90) -> bytes:
    """JPEG encode a BGR or grayscale frame."""

    if pixels.ndim == 2:
        return simplejpeg.encode_jpeg(
            np.ascontiguousarray(pixels[:, :, np.newaxis]), quality=quality, colorspace="GRAY"
        )
    return simplejpeg.encode_jpeg(np.ascontiguousarray(pixels), quality=quality, colorspace="BGR")


class DetectionGate:
    """Run at most one detection request at a time on MOTION_FRAME events.

    Frames arriving while a request is in flight are dropped, never
    queued. Frames with at least one prediction are stored with their
    detections against the current motion episode.
    """

    def __init__(
        self,
        store: EventStore,
        client: DetectorClient,
        *,
        enabled: bool = True,
        jpeg_quality: int = 90,
    ) -> None:
        self._store = store
        self._client = client
        self._enabled = bool(enabled)
        self._jpeg_quality = max(1, min(100, int(jpeg_quality)))
        self._busy = threading.Lock()
        self._stats_lock = threading.Lock()
        self._event_id: int | None = None
        self._requests = 0
        self._dropped = 0
        self._failures = 0
        self._stored = 0

    def attach(self, bus: EventBus) -> "DetectionGate":
        bus.subscribe(EventKind.MOTION_START_ENTITY, self.on_motion_start_entity)
        bus.subscribe(EventKind.MOTION_FRAME, self.detect, worker=True, admit=self.admit, reject=self.reject)
        return self

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def busy(self) -> bool:
        return self._busy.locked()

    @property
    def event_id(self) -> int | None:
        return self._event_id

    # ------------------------------------------------------------------
    def on_motion_start_entity(self, event: Event) -> None:
        record = event.entity
        if record is not None:
            self._event_id = record.id

    def admit(self, event: Event) -> Event | None:
        """Claim the in-flight slot and hand over a private frame copy."""

        if not self._enabled:
            return None
        frame = event.frame
        if frame is None:
            return None
        if not self._busy.acquire(blocking=False):
            with self._stats_lock:
                self._dropped += 1
            return None
        return event.with_payload(frame.copy())

    def reject(self, event: Event) -> None:
        """Release the slot claimed by :meth:`admit` for a frame never queued."""

        with self._stats_lock:
            self._dropped += 1
        self._busy.release()

    def detect(self, event: Event) -> None:
        try:
            frame = event.frame
            if frame is None:
                return
            image = encode_frame(frame.pixels, self._jpeg_quality)
            with self._stats_lock:
                self._requests += 1
            try:
                predictions = self._client.detect(image)
            except DetectionError as exc:
                with self._stats_lock:
                    self._failures += 1
                logger.warning("Object detection failed: %s", exc)
                return
            if predictions:
                logger.debug("Detections %s", predictions)
                self._persist(predictions)
        finally:
            self._busy.release()

    def snapshot(self) -> dict[str, object]:
        with self._stats_lock:
            return {
                "enabled": self._enabled,
                "busy": self.busy,
                "requests": self._requests,
                "dropped": self._dropped,
                "failures": self._failures,
                "stored": self._stored,
                "event_id": self._event_id,
            }

    def close(self) -> None:
        self._client.close()

    def _persist(self, predictions: list[Prediction]) -> None:
        record = self._store.create_frame(self._event_id, datetime.now(timezone.utc))
        for prediction in predictions:
            self._store.add_detection(record.id, prediction.label, prediction.confidence, prediction.box)
        with self._stats_lock:
            self._stored += 1


__all__ = [
    "DETECTION_PATH",
    "DetectionError",
    "DetectionGate",
    "DetectorClient",
    "Prediction",
    "encode_frame",
    "parse_predictions",
]
