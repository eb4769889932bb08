"""Wire the frame pipeline together and run it on a background thread."""
from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from .cleaner import Cleaner, CleanerService
from .config import DaemonConfig
from .detection import DetectionGate, DetectorClient
from .events import Event, EventBus, EventKind
from .frames import FrameSource, FrameSourceError, create_frame_source
from .history import HistoryAccumulator
from .motion import MotionDetector, MotionEngine, load_ignore_mask
from .recording import Recorder, RecordingController, create_recorder
from .store import EventStore

logger = logging.getLogger(__name__)


class Daemon:
    """Own every pipeline component and the substream read loop.

    The loop publishes FRAME for each frame. When the source fails it
    publishes FRAME_ERROR followed by SHUT_DOWN and exits.
    """

    def __init__(
        self,
        config: DaemonConfig,
        *,
        source: FrameSource | None = None,
        recorder: Recorder | None = None,
        store: EventStore | None = None,
        detector: DetectorClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._device_name = config.device.name
        self._owns_store = store is None
        self._store = store if store is not None else EventStore(config.storage.database)
        self._bus = EventBus()
        self._source = source if source is not None else create_frame_source(
            config.substream.source,
            timeout=config.substream.timeout_s,
            fps=config.substream.fps,
            input_args=config.substream.input_args,
            ffmpeg_bin=config.output.ffmpeg_bin,
        )
        self._recorder = recorder if recorder is not None else create_recorder(
            config.mainstream.recorder,
            config.mainstream,
            config.output,
            self._device_name,
        )
        # Recording subscribes first so motion events carry the current file.
        self._controller = RecordingController(
            self._bus,
            self._recorder,
            config.mainstream.length_s,
            clock=clock,
        ).attach()
        ignore_mask = load_ignore_mask(config.motion.ignore_mask) if config.motion.ignore_mask else None
        self._engine = MotionEngine(config.motion, ignore_mask)
        self._motion = MotionDetector(self._bus, self._engine, self._store, self._device_name).attach()
        self._gate: DetectionGate | None = None
        if config.detection.enabled or detector is not None:
            client = detector if detector is not None else DetectorClient(
                config.detection.url,
                timeout=config.detection.timeout_s,
            )
            self._gate = DetectionGate(
                self._store,
                client,
                enabled=config.detection.enabled,
                jpeg_quality=config.detection.jpeg_quality,
            ).attach(self._bus)
        self._history = HistoryAccumulator(
            self._store,
            self._device_name,
            config.output,
            extension=config.history.extension,
        ).attach(self._bus)
        self._cleaner = CleanerService(
            Cleaner(self._store, self._device_name, config.device.clean_age_s),
            config.device.clean_interval_s,
        )
        self._bus.subscribe(EventKind.START_UP, self._on_lifecycle)
        self._bus.subscribe(EventKind.SHUT_DOWN, self._on_lifecycle)
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._timer: threading.Timer | None = None
        self._error: BaseException | None = None
        self._frames = 0
        self._stopped = False
        self._shutdown_lock = threading.Lock()
        self._shutdown_seen = False

    # ------------------------------------------------------------------
    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def store(self) -> EventStore:
        return self._store

    @property
    def controller(self) -> RecordingController:
        return self._controller

    @property
    def motion(self) -> MotionDetector:
        return self._motion

    @property
    def history(self) -> HistoryAccumulator:
        return self._history

    @property
    def gate(self) -> DetectionGate | None:
        return self._gate

    @property
    def error(self) -> BaseException | None:
        return self._error

    @property
    def frames(self) -> int:
        return self._frames

    @property
    def running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    # ------------------------------------------------------------------
    def start(self) -> None:
        device = self._config.substream.device
        logger.info("Starting substream %s", device)
        if not self._source.open(device):
            raise FrameSourceError(f"Unable to open substream {device}")
        self._bus.publish(Event.now(EventKind.START_UP, self._device_name))
        self._cleaner.start()
        runtime = self._config.device.runtime_s
        if runtime is not None:
            self._timer = threading.Timer(float(runtime), self.request_shutdown, args=("Runtime elapsed",))
            self._timer.daemon = True
            self._timer.start()
        self._thread = threading.Thread(target=self._run, name="CamWatchPipeline", daemon=True)
        self._thread.start()

    def request_shutdown(self, reason: str = "Shutdown requested") -> None:
        if self._shutdown_seen or self._stop_event.is_set():
            return
        logger.info("Sending shutdown event")
        self._bus.publish(Event.now(EventKind.SHUT_DOWN, reason))

    def wait(self, timeout: float | None = None) -> bool:
        """Block until SHUT_DOWN was handled or the loop ended."""

        return self._stop_event.wait(timeout)

    def stop(self, timeout: float = 5.0) -> None:
        if self._stopped:
            return
        self._stopped = True
        self._stop_event.set()
        if self._timer is not None:
            self._timer.cancel()
        self._cleaner.stop(timeout)
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("Pipeline thread did not stop within %.1fs", timeout)
        self._controller.close(timeout)
        self._source.close()
        self._bus.close(wait=True)
        if self._gate is not None:
            self._gate.close()
        if self._owns_store:
            self._store.close()
        logger.info("Stopped after %d frames", self._frames)

    def join(self, timeout: float | None = None) -> None:
        thread = self._thread
        if thread is not None:
            thread.join(timeout)

    # ------------------------------------------------------------------
    def _run(self) -> None:
        try:
            while not self._stop_event.is_set():
                frame = self._source.get_frame()
                if self._stop_event.is_set():
                    break
                if frame is None:
                    logger.error("Substream %s stopped delivering frames", self._config.substream.device)
                    self._bus.publish(Event.now(EventKind.FRAME_ERROR, "Frame source failure"))
                    self.request_shutdown("Frame source failure")
                    break
                self._frames += 1
                self._bus.publish(Event(EventKind.FRAME, frame.timestamp, frame))
        except Exception as exc:
            self._error = exc
            logger.exception("Pipeline stopped on unexpected error")
            self.request_shutdown(f"Pipeline error: {exc}")
        finally:
            self._stop_event.set()

    def _on_lifecycle(self, event: Event) -> None:
        shutting_down = event.kind is EventKind.SHUT_DOWN
        if shutting_down:
            with self._shutdown_lock:
                if self._shutdown_seen:
                    return
                self._shutdown_seen = True
        self._store.create_event(self._device_name, event.kind.name, event.text, event.timestamp)
        if shutting_down:
            self._stop_event.set()


__all__ = ["Daemon"]
