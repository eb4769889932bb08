"""Mainstream recording: recorder backends and the recording state machine."""
from __future__ import annotations

import logging
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Sequence

import av

from .config import MainstreamSettings, OutputSettings
from .events import Event, EventBus, EventKind

logger = logging.getLogger(__name__)

NO_FILE = "No file"


class RecordingError(RuntimeError):
    """Raised when a recording is started while another is still open."""


def recording_path(
    base: Path | str,
    device: str,
    timestamp: datetime,
    dir_pattern: str,
    file_pattern: str,
    suffix: str,
    container: str,
) -> Path:
    """Build ``<base>/<device>/<dir>/<file>-<suffix>.<container>`` in local time.

    The directory is created when missing.
    """

    local = timestamp.astimezone()
    directory = Path(base) / device / local.strftime(dir_pattern)
    directory.mkdir(parents=True, exist_ok=True)
    return directory / f"{local.strftime(file_pattern)}-{suffix}.{container}"


def _args_to_options(args: Sequence[str]) -> dict[str, str]:
    """Convert ffmpeg style ``-key value`` pairs into PyAV options."""

    options: dict[str, str] = {}
    key: str | None = None
    for arg in args:
        if arg.startswith("-") and len(arg) > 1:
            if key is not None:
                options[key] = "1"
            key = arg[1:]
        elif key is not None:
            options[key] = arg
            key = None
    if key is not None:
        options[key] = "1"
    return options


class Recorder(ABC):
    """Record the mainstream to a file in the background."""

    def __init__(self, mainstream: MainstreamSettings, output: OutputSettings, device_name: str) -> None:
        self._mainstream = mainstream
        self._output = output
        self._device_name = device_name
        self._path: Path | None = None

    @property
    def output_path(self) -> Path | None:
        return self._path

    @abstractmethod
    def start(self, timestamp: datetime) -> str | None:
        """Begin a recording and return its file name, if any."""

    @abstractmethod
    def is_done(self) -> bool:
        """Return ``True`` once the current recording has finished."""

    @abstractmethod
    def stop(self, *, force: bool = False) -> None:
        """Request the recording to end without waiting for it."""

    def close(self, timeout: float = 0.0) -> None:
        if not self.is_done():
            self.stop()

    def _next_path(self, timestamp: datetime) -> Path:
        output = self._output
        self._path = recording_path(
            output.path,
            self._device_name,
            timestamp,
            output.dir_pattern,
            output.file_pattern,
            self._mainstream.file_suffix,
            output.container,
        )
        return self._path

    def _ensure_idle(self) -> None:
        if not self.is_done():
            raise RecordingError(
                f"Cannot start recording until previous recording {self._path or NO_FILE} finished"
            )


class FfmpegRecorder(Recorder):
    """Stream copy the mainstream with an external ffmpeg process."""

    def __init__(
        self,
        mainstream: MainstreamSettings,
        output: OutputSettings,
        device_name: str,
        *,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ) -> None:
        super().__init__(mainstream, output, device_name)
        self._popen = popen
        self._process: subprocess.Popen | None = None

    def command(self, path: Path) -> list[str]:
        return [
            self._output.ffmpeg_bin,
            "-hide_banner",
            "-loglevel",
            "error",
            *self._mainstream.input_args,
            "-i",
            self._mainstream.device,
            *self._mainstream.output_args,
            str(path),
        ]

    def start(self, timestamp: datetime) -> str | None:
        self._ensure_idle()
        path = self._next_path(timestamp)
        logger.info("Recording %s starting", path)
        self._process = self._popen(
            self.command(path),
            stdin=subprocess.PIPE,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
        return str(path)

    def is_done(self) -> bool:
        return self._process is None or self._process.poll() is not None

    def stop(self, *, force: bool = False) -> None:
        process = self._process
        if process is None or process.poll() is not None:
            logger.warning("%s not recording", self._path)
            return
        if force:
            logger.info("Recording %s terminating", self._path)
            process.terminate()
            return
        logger.info("Recording %s stopping", self._path)
        try:
            if process.stdin is not None:
                process.stdin.write(b"q")
                process.stdin.flush()
        except (BrokenPipeError, OSError):
            process.terminate()

    def close(self, timeout: float = 0.0) -> None:
        process = self._process
        if process is None:
            return
        if process.poll() is None:
            self.stop()
            try:
                process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                logger.warning("Recording %s did not stop in %.1fs, terminating", self._path, timeout)
                process.terminate()
        if process.stdin is not None:
            try:
                process.stdin.close()
            except OSError:  # pragma: no cover - pipe already gone
                pass


class PyAVRecorder(Recorder):
    """Remux the mainstream in-process with PyAV on a background thread."""

    def __init__(self, mainstream: MainstreamSettings, output: OutputSettings, device_name: str) -> None:
        super().__init__(mainstream, output, device_name)
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()

    def start(self, timestamp: datetime) -> str | None:
        self._ensure_idle()
        path = self._next_path(timestamp)
        logger.info("Recording %s starting", path)
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._remux,
            args=(path, self._stop),
            name="pyav-recorder",
            daemon=True,
        )
        self._thread.start()
        return str(path)

    def is_done(self) -> bool:
        return self._thread is None or not self._thread.is_alive()

    def stop(self, *, force: bool = False) -> None:
        if self.is_done():
            logger.warning("%s not recording", self._path)
            return
        logger.info("Recording %s stopping", self._path)
        self._stop.set()

    def close(self, timeout: float = 0.0) -> None:
        thread = self._thread
        if thread is None:
            return
        if thread.is_alive():
            self._stop.set()
            thread.join(timeout=timeout if timeout > 0 else None)

    def _remux(self, path: Path, stop: threading.Event) -> None:
        options = _args_to_options(self._mainstream.input_args)
        try:
            with av.open(self._mainstream.device, options=options) as source:
                if not source.streams.video:
                    raise RecordingError(f"{self._mainstream.device} has no video stream")
                in_stream = source.streams.video[0]
                with av.open(str(path), mode="w") as sink:
                    out_stream = sink.add_stream_from_template(in_stream)
                    for packet in source.demux(in_stream):
                        if stop.is_set():
                            break
                        # Flush packets carry no timestamps.
                        if packet.dts is None:
                            continue
                        packet.stream = out_stream
                        sink.mux(packet)
        except (av.error.FFmpegError, OSError, RecordingError) as exc:
            logger.error("Recording %s failed: %s", path, exc)


class NullRecorder(Recorder):
    """Produce no output while driving the same start/stop cycle."""

    def __init__(self, mainstream: MainstreamSettings, output: OutputSettings, device_name: str) -> None:
        super().__init__(mainstream, output, device_name)
        self._active = False

    def start(self, timestamp: datetime) -> str | None:
        self._ensure_idle()
        self._active = True
        return None

    def is_done(self) -> bool:
        return not self._active

    def stop(self, *, force: bool = False) -> None:
        self._active = False


RECORDERS: dict[str, type[Recorder]] = {
    "ffmpeg": FfmpegRecorder,
    "pyav": PyAVRecorder,
    "null": NullRecorder,
}


def create_recorder(
    choice: str,
    mainstream: MainstreamSettings,
    output: OutputSettings,
    device_name: str,
) -> Recorder:
    key = str(choice).strip().lower()
    try:
        factory = RECORDERS[key]
    except KeyError as exc:
        raise ValueError(f"Unknown recorder: {choice}") from exc
    return factory(mainstream, output, device_name)


class RecordingState(Enum):
    IDLE = "idle"
    RECORDING = "recording"
    STOPPING = "stopping"


@dataclass(slots=True)
class RecordingSession:
    output: str | None
    started_at: datetime
    deadline: float

    @property
    def label(self) -> str:
        return self.output if self.output is not None else NO_FILE


class RecordingController:
    """Cycle fixed length recordings, extended while motion is active.

    Driven by FRAME events so recordings only rotate while the substream
    is healthy. FRAME_ERROR forces the current recording to stop.
    """

    def __init__(
        self,
        bus: EventBus,
        recorder: Recorder,
        length_s: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._bus = bus
        self._recorder = recorder
        self._length_s = float(length_s)
        self._clock = clock
        self._state = RecordingState.IDLE
        self._session: RecordingSession | None = None
        self._motion_active = False

    def attach(self) -> "RecordingController":
        self._bus.subscribe(EventKind.FRAME, self.on_frame)
        self._bus.subscribe(EventKind.FRAME_ERROR, self.on_frame_error)
        self._bus.subscribe(EventKind.MOTION_START, self.on_motion)
        self._bus.subscribe(EventKind.MOTION_STOP, self.on_motion)
        return self

    @property
    def state(self) -> RecordingState:
        return self._state

    @property
    def session(self) -> RecordingSession | None:
        return self._session

    @property
    def motion_active(self) -> bool:
        return self._motion_active

    @property
    def recorder(self) -> Recorder:
        return self._recorder

    # ------------------------------------------------------------------
    def on_frame(self, event: Event) -> None:
        if self._state is RecordingState.IDLE:
            self.start(event.timestamp)
        elif self._recorder.is_done():
            self._finish(event.timestamp)
        elif (
            self._state is RecordingState.RECORDING
            and not self._motion_active
            and self._session is not None
            and self._clock() > self._session.deadline
        ):
            self._recorder.stop()
            self._state = RecordingState.STOPPING

    def on_frame_error(self, event: Event) -> None:
        if self._session is None:
            return
        self._recorder.stop(force=True)
        self._state = RecordingState.STOPPING
        # No FRAME follows a stream failure, so close out now if possible.
        if self._recorder.is_done():
            self._finish(event.timestamp)

    def on_motion(self, event: Event) -> None:
        self._motion_active = event.kind is EventKind.MOTION_START

    def start(self, timestamp: datetime) -> RecordingSession:
        if self._session is not None:
            raise RecordingError(f"Recording {self._session.label} is still open")
        output = self._recorder.start(timestamp)
        self._session = RecordingSession(
            output=output,
            started_at=timestamp,
            deadline=self._clock() + self._length_s,
        )
        self._state = RecordingState.RECORDING
        self._bus.publish(Event(EventKind.RECORD_START, timestamp, self._session.label))
        return self._session

    def close(self, timeout: float = 0.0) -> None:
        """Stop the recorder and publish RECORD_STOP for an open session."""

        if self._state is RecordingState.RECORDING:
            self._recorder.stop()
            self._state = RecordingState.STOPPING
        self._recorder.close(timeout)
        if self._session is not None:
            self._finish(datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    def _finish(self, timestamp: datetime) -> None:
        session = self._session
        self._session = None
        self._state = RecordingState.IDLE
        label = session.label if session is not None else NO_FILE
        logger.info("Recording %s finished", label)
        self._bus.publish(Event(EventKind.RECORD_STOP, timestamp, label))


__all__ = [
    "FfmpegRecorder",
    "NO_FILE",
    "NullRecorder",
    "PyAVRecorder",
    "RECORDERS",
    "Recorder",
    "RecordingController",
    "RecordingError",
    "RecordingSession",
    "RecordingState",
    "create_recorder",
    "recording_path",
]
