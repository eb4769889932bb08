"""Frame source abstractions."""
from __future__ import annotations

import logging
import queue
import re
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, Iterator, Sequence
from urllib.parse import unquote, urlsplit, urlunsplit

import av
import cv2
import httpx
import numpy as np
import simplejpeg

logger = logging.getLogger(__name__)

# User visible identifiers for frame source backends.
FRAME_SOURCES: dict[str, str] = {
    "opencv": "OpenCV VideoCapture (device index, file or URL)",
    "mjpeg": "HTTP multipart MJPEG stream",
    "ffmpeg": "External ffmpeg decoder process",
    "synthetic": "Synthetic test pattern",
}

DEFAULT_FRAME_SOURCE = "opencv"

_SOURCE_ALIASES = {
    "videoin": "opencv",
    "videocapture": "opencv",
    "mjpegin": "mjpeg",
    "ffmpegin": "ffmpeg",
}

# RTSP streams report this frame rate, which is not a real pacing hint.
_RTSP_FPS = 90000.0

FRAME_QUEUE_SIZE = 100


class FrameSourceError(RuntimeError):
    """Raised when a frame source cannot be opened or selected."""


@dataclass(slots=True)
class Frame:
    """Decoded image plus its capture time.

    ``pixels`` is the producing source's reused buffer; it is refilled by
    the next :meth:`FrameSource.get_frame` call. Use :meth:`copy` to keep it.
    """

    pixels: np.ndarray
    timestamp: datetime

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def channels(self) -> int:
        return 1 if self.pixels.ndim == 2 else int(self.pixels.shape[2])

    def copy(self) -> "Frame":
        return Frame(self.pixels.copy(), self.timestamp)


class FrameSource(ABC):
    """Pull one decoded frame at a time with a bounded wait."""

    def __init__(
        self,
        *,
        timeout: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if timeout <= 0:
            raise ValueError("Frame source timeout must be positive")
        self._timeout = float(timeout)
        self._clock = clock
        self._sleep = sleep
        self._width = 0
        self._height = 0
        self._buffer: np.ndarray | None = None

    @property
    def width(self) -> int:
        return self._width

    @property
    def height(self) -> int:
        return self._height

    @property
    def timeout(self) -> float:
        return self._timeout

    @abstractmethod
    def open(self, device: str) -> bool:  # pragma: no cover - interface only
        raise NotImplementedError

    @abstractmethod
    def get_frame(self) -> Frame | None:  # pragma: no cover - interface only
        raise NotImplementedError

    def close(self) -> None:  # pragma: no cover - optional override
        return None

    def __enter__(self) -> "FrameSource":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    def _store(self, pixels: np.ndarray) -> Frame:
        """Copy *pixels* into the owned buffer and wrap it as a frame."""

        buffer = self._buffer
        if buffer is None or buffer.shape != pixels.shape or buffer.dtype != pixels.dtype:
            buffer = np.empty_like(pixels)
            self._buffer = buffer
        np.copyto(buffer, pixels)
        self._height, self._width = int(buffer.shape[0]), int(buffer.shape[1])
        return Frame(buffer, datetime.now(timezone.utc))

    def _retry_until_deadline(self, read: Callable[[], np.ndarray | None]) -> Frame | None:
        """Call *read* until it yields pixels or the timeout elapses.

        Failed reads back off for a tenth of the timeout so a dead stream
        does not spin the CPU.
        """

        deadline = self._clock() + self._timeout
        while True:
            pixels = read()
            if pixels is not None:
                return self._store(pixels)
            if self._clock() >= deadline:
                return None
            self._sleep(self._timeout / 10.0)


class OpenCVFrameSource(FrameSource):
    """Frames from ``cv2.VideoCapture``: device index, file or stream URL."""

    def __init__(
        self,
        *,
        timeout: float = 5.0,
        fps: float | None = None,
        capture_factory: Callable[[int | str], object] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(timeout=timeout, clock=clock, sleep=sleep)
        self._capture_factory = capture_factory or cv2.VideoCapture
        self._capture = None
        self._fps = float(fps) if fps else 0.0
        self._delay = 0.0
        self._next_frame = clock()

    def open(self, device: str) -> bool:
        target: int | str = device
        if re.fullmatch(r"-?\d+", device.strip()):
            target = int(device)
        capture = self._capture_factory(target)
        self._capture = capture
        if not capture.isOpened():
            logger.error("Unable to open capture device %s", device)
            return False
        if isinstance(target, str) and not self._fps:
            fps = float(capture.get(cv2.CAP_PROP_FPS) or 0.0)
            self._fps = 0.0 if fps == _RTSP_FPS else max(0.0, fps)
        if self._fps > 0:
            self._delay = 1.0 / self._fps
        logger.debug("Capture %s opened at %.1f fps", device, self._fps)
        return self.get_frame() is not None

    def get_frame(self) -> Frame | None:
        capture = self._capture
        if capture is None:
            raise FrameSourceError("Frame source has not been opened")

        def read() -> np.ndarray | None:
            if self._buffer is None:
                ok, image = capture.read()
            else:
                ok, image = capture.read(self._buffer)
            return image if ok and image is not None else None

        frame = self._retry_until_deadline(read)
        self._pace()
        return frame

    def _pace(self) -> None:
        # Simulate the native frame rate for file input.
        if self._delay <= 0:
            return
        now = self._clock()
        remaining = self._delay - (now - self._next_frame)
        self._next_frame = now
        if remaining > 0:
            self._sleep(remaining)

    def close(self) -> None:
        if self._capture is not None:
            self._capture.release()
            self._capture = None
        self._buffer = None


def _split_credentials(url: str) -> tuple[str, httpx.BasicAuth | None]:
    parts = urlsplit(url)
    if parts.username is None:
        return url, None
    host = parts.hostname or ""
    if parts.port is not None:
        host = f"{host}:{parts.port}"
    stripped = urlunsplit((parts.scheme, host, parts.path, parts.query, parts.fragment))
    auth = httpx.BasicAuth(unquote(parts.username), unquote(parts.password or ""))
    return stripped, auth


class MultipartJpegReader:
    """Split a ``multipart/x-mixed-replace`` byte stream into JPEG payloads."""

    _SOI = b"\xff\xd8"
    _EOI = b"\xff\xd9"

    def __init__(self, chunks: Iterable[bytes]) -> None:
        self._chunks: Iterator[bytes] = iter(chunks)
        self._buffer = bytearray()

    def __iter__(self) -> Iterator[bytes]:
        return self

    def __next__(self) -> bytes:
        length: int | None = None
        while True:
            self._ensure(len(self._SOI))
            if self._buffer.startswith(self._SOI):
                if length is not None:
                    return self._read_exact(length)
                # Part without a Content-Length header.
                return self._read_until_eoi()
            line = self._read_line()
            if line.lower().startswith(b"content-length"):
                _, _, value = line.partition(b":")
                length = int(value.strip())
            elif not line and length is not None:
                return self._read_exact(length)

    def _fill(self) -> None:
        chunk = next(self._chunks)
        self._buffer.extend(chunk)

    def _ensure(self, size: int) -> None:
        while len(self._buffer) < size:
            self._fill()

    def _read_line(self) -> bytes:
        while True:
            index = self._buffer.find(b"\n")
            if index >= 0:
                line = bytes(self._buffer[:index])
                del self._buffer[: index + 1]
                return line.strip()
            self._fill()

    def _read_exact(self, length: int) -> bytes:
        self._ensure(length)
        payload = bytes(self._buffer[:length])
        del self._buffer[:length]
        return payload

    def _read_until_eoi(self) -> bytes:
        while True:
            index = self._buffer.find(self._EOI)
            if index >= 0:
                end = index + len(self._EOI)
                payload = bytes(self._buffer[:end])
                del self._buffer[:end]
                return payload
            self._fill()


class MjpegFrameSource(FrameSource):
    """Pull-based HTTP multipart JPEG stream."""

    def __init__(
        self,
        *,
        timeout: float = 5.0,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(timeout=timeout, clock=clock, sleep=sleep)
        self._transport = transport
        self._client: httpx.Client | None = None
        self._response: httpx.Response | None = None
        self._reader: MultipartJpegReader | None = None

    def open(self, device: str) -> bool:
        url, auth = _split_credentials(device)
        self._client = httpx.Client(timeout=self._timeout, auth=auth, transport=self._transport)
        logger.debug("Opening %s", url)
        try:
            request = self._client.build_request("GET", url)
            response = self._client.send(request, stream=True)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Unable to open MJPEG stream %s: %s", url, exc)
            self.close()
            return False
        self._response = response
        self._reader = MultipartJpegReader(response.iter_bytes())
        frame = self.get_frame()
        if frame is None:
            return False
        logger.debug("Resolution %dw x %dh", self.width, self.height)
        return True

    def get_frame(self) -> Frame | None:
        reader = self._reader
        if reader is None:
            raise FrameSourceError("Frame source has not been opened")

        def read() -> np.ndarray | None:
            try:
                payload = next(reader)
                return simplejpeg.decode_jpeg(payload, colorspace="BGR")
            except StopIteration:
                return None
            except (httpx.HTTPError, httpx.StreamError, ValueError) as exc:
                logger.debug("MJPEG read failed: %s", exc)
                return None

        return self._retry_until_deadline(read)

    def close(self) -> None:
        if self._response is not None:
            self._response.close()
            self._response = None
        if self._client is not None:
            self._client.close()
            self._client = None
        self._reader = None
        self._buffer = None


def probe_stream_size(device: str) -> tuple[int, int]:
    """Return ``(width, height)`` of the first video stream in *device*."""

    try:
        with av.open(device) as container:
            stream = container.streams.video[0]
            return int(stream.codec_context.width), int(stream.codec_context.height)
    except (av.error.FFmpegError, OSError, IndexError) as exc:
        raise FrameSourceError(f"Unable to probe video stream {device}: {exc}") from exc


_END_OF_STREAM = object()


class FfmpegFrameSource(FrameSource):
    """Frames pushed by an external ffmpeg decoder into a bounded queue."""

    def __init__(
        self,
        *,
        timeout: float = 5.0,
        ffmpeg_bin: str = "ffmpeg",
        input_args: Sequence[str] = (),
        size: tuple[int, int] | None = None,
        queue_size: int = FRAME_QUEUE_SIZE,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ) -> None:
        super().__init__(timeout=timeout)
        self._ffmpeg_bin = ffmpeg_bin
        self._input_args = list(input_args)
        self._size = size
        self._popen = popen
        self._queue: queue.Queue = queue.Queue(maxsize=queue_size)
        self._process: subprocess.Popen | None = None
        self._reader: threading.Thread | None = None

    @property
    def backlog(self) -> int:
        return self._queue.qsize()

    def command(self, device: str) -> list[str]:
        return [
            self._ffmpeg_bin,
            "-hide_banner",
            "-loglevel",
            "error",
            *self._input_args,
            "-i",
            device,
            "-an",
            "-sn",
            "-dn",
            "-f",
            "rawvideo",
            "-pix_fmt",
            "bgr24",
            "pipe:1",
        ]

    def open(self, device: str) -> bool:
        width, height = self._size or probe_stream_size(device)
        self._width, self._height = int(width), int(height)
        command = self.command(device)
        logger.debug("Starting decoder: %s", " ".join(command))
        self._process = self._popen(command, stdin=subprocess.PIPE, stdout=subprocess.PIPE)
        self._reader = threading.Thread(
            target=self._consume,
            args=(self._process.stdout, self._width * self._height * 3),
            name="ffmpeg-frames",
            daemon=True,
        )
        self._reader.start()
        return self.get_frame() is not None

    def _consume(self, stream, frame_bytes: int) -> None:
        try:
            while True:
                payload = stream.read(frame_bytes)
                if not payload or len(payload) < frame_bytes:
                    break
                self.offer(payload)
        finally:
            self._offer_end()

    def offer(self, payload: bytes) -> bool:
        """Queue one raw frame, dropping it when the queue is full."""

        try:
            self._queue.put_nowait(payload)
        except queue.Full:
            logger.warning("Frame queue full (%d), dropping frame", self._queue.maxsize)
            return False
        return True

    def _offer_end(self) -> None:
        # The end marker must get through even when the queue is saturated.
        while True:
            try:
                self._queue.put_nowait(_END_OF_STREAM)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    pass

    def get_frame(self) -> Frame | None:
        try:
            item = self._queue.get(timeout=self._timeout)
        except queue.Empty:
            return None
        if item is _END_OF_STREAM:
            # Leave the marker for any later call.
            self._offer_end()
            return None
        backlog = self._queue.qsize()
        if backlog:
            logger.warning("Frame queue %d", backlog)
        pixels = np.frombuffer(item, dtype=np.uint8).reshape(self._height, self._width, 3)
        return self._store(pixels)

    def close(self) -> None:
        process = self._process
        if process is None:
            return
        self._process = None
        try:
            if process.stdin is not None:
                process.stdin.write(b"q")
                process.stdin.flush()
                process.stdin.close()
        except (BrokenPipeError, OSError):
            logger.debug("Decoder stdin already closed")
        try:
            process.wait(timeout=self._timeout)
        except subprocess.TimeoutExpired:
            logger.warning("Decoder did not exit, terminating")
            process.terminate()
        self._buffer = None


class SyntheticFrameSource(FrameSource):
    """Generates a moving test pattern for development and testing."""

    def __init__(
        self,
        width: int = 640,
        height: int = 480,
        *,
        timeout: float = 5.0,
        fps: float | None = None,
    ) -> None:
        super().__init__(timeout=timeout)
        self._pattern_width = int(width)
        self._pattern_height = int(height)
        self._fps = float(fps) if fps else 0.0
        self._start = time.perf_counter()
        self._opened = False

    def open(self, device: str) -> bool:
        match = re.fullmatch(r"\s*(\d+)x(\d+)\s*", device or "")
        if match:
            self._pattern_width, self._pattern_height = int(match.group(1)), int(match.group(2))
        self._opened = True
        return self.get_frame() is not None

    def get_frame(self) -> Frame | None:
        if not self._opened:
            return None
        if self._fps > 0:
            time.sleep(1.0 / self._fps)
        elapsed = time.perf_counter() - self._start
        horizontal = np.linspace(0, 255, self._pattern_width, dtype=np.uint8)
        vertical = np.linspace(0, 255, self._pattern_height, dtype=np.uint8).reshape(-1, 1)
        blue = np.tile(horizontal, (self._pattern_height, 1))
        green = np.roll(blue, int(elapsed * 10), axis=1)
        red = np.tile(vertical, (1, self._pattern_width))
        return self._store(np.stack([blue, green, red], axis=2))

    def close(self) -> None:
        self._opened = False
        self._buffer = None


def normalise_frame_source(choice: str | None) -> str:
    normalised = (choice or DEFAULT_FRAME_SOURCE).strip().lower()
    return _SOURCE_ALIASES.get(normalised, normalised)


def create_frame_source(
    choice: str | None = None,
    *,
    timeout: float = 5.0,
    fps: float | None = None,
    input_args: Sequence[str] = (),
    ffmpeg_bin: str = "ffmpeg",
) -> FrameSource:
    """Create the frame source registered under *choice*.

    Unknown names raise :class:`FrameSourceError`.
    """

    resolved = normalise_frame_source(choice)
    if resolved == "opencv":
        return OpenCVFrameSource(timeout=timeout, fps=fps)
    if resolved == "mjpeg":
        return MjpegFrameSource(timeout=timeout)
    if resolved == "ffmpeg":
        return FfmpegFrameSource(timeout=timeout, ffmpeg_bin=ffmpeg_bin, input_args=input_args)
    if resolved == "synthetic":
        return SyntheticFrameSource(timeout=timeout, fps=fps)
    raise FrameSourceError(f"Unknown frame source: {choice}")


def identify_frame_source(source: FrameSource) -> str:
    """Return the registry identifier for a frame source instance."""

    if isinstance(source, OpenCVFrameSource):
        return "opencv"
    if isinstance(source, MjpegFrameSource):
        return "mjpeg"
    if isinstance(source, FfmpegFrameSource):
        return "ffmpeg"
    if isinstance(source, SyntheticFrameSource):
        return "synthetic"
    return "unknown"


__all__ = [
    "DEFAULT_FRAME_SOURCE",
    "FRAME_QUEUE_SIZE",
    "FRAME_SOURCES",
    "FfmpegFrameSource",
    "Frame",
    "FrameSource",
    "FrameSourceError",
    "MjpegFrameSource",
    "MultipartJpegReader",
    "OpenCVFrameSource",
    "SyntheticFrameSource",
    "create_frame_source",
    "identify_frame_source",
    "probe_stream_size",
    "normalise_frame_source",
]
