"""Configuration management for CamWatch."""
from __future__ import annotations

import json
import logging
import math
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping

from .frames import DEFAULT_FRAME_SOURCE, FRAME_SOURCES, normalise_frame_source

logger = logging.getLogger(__name__)

CONFIG_ENV = "CAMWATCH_CONFIG"
DEFAULT_CONFIG_PATH = Path("config/camwatch.json")


class ConfigError(ValueError):
    """Raised when configuration values are invalid."""


def _finite(name: str, value: object) -> float:
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be numeric") from exc
    if not math.isfinite(number):
        raise ConfigError(f"{name} must be finite")
    return number


@dataclass(slots=True)
class DeviceSettings:
    """Identity of the camera plus daemon housekeeping."""

    name: str = "camera"
    runtime_s: float | None = None
    clean_age_s: float = 7 * 24 * 3600.0
    clean_interval_s: float = 3600.0

    def __post_init__(self) -> None:
        self.name = str(self.name).strip()
        if not self.name:
            raise ConfigError("Device name is required")
        if self.runtime_s is not None and _finite("runtime_s", self.runtime_s) <= 0:
            raise ConfigError("Runtime must be positive when set")
        if _finite("clean_age_s", self.clean_age_s) <= 0:
            raise ConfigError("Clean age must be positive")
        if _finite("clean_interval_s", self.clean_interval_s) <= 0:
            raise ConfigError("Clean interval must be positive")


@dataclass(slots=True)
class SubstreamSettings:
    """Low resolution stream analysed for motion."""

    source: str = DEFAULT_FRAME_SOURCE
    device: str = "0"
    timeout_s: float = 5.0
    fps: float | None = None
    input_args: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.source = normalise_frame_source(str(self.source))
        if self.source not in FRAME_SOURCES:
            raise ConfigError(f"Unknown frame source: {self.source}")
        if _finite("timeout_s", self.timeout_s) <= 0:
            raise ConfigError("Substream timeout must be positive")
        if self.fps is not None and _finite("fps", self.fps) < 0:
            raise ConfigError("Substream fps must not be negative")
        self.input_args = [str(arg) for arg in self.input_args]


@dataclass(slots=True)
class MotionSettings:
    """Background subtraction tuning."""

    kernel_size: tuple[int, int] = (8, 8)
    alpha: float = 0.03
    black_threshold: float = 15.0
    max_threshold: float = 255.0
    max_change: float = 50.0
    start_threshold: float = 3.0
    stop_threshold: float = 1.0
    ignore_mask: str | None = None

    def __post_init__(self) -> None:
        size = tuple(int(value) for value in self.kernel_size)
        if len(size) != 2 or min(size) < 1:
            raise ConfigError("Kernel size must be two positive integers")
        self.kernel_size = size  # type: ignore[assignment]
        alpha = _finite("alpha", self.alpha)
        if not 0.0 < alpha < 1.0:
            raise ConfigError("Alpha must be between 0 and 1")
        if not 0.0 <= _finite("black_threshold", self.black_threshold) <= 255.0:
            raise ConfigError("Black threshold must be between 0 and 255")
        if not 0.0 < _finite("max_threshold", self.max_threshold) <= 255.0:
            raise ConfigError("Max threshold must be between 1 and 255")
        if not 0.0 < _finite("max_change", self.max_change) <= 100.0:
            raise ConfigError("Max change must be a percentage")
        start = _finite("start_threshold", self.start_threshold)
        stop = _finite("stop_threshold", self.stop_threshold)
        if stop < 0:
            raise ConfigError("Stop threshold must not be negative")
        if start <= stop:
            raise ConfigError("Start threshold must be greater than stop threshold")
        if start >= self.max_change:
            raise ConfigError("Start threshold must be below max change")
        if self.ignore_mask is not None and not str(self.ignore_mask).strip():
            self.ignore_mask = None


@dataclass(slots=True)
class MainstreamSettings:
    """High resolution stream recorded around the clock."""

    recorder: str = "null"
    device: str = ""
    length_s: float = 300.0
    file_suffix: str = "main"
    input_args: list[str] = field(default_factory=lambda: ["-rtsp_transport", "tcp"])
    output_args: list[str] = field(default_factory=lambda: ["-c", "copy"])

    def __post_init__(self) -> None:
        from .recording import RECORDERS

        self.recorder = str(self.recorder).strip().lower()
        if self.recorder not in RECORDERS:
            raise ConfigError(f"Unknown recorder: {self.recorder}")
        if _finite("length_s", self.length_s) <= 0:
            raise ConfigError("Recording length must be positive")
        if self.recorder != "null" and not str(self.device).strip():
            raise ConfigError("Mainstream device is required for recording")
        self.input_args = [str(arg) for arg in self.input_args]
        self.output_args = [str(arg) for arg in self.output_args]


@dataclass(slots=True)
class OutputSettings:
    """Where recordings and history images are written."""

    path: str = "output"
    container: str = "mkv"
    dir_pattern: str = "%Y-%m-%d"
    file_pattern: str = "%H-%M-%S"
    ffmpeg_bin: str = "ffmpeg"

    def __post_init__(self) -> None:
        if not str(self.path).strip():
            raise ConfigError("Output path is required")
        self.container = str(self.container).lstrip(".")
        if not self.container:
            raise ConfigError("Container is required")
        for name in ("dir_pattern", "file_pattern"):
            if not str(getattr(self, name)).strip():
                raise ConfigError(f"{name} is required")


@dataclass(slots=True)
class DetectionSettings:
    """Remote object detector."""

    enabled: bool = False
    url: str = "http://localhost:5000"
    timeout_s: float = 10.0
    jpeg_quality: int = 90

    def __post_init__(self) -> None:
        self.enabled = bool(self.enabled)
        if _finite("timeout_s", self.timeout_s) <= 0:
            raise ConfigError("Detection timeout must be positive")
        if not 1 <= int(self.jpeg_quality) <= 100:
            raise ConfigError("JPEG quality must be between 1 and 100")
        if self.enabled and not str(self.url).strip():
            raise ConfigError("Detection URL is required when detection is enabled")


@dataclass(slots=True)
class HistorySettings:
    """Motion history image output."""

    extension: str = ".png"

    def __post_init__(self) -> None:
        extension = str(self.extension).lower()
        if not extension.startswith("."):
            extension = f".{extension}"
        if extension not in {".png", ".jpg", ".jpeg"}:
            raise ConfigError("History extension must be .png or .jpg")
        self.extension = extension


@dataclass(slots=True)
class StorageSettings:
    """Event database location."""

    database: str = "data/camwatch.db"


_SECTIONS: dict[str, type] = {
    "device": DeviceSettings,
    "substream": SubstreamSettings,
    "motion": MotionSettings,
    "mainstream": MainstreamSettings,
    "output": OutputSettings,
    "detection": DetectionSettings,
    "history": HistorySettings,
    "storage": StorageSettings,
}


@dataclass(slots=True)
class DaemonConfig:
    """Complete daemon configuration."""

    device: DeviceSettings = field(default_factory=DeviceSettings)
    substream: SubstreamSettings = field(default_factory=SubstreamSettings)
    motion: MotionSettings = field(default_factory=MotionSettings)
    mainstream: MainstreamSettings = field(default_factory=MainstreamSettings)
    output: OutputSettings = field(default_factory=OutputSettings)
    detection: DetectionSettings = field(default_factory=DetectionSettings)
    history: HistorySettings = field(default_factory=HistorySettings)
    storage: StorageSettings = field(default_factory=StorageSettings)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["motion"]["kernel_size"] = list(self.motion.kernel_size)
        return data

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "DaemonConfig":
        unknown = set(payload) - set(_SECTIONS)
        if unknown:
            raise ConfigError(f"Unknown configuration sections: {', '.join(sorted(unknown))}")
        sections: dict[str, Any] = {}
        for name, section_type in _SECTIONS.items():
            raw = payload.get(name)
            if raw is None:
                continue
            if not isinstance(raw, Mapping):
                raise ConfigError(f"Configuration section {name!r} must be an object")
            allowed = {item.name for item in fields(section_type)}
            extra = set(raw) - allowed
            if extra:
                raise ConfigError(f"Unknown {name} settings: {', '.join(sorted(extra))}")
            try:
                sections[name] = section_type(**dict(raw))
            except TypeError as exc:  # pragma: no cover - guarded by the field check
                raise ConfigError(str(exc)) from exc
        return cls(**sections)


def _apply_env_overrides(payload: dict[str, Any], environ: Mapping[str, str]) -> dict[str, Any]:
    overrides = {
        "CAMWATCH_DEVICE_NAME": ("device", "name"),
        "CAMWATCH_SUBSTREAM": ("substream", "device"),
        "CAMWATCH_MAINSTREAM": ("mainstream", "device"),
        "CAMWATCH_DETECTION_URL": ("detection", "url"),
    }
    for variable, (section, key) in overrides.items():
        value = environ.get(variable)
        if value is None:
            continue
        value = value.strip()
        if not value:
            logger.warning("Ignoring empty %s", variable)
            continue
        payload.setdefault(section, {})[key] = value
    return payload


class ConfigStore:
    """JSON backed persistence for :class:`DaemonConfig`."""

    def __init__(self, path: Path | str | None = None) -> None:
        if path is None:
            path = os.getenv(CONFIG_ENV) or DEFAULT_CONFIG_PATH
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self, environ: Mapping[str, str] | None = None) -> DaemonConfig:
        payload: dict[str, Any] = {}
        if self._path.exists():
            try:
                raw = json.loads(self._path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as exc:
                raise ConfigError(f"Invalid configuration JSON in {self._path}") from exc
            if not isinstance(raw, dict):
                raise ConfigError("Configuration root must be an object")
            payload = {key: dict(value) if isinstance(value, Mapping) else value for key, value in raw.items()}
        else:
            logger.info("Configuration %s not found, using defaults", self._path)
        payload = _apply_env_overrides(payload, os.environ if environ is None else environ)
        return DaemonConfig.from_dict(payload)

    def save(self, config: DaemonConfig) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(config.to_dict(), indent=2, sort_keys=True), encoding="utf-8")


__all__ = [
    "CONFIG_ENV",
    "ConfigError",
    "ConfigStore",
    "DaemonConfig",
    "DetectionSettings",
    "DeviceSettings",
    "HistorySettings",
    "MainstreamSettings",
    "MotionSettings",
    "OutputSettings",
    "StorageSettings",
    "SubstreamSettings",
]
