"""Configuration management for the motion recorder."""
from __future__ import annotations

import json
import math
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Any, Iterable, Mapping

from .motion import MotionStrategy, PixelSampling, RegionContours, strategy_from_dict

RECORD_TIMESTAMP_FORMAT = "%d.%m.%Y %H-%M-%S"

DEFAULT_BASE_DIR = Path(os.environ.get("MOTION_RECORDER_BASE_DIR", "data"))


class ValidationError(ValueError):
    """Raised when cameras, directories or settings are unusable."""


def record_filename(start: datetime, end: datetime, extension: str = ".mp4") -> str:
    """Return the archive file name covering the ``start``-``end`` interval."""

    suffix = extension if extension.startswith(".") else f".{extension}"
    return (
        f"[{start.strftime(RECORD_TIMESTAMP_FORMAT)}]"
        f"_[{end.strftime(RECORD_TIMESTAMP_FORMAT)}]{suffix}"
    )


@dataclass(frozen=True, slots=True)
class CameraDescriptor:
    """A camera stream plus the shared roots its working directories live under."""

    name: str
    url: str
    temp_root: Path
    archive_root: Path

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", str(self.name or "").strip())
        object.__setattr__(self, "url", str(self.url or "").strip())
        object.__setattr__(self, "temp_root", Path(self.temp_root))
        object.__setattr__(self, "archive_root", Path(self.archive_root))

    @property
    def temp_dir(self) -> Path:
        return self.temp_root / self.name

    @property
    def archive_dir(self) -> Path:
        return self.archive_root / self.name

    @property
    def is_complete(self) -> bool:
        return bool(self.name) and bool(self.url)

    def validate(self) -> None:
        if not self.name:
            raise ValidationError("The camera name must not be empty")
        if not self.url:
            raise ValidationError(f"The stream URL for camera {self.name!r} must not be empty")
        if any(sep in self.name for sep in ("/", "\\")) or self.name in {".", ".."}:
            raise ValidationError(f"The camera name {self.name!r} is not a valid directory name")
        if not self.temp_root.is_dir():
            raise ValidationError(f"The temp directory {self.temp_root} must exist")
        if not self.archive_root.is_dir():
            raise ValidationError(f"The records directory {self.archive_root} must exist")

    def ensure_directories(self) -> None:
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        self.archive_dir.mkdir(parents=True, exist_ok=True)

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "url": self.url}


def _positive(name: str, value: Any) -> float:
    try:
        numeric = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{name} must be numeric") from exc
    if not math.isfinite(numeric) or numeric <= 0:
        raise ValidationError(f"{name} must be a positive number")
    return numeric


@dataclass(frozen=True, slots=True)
class RecorderSettings:
    """Timing, retry and detection options shared by every session."""

    motion: MotionStrategy = field(default_factory=lambda: RegionContours(threshold=40))
    loop_delay_s: float = 5.0
    probe_segment_s: float = 10.0
    monitor_timeout_s: float | None = None
    confirm_window_s: float = 15.0
    stall_window_s: float = 60.0
    retry_budget: int = 3
    probe_timeout_s: float = 10.0
    snapshot_timeout_s: float = 7.0
    evaluation_timeout_s: float = 30.0
    segment_timeout_margin_s: float = 5.0
    snapshot_resolution: tuple[int, int] = (1920, 1080)
    video_extension: str = ".mp4"
    image_extension: str = ".png"

    def __post_init__(self) -> None:
        if not isinstance(self.motion, (PixelSampling, RegionContours)):
            raise ValidationError("motion must be a PixelSampling or RegionContours strategy")
        try:
            loop_delay = float(self.loop_delay_s)
        except (TypeError, ValueError) as exc:
            raise ValidationError("loop_delay_s must be numeric") from exc
        if not math.isfinite(loop_delay) or loop_delay < 0:
            raise ValidationError("loop_delay_s must not be negative")
        object.__setattr__(self, "loop_delay_s", loop_delay)
        for name in (
            "probe_segment_s",
            "confirm_window_s",
            "stall_window_s",
            "probe_timeout_s",
            "snapshot_timeout_s",
            "evaluation_timeout_s",
        ):
            object.__setattr__(self, name, _positive(name, getattr(self, name)))
        margin = float(self.segment_timeout_margin_s)
        if not math.isfinite(margin) or margin < 0:
            raise ValidationError("segment_timeout_margin_s must not be negative")
        object.__setattr__(self, "segment_timeout_margin_s", margin)
        # A zero timeout disables the monitoring deadline.
        if self.monitor_timeout_s is not None:
            timeout = float(self.monitor_timeout_s)
            object.__setattr__(self, "monitor_timeout_s", timeout if timeout > 0 else None)
        if int(self.retry_budget) < 1:
            raise ValidationError("retry_budget must be at least 1")
        object.__setattr__(self, "retry_budget", int(self.retry_budget))
        try:
            width, height = (int(part) for part in self.snapshot_resolution)
        except (TypeError, ValueError) as exc:
            raise ValidationError("snapshot_resolution must be a (width, height) pair") from exc
        if width <= 0 or height <= 0:
            raise ValidationError("snapshot_resolution values must be positive")
        object.__setattr__(self, "snapshot_resolution", (width, height))
        for name in ("video_extension", "image_extension"):
            value = str(getattr(self, name)).strip()
            if not value:
                raise ValidationError(f"{name} must not be empty")
            object.__setattr__(self, name, value if value.startswith(".") else f".{value}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "motion": self.motion.to_dict(),
            "loop_delay_s": self.loop_delay_s,
            "probe_segment_s": self.probe_segment_s,
            "monitor_timeout_s": self.monitor_timeout_s,
            "confirm_window_s": self.confirm_window_s,
            "stall_window_s": self.stall_window_s,
            "retry_budget": self.retry_budget,
            "probe_timeout_s": self.probe_timeout_s,
            "snapshot_timeout_s": self.snapshot_timeout_s,
            "evaluation_timeout_s": self.evaluation_timeout_s,
            "segment_timeout_margin_s": self.segment_timeout_margin_s,
            "snapshot_resolution": list(self.snapshot_resolution),
            "video_extension": self.video_extension,
            "image_extension": self.image_extension,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RecorderSettings":
        data: dict[str, Any] = dict(payload)
        motion = data.get("motion")
        if isinstance(motion, Mapping):
            try:
                data["motion"] = strategy_from_dict(motion)
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
        resolution = data.get("snapshot_resolution")
        if isinstance(resolution, str) and "x" in resolution:
            data["snapshot_resolution"] = tuple(resolution.split("x", 1))
        elif isinstance(resolution, list):
            data["snapshot_resolution"] = tuple(resolution)
        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValidationError(f"Unknown settings: {', '.join(unknown)}")
        return cls(**data)


@dataclass(frozen=True, slots=True)
class RecorderConfig:
    """Cameras, the working base directory and the session settings."""

    base_dir: Path = DEFAULT_BASE_DIR
    cameras: tuple[tuple[str, str], ...] = ()
    settings: RecorderSettings = field(default_factory=RecorderSettings)

    @property
    def temp_root(self) -> Path:
        return Path(self.base_dir) / "Temp"

    @property
    def records_root(self) -> Path:
        return Path(self.base_dir) / "Records"

    def descriptors(self) -> list[CameraDescriptor]:
        return [
            CameraDescriptor(name=name, url=url, temp_root=self.temp_root, archive_root=self.records_root)
            for name, url in self.cameras
        ]

    def descriptor(self, name: str) -> CameraDescriptor:
        for descriptor in self.descriptors():
            if descriptor.name == name:
                return descriptor
        raise KeyError(name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "base_dir": Path(self.base_dir).as_posix(),
            "cameras": [{"name": name, "url": url} for name, url in self.cameras],
            "settings": self.settings.to_dict(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RecorderConfig":
        base_dir = Path(payload.get("base_dir") or DEFAULT_BASE_DIR)
        cameras = tuple(_parse_cameras(payload.get("cameras", [])))
        settings_payload = payload.get("settings") or {}
        if not isinstance(settings_payload, Mapping):
            raise ValidationError("settings must be an object")
        settings = RecorderSettings.from_dict(settings_payload)
        return cls(base_dir=base_dir, cameras=cameras, settings=settings)


def _parse_cameras(raw: Iterable[Any]) -> Iterable[tuple[str, str]]:
    if not isinstance(raw, (list, tuple)):
        raise ValidationError("cameras must be a list")
    for item in raw:
        if isinstance(item, Mapping):
            yield (str(item.get("name", "")).strip(), str(item.get("url", "")).strip())
        elif isinstance(item, (list, tuple)) and len(item) == 2:
            yield (str(item[0]).strip(), str(item[1]).strip())
        else:
            raise ValidationError(f"Invalid camera entry: {item!r}")


class ConfigManager:
    """Load recorder configuration from a JSON file."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._lock = Lock()
        self._config: RecorderConfig | None = None

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> RecorderConfig:
        with self._lock:
            if self._config is None:
                self._config = self._read()
            return self._config

    def reload(self) -> RecorderConfig:
        with self._lock:
            self._config = self._read()
            return self._config

    def _read(self) -> RecorderConfig:
        if not self._path.exists():
            return RecorderConfig()
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValidationError(f"Invalid configuration JSON in {self._path}") from exc
        if not isinstance(raw, Mapping):
            raise ValidationError("Configuration root must be an object")
        return RecorderConfig.from_dict(raw)


__all__ = [
    "CameraDescriptor",
    "ConfigManager",
    "RECORD_TIMESTAMP_FORMAT",
    "RecorderConfig",
    "RecorderSettings",
    "ValidationError",
    "record_filename",
]
