"""Still-frame motion evaluation.

Two interchangeable strategies compare a reference frame against a candidate
frame captured from the same camera:

* :class:`PixelSampling` walks both frames on a fixed stride and averages the
  absolute per-channel intensity difference.
* :class:`RegionContours` blurs, differences and binarises the frames with
  OpenCV and looks for a connected region larger than a minimum area.

Callers select one strategy object and pass it to :func:`evaluate`.
"""
from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Mapping, Union

import cv2
import numpy as np

logger = logging.getLogger(__name__)


class ShapeMismatchError(ValueError):
    """Raised when two frames do not share the same pixel dimensions."""


@dataclass(frozen=True, slots=True)
class PixelSampling:
    """Sampled mean absolute difference compared against a sensitivity."""

    step: int = 2
    sensitivity: float = 0.01

    kind = "pixel"

    def __post_init__(self) -> None:
        if int(self.step) <= 0:
            raise ValueError("Pixel sampling step must be greater than zero")
        sensitivity = float(self.sensitivity)
        if not math.isfinite(sensitivity) or not (0.0 <= sensitivity <= 1.0):
            raise ValueError("Pixel sensitivity must be between 0 and 1")
        object.__setattr__(self, "step", int(self.step))
        object.__setattr__(self, "sensitivity", sensitivity)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, **asdict(self)}


@dataclass(frozen=True, slots=True)
class RegionContours:
    """Blur, threshold and contour-area detection."""

    blur_size: int = 15
    threshold: int = 30
    dilate_iterations: int = 2
    erode_iterations: int = 1
    min_area: float = 1000.0
    kernel_size: int = 5

    kind = "region"

    def __post_init__(self) -> None:
        if int(self.blur_size) < 1:
            raise ValueError("Blur size must be at least 1")
        if not (0 <= int(self.threshold) <= 255):
            raise ValueError("Threshold must be between 0 and 255")
        if int(self.dilate_iterations) < 0 or int(self.erode_iterations) < 0:
            raise ValueError("Morphology iterations must not be negative")
        if int(self.kernel_size) < 1:
            raise ValueError("Kernel size must be at least 1")
        min_area = float(self.min_area)
        if not math.isfinite(min_area) or min_area < 0:
            raise ValueError("Minimum area must not be negative")
        object.__setattr__(self, "blur_size", int(self.blur_size))
        object.__setattr__(self, "threshold", int(self.threshold))
        object.__setattr__(self, "dilate_iterations", int(self.dilate_iterations))
        object.__setattr__(self, "erode_iterations", int(self.erode_iterations))
        object.__setattr__(self, "kernel_size", int(self.kernel_size))
        object.__setattr__(self, "min_area", min_area)

    @property
    def blur_kernel(self) -> tuple[int, int]:
        # GaussianBlur only accepts odd kernel sizes.
        size = self.blur_size if self.blur_size % 2 else self.blur_size + 1
        return (size, size)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, **asdict(self)}


MotionStrategy = Union[PixelSampling, RegionContours]

_STRATEGIES: dict[str, type] = {
    PixelSampling.kind: PixelSampling,
    RegionContours.kind: RegionContours,
}


def strategy_from_dict(payload: Mapping[str, Any]) -> MotionStrategy:
    """Build a strategy from its ``to_dict`` representation."""

    data = dict(payload)
    kind = str(data.pop("kind", RegionContours.kind)).strip().lower()
    factory = _STRATEGIES.get(kind)
    if factory is None:
        raise ValueError(f"Unknown motion strategy {kind!r}")
    try:
        return factory(**data)
    except TypeError as exc:
        raise ValueError(f"Invalid options for {kind!r} strategy: {exc}") from exc


@dataclass(frozen=True, slots=True)
class MotionVerdict:
    """Outcome of a frame comparison."""

    motion: bool
    score: float = 0.0
    region: tuple[int, int, int, int] | None = None

    def __bool__(self) -> bool:
        return self.motion

    def to_dict(self) -> dict[str, object]:
        return {
            "motion": self.motion,
            "score": float(self.score),
            "region": list(self.region) if self.region is not None else None,
        }


NO_MOTION = MotionVerdict(motion=False)


def _check_shapes(frame_a: np.ndarray, frame_b: np.ndarray) -> None:
    if frame_a.shape[:2] != frame_b.shape[:2]:
        raise ShapeMismatchError(
            f"The images must be the same size: {frame_a.shape[1]}x{frame_a.shape[0]}"
            f" != {frame_b.shape[1]}x{frame_b.shape[0]}"
        )


def pixel_difference(frame_a: np.ndarray, frame_b: np.ndarray, step: int = 2) -> float:
    """Return the sampled per-channel difference between two frames in [0, 1].

    Every *step*-th pixel is compared along both axes. Identical frames give
    ``0.0``; frames where no pixel is sampled also give ``0.0``.
    """

    if step <= 0:
        raise ValueError("The step must be greater than zero")
    a = np.asarray(frame_a)
    b = np.asarray(frame_b)
    _check_shapes(a, b)
    if a.shape != b.shape:
        raise ShapeMismatchError("The images must have the same number of channels")

    sample_a = a[::step, ::step]
    sample_b = b[::step, ::step]
    if sample_a.size == 0:
        return 0.0
    difference = np.abs(sample_a.astype(np.float32) - sample_b.astype(np.float32)) / 255.0
    return round(float(difference.mean()), 3)


def _to_grey(frame: np.ndarray) -> np.ndarray:
    array = np.asarray(frame)
    if array.dtype != np.uint8:
        array = np.clip(array, 0, 255).astype(np.uint8)
    if array.ndim == 2:
        return array
    if array.ndim == 3 and array.shape[2] == 1:
        return array[:, :, 0]
    if array.ndim == 3 and array.shape[2] == 4:
        return cv2.cvtColor(array, cv2.COLOR_BGRA2GRAY)
    if array.ndim == 3 and array.shape[2] == 3:
        return cv2.cvtColor(array, cv2.COLOR_BGR2GRAY)
    raise ValueError(f"Unsupported frame shape for motion detection: {array.shape}")


def region_motion(
    frame_a: np.ndarray, frame_b: np.ndarray, strategy: RegionContours
) -> MotionVerdict:
    """Detect motion by comparing the largest changed region to ``min_area``."""

    grey_a = cv2.GaussianBlur(_to_grey(frame_a), strategy.blur_kernel, 0)
    grey_b = cv2.GaussianBlur(_to_grey(frame_b), strategy.blur_kernel, 0)
    delta = cv2.absdiff(grey_a, grey_b)
    _, thresh = cv2.threshold(delta, strategy.threshold, 255, cv2.THRESH_BINARY)

    kernel = cv2.getStructuringElement(
        cv2.MORPH_RECT, (strategy.kernel_size, strategy.kernel_size)
    )
    if strategy.dilate_iterations:
        thresh = cv2.dilate(thresh, kernel, iterations=strategy.dilate_iterations)
    if strategy.erode_iterations:
        thresh = cv2.erode(thresh, kernel, iterations=strategy.erode_iterations)

    # OpenCV 3 returns (image, contours, hierarchy); OpenCV 4 drops the image.
    found = cv2.findContours(thresh, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
    contours = found[-2]
    if not contours:
        return NO_MOTION

    largest = max(contours, key=cv2.contourArea)
    area = float(cv2.contourArea(largest))
    if area <= strategy.min_area:
        return MotionVerdict(motion=False, score=area)
    x, y, width, height = cv2.boundingRect(largest)
    return MotionVerdict(motion=True, score=area, region=(int(x), int(y), int(width), int(height)))


def evaluate(frame_a: np.ndarray, frame_b: np.ndarray, strategy: MotionStrategy) -> MotionVerdict:
    """Compare two frames with *strategy* and return the verdict.

    Raises :class:`ShapeMismatchError` when the frames differ in size. Any
    other failure inside the comparison is logged and reported as no motion.
    """

    a = np.asarray(frame_a)
    b = np.asarray(frame_b)
    _check_shapes(a, b)
    try:
        if isinstance(strategy, PixelSampling):
            score = pixel_difference(a, b, strategy.step)
            return MotionVerdict(motion=score >= strategy.sensitivity, score=score)
        if isinstance(strategy, RegionContours):
            return region_motion(a, b, strategy)
    except ShapeMismatchError:
        raise
    except Exception:
        logger.exception("Motion evaluation failed; treating as no motion")
        return NO_MOTION
    raise TypeError(f"Unsupported motion strategy: {type(strategy).__name__}")


def load_frame(path: Path | str) -> np.ndarray:
    """Read a still image from disk."""

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Frame {path} does not exist")
    frame = cv2.imread(path.as_posix(), cv2.IMREAD_COLOR)
    if frame is None:
        raise ValueError(f"Unable to decode frame {path}")
    return frame


def draw_motion_overlay(frame: np.ndarray, verdict: MotionVerdict) -> np.ndarray:
    """Return a copy of *frame* with the detected region outlined in green."""

    overlay = np.ascontiguousarray(np.asarray(frame, dtype=np.uint8)).copy()
    if verdict.region is None:
        return overlay
    if overlay.ndim == 2:
        overlay = cv2.cvtColor(overlay, cv2.COLOR_GRAY2BGR)
    x, y, width, height = verdict.region
    cv2.rectangle(overlay, (x, y), (x + width, y + height), (0, 255, 0), 2)
    return overlay


__all__ = [
    "MotionStrategy",
    "MotionVerdict",
    "NO_MOTION",
    "PixelSampling",
    "RegionContours",
    "ShapeMismatchError",
    "draw_motion_overlay",
    "evaluate",
    "load_frame",
    "pixel_difference",
    "region_motion",
    "strategy_from_dict",
]
