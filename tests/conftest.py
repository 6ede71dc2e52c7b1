"""Shared fixtures for recorder tests."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from pathlib import Path
from typing import Callable, Iterable

import cv2
import numpy as np
import pytest

from motion_recorder.cancellation import CancelSignal
from motion_recorder.capture import (
    CaptureOutcome,
    StreamCaptureService,
    StreamInfo,
)


class FakeCapture(StreamCaptureService):
    """Scripted capture service that never touches ffmpeg or a network.

    ``frames`` are served per source file: the first snapshot of a segment
    returns ``frames[0]``, the next ``frames[1]`` and so on, repeating the last
    frame once the list is exhausted. Timed captures complete immediately;
    open-ended captures run until their signal fires.
    """

    def __init__(
        self,
        frames: Iterable[np.ndarray] = (),
        *,
        info: StreamInfo | None = None,
        probe_error: Exception | None = None,
        segment_errors: Iterable[Exception | None] = (),
        fail_urls: dict[str, Exception] | None = None,
        hang: bool = False,
        progress: Iterable[int] = (1, 2),
    ) -> None:
        self.frames = list(frames)
        self.info = info or StreamInfo(
            width=32, height=32, frame_rate=25.0, pixel_format="yuv420p", codec_name="h264"
        )
        self.probe_error = probe_error
        self.segment_errors = list(segment_errors)
        self.fail_urls = dict(fail_urls or {})
        self.hang = hang
        self.progress = list(progress)
        self.capture_calls: list[tuple[str, Path, float | None]] = []
        self.signals: list[CancelSignal] = []
        self.snapshot_calls: list[Path] = []
        self._served: dict[Path, int] = defaultdict(int)

    async def probe(self, url: str) -> StreamInfo:
        await asyncio.sleep(0)
        if self.probe_error is not None:
            raise self.probe_error
        return self.info

    async def capture_segment(
        self,
        url: str,
        destination: Path,
        *,
        duration: float | None = None,
        signal: CancelSignal,
        on_progress: Callable[[int], None] | None = None,
    ) -> CaptureOutcome:
        self.capture_calls.append((url, Path(destination), duration))
        self.signals.append(signal)
        if url in self.fail_urls:
            raise self.fail_urls[url]
        if self.segment_errors:
            error = self.segment_errors.pop(0)
            if error is not None:
                raise error
        Path(destination).write_bytes(b"segment")
        if on_progress is not None:
            for mark in self.progress:
                on_progress(mark)
        if duration is not None and not self.hang:
            await asyncio.sleep(0)
            return CaptureOutcome.STOPPED if signal.cancelled else CaptureOutcome.COMPLETED
        await signal.wait()
        return CaptureOutcome.STOPPED

    async def snapshot(
        self,
        source: Path,
        destination: Path,
        resolution: tuple[int, int] = (1920, 1080),
    ) -> bool:
        self.snapshot_calls.append(Path(destination))
        if not self.frames:
            return False
        index = self._served[Path(source)]
        self._served[Path(source)] += 1
        frame = self.frames[min(index, len(self.frames) - 1)]
        return bool(cv2.imwrite(Path(destination).as_posix(), frame))


async def _wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def still_frame() -> np.ndarray:
    return np.zeros((32, 32, 3), dtype=np.uint8)


@pytest.fixture
def moving_frame() -> np.ndarray:
    frame = np.zeros((32, 32, 3), dtype=np.uint8)
    frame[8:24, 8:24, :] = 255
    return frame


@pytest.fixture
def make_capture() -> type[FakeCapture]:
    return FakeCapture


@pytest.fixture
def roots(tmp_path: Path) -> tuple[Path, Path]:
    temp_root = tmp_path / "Temp"
    records_root = tmp_path / "Records"
    temp_root.mkdir()
    records_root.mkdir()
    return temp_root, records_root


@pytest.fixture
def wait_until() -> Callable[..., object]:
    return _wait_until
