"""Stream capture backends used by recording sessions."""
from __future__ import annotations

import asyncio
import logging
import os
import subprocess
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import asdict, dataclass
from enum import Enum
from fractions import Fraction
from pathlib import Path
from typing import Callable, Deque

import av
from av.error import FFmpegError, InvalidDataError
import cv2

from .cancellation import CancelSignal

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]

DEFAULT_SNAPSHOT_RESOLUTION: tuple[int, int] = (1920, 1080)

# Seek this far (in seconds) before the end of a file when taking a snapshot.
_SNAPSHOT_TAIL_SECONDS = 2.0


class CaptureError(RuntimeError):
    """Raised when probing, recording or snapshotting a stream fails."""


class CaptureOutcome(str, Enum):
    """How a segment capture finished."""

    COMPLETED = "completed"
    STOPPED = "stopped"


@dataclass(frozen=True, slots=True)
class StreamInfo:
    """Properties of the primary video stream of a source."""

    width: int
    height: int
    frame_rate: float
    pixel_format: str | None
    codec_name: str | None
    bits_per_pixel: int | None = None

    def describe(self) -> str:
        lines = [
            f"Resolution: {self.width}x{self.height}",
            f"FPS: {self.frame_rate:g}",
            f"Format: {self.pixel_format or 'unknown'}",
        ]
        if self.bits_per_pixel is not None:
            lines.append(f"Bits per pixel: {self.bits_per_pixel}")
        lines.append(f"Codec name: {self.codec_name or 'unknown'}")
        return "\n".join(lines)

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


class StreamCaptureService(ABC):
    """Abstract media tool capable of probing, recording and snapshotting."""

    @abstractmethod
    async def probe(self, url: str) -> StreamInfo:  # pragma: no cover - interface only
        raise NotImplementedError

    @abstractmethod
    async def capture_segment(
        self,
        url: str,
        destination: Path,
        *,
        duration: float | None = None,
        signal: CancelSignal,
        on_progress: ProgressCallback | None = None,
    ) -> CaptureOutcome:  # pragma: no cover - interface only
        """Write the stream into *destination*.

        Without *duration* the capture runs until *signal* fires. Progress is
        reported in whole seconds of stream time and never decreases.
        """

        raise NotImplementedError

    @abstractmethod
    async def snapshot(
        self,
        source: Path,
        destination: Path,
        resolution: tuple[int, int] = DEFAULT_SNAPSHOT_RESOLUTION,
    ) -> bool:  # pragma: no cover - interface only
        raise NotImplementedError


def parse_progress_line(line: str) -> float | None:
    """Return the stream time in seconds reported by an ffmpeg progress line."""

    key, sep, value = line.strip().partition("=")
    if not sep:
        return None
    value = value.strip()
    if not value or value.upper() == "N/A":
        return None
    # out_time_ms is reported in microseconds as well.
    if key in {"out_time_us", "out_time_ms"}:
        try:
            return max(0.0, int(value) / 1_000_000.0)
        except ValueError:
            return None
    if key == "out_time":
        parts = value.lstrip("-").split(":")
        if len(parts) != 3:
            return None
        try:
            hours, minutes = int(parts[0]), int(parts[1])
            seconds = float(parts[2])
        except ValueError:
            return None
        if value.startswith("-"):
            return 0.0
        return hours * 3600.0 + minutes * 60.0 + seconds
    return None


def build_capture_command(
    ffmpeg: str,
    url: str,
    destination: Path,
    *,
    duration: float | None = None,
    rtsp_transport: str | None = "tcp",
) -> list[str]:
    """Return the ffmpeg argv that copies *url* into a fragmented MP4."""

    command = [ffmpeg, "-hide_banner", "-nostats", "-loglevel", "error"]
    if rtsp_transport and url.lower().startswith("rtsp"):
        command += ["-rtsp_transport", rtsp_transport]
    # Use arrival time rather than camera supplied timestamps.
    command += ["-use_wallclock_as_timestamps", "1", "-i", url]
    command += [
        "-c:v",
        "copy",
        "-c:a",
        "aac",
        "-movflags",
        "frag_keyframe+empty_moov+faststart",
    ]
    if duration is not None and duration > 0:
        command += ["-t", f"{float(duration):g}"]
    command += ["-progress", "pipe:1", "-y", Path(destination).as_posix()]
    return command


def _frame_rate(stream) -> float:
    for attribute in ("average_rate", "guessed_rate", "base_rate"):
        rate = getattr(stream, attribute, None)
        if rate:
            return float(Fraction(rate))
    return 0.0


class FFmpegCaptureService(StreamCaptureService):
    """Capture through the ``ffmpeg`` binary and inspect media with PyAV."""

    def __init__(
        self,
        *,
        ffmpeg: str = "ffmpeg",
        rtsp_transport: str | None = "tcp",
        open_timeout: float = 10.0,
        stop_grace: float = 5.0,
    ) -> None:
        if stop_grace <= 0:
            raise ValueError("stop_grace must be positive")
        self._ffmpeg = ffmpeg
        self._rtsp_transport = rtsp_transport
        self._open_timeout = float(open_timeout)
        self._stop_grace = float(stop_grace)

    # ------------------------------------------------------------------
    # Probing
    # ------------------------------------------------------------------
    async def probe(self, url: str) -> StreamInfo:
        return await asyncio.to_thread(self._probe_sync, url)

    def _probe_sync(self, url: str) -> StreamInfo:
        options: dict[str, str] = {}
        if self._rtsp_transport and url.lower().startswith("rtsp"):
            options["rtsp_transport"] = self._rtsp_transport
        try:
            container = av.open(url, options=options, timeout=self._open_timeout)
        except (FFmpegError, OSError, ValueError) as exc:
            raise CaptureError(f"Unable to open stream: {exc}") from exc
        try:
            streams = container.streams.video
            if not streams:
                raise CaptureError("Stream has no video track")
            stream = streams[0]
            context = stream.codec_context
            video_format = getattr(context, "format", None)
            bits = getattr(video_format, "bits_per_pixel", None)
            return StreamInfo(
                width=int(context.width or 0),
                height=int(context.height or 0),
                frame_rate=_frame_rate(stream),
                pixel_format=getattr(context, "pix_fmt", None),
                codec_name=getattr(context, "name", None),
                bits_per_pixel=int(bits) if bits else None,
            )
        finally:
            container.close()

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------
    async def capture_segment(
        self,
        url: str,
        destination: Path,
        *,
        duration: float | None = None,
        signal: CancelSignal,
        on_progress: ProgressCallback | None = None,
    ) -> CaptureOutcome:
        if signal.cancelled:
            return CaptureOutcome.STOPPED
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        command = build_capture_command(
            self._ffmpeg,
            url,
            destination,
            duration=duration,
            rtsp_transport=self._rtsp_transport,
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            raise CaptureError(f"failed to launch ffmpeg: {exc}") from exc

        stderr_tail: Deque[str] = deque(maxlen=20)
        readers = [
            asyncio.create_task(self._read_progress(process.stdout, on_progress)),
            asyncio.create_task(self._drain_stderr(process.stderr, stderr_tail)),
        ]
        exit_task = asyncio.create_task(process.wait())
        stop_task = asyncio.create_task(signal.wait())
        try:
            await asyncio.wait({exit_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
            if not exit_task.done():
                await self._stop_process(process)
        except asyncio.CancelledError:
            await self._stop_process(process)
            raise
        finally:
            stop_task.cancel()
            exit_task.cancel()
            await asyncio.gather(*readers, return_exceptions=True)

        if signal.cancelled:
            return CaptureOutcome.STOPPED
        if process.returncode != 0:
            detail = " | ".join(stderr_tail) or "no output"
            raise CaptureError(f"ffmpeg exited with code {process.returncode}: {detail}")
        return CaptureOutcome.COMPLETED

    @staticmethod
    async def _read_progress(
        stream: asyncio.StreamReader | None, on_progress: ProgressCallback | None
    ) -> None:
        if stream is None:
            return
        best = -1
        while True:
            line = await stream.readline()
            if not line:
                return
            value = parse_progress_line(line.decode("utf-8", errors="replace"))
            if value is None:
                continue
            mark = int(value)
            if mark > best:
                best = mark
                if on_progress is not None:
                    on_progress(mark)

    @staticmethod
    async def _drain_stderr(stream: asyncio.StreamReader | None, tail: Deque[str]) -> None:
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                return
            message = line.decode("utf-8", errors="replace").strip()
            if message:
                tail.append(message)
                logger.debug("ffmpeg: %s", message)

    async def _stop_process(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        # Ask ffmpeg to quit so the fragmented file is finalised cleanly.
        if process.stdin is not None:
            try:
                process.stdin.write(b"q")
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                pass
        if await self._wait_exit(process):
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        if await self._wait_exit(process):
            return
        logger.warning("ffmpeg did not exit after terminate; killing pid %s", process.pid)
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()

    async def _wait_exit(self, process: asyncio.subprocess.Process) -> bool:
        try:
            await asyncio.wait_for(process.wait(), timeout=self._stop_grace)
        except asyncio.TimeoutError:
            return False
        return True

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------
    async def snapshot(
        self,
        source: Path,
        destination: Path,
        resolution: tuple[int, int] = DEFAULT_SNAPSHOT_RESOLUTION,
    ) -> bool:
        return await asyncio.to_thread(self._snapshot_sync, Path(source), Path(destination), resolution)

    def _snapshot_sync(self, source: Path, destination: Path, resolution: tuple[int, int]) -> bool:
        if not source.exists():
            return False
        try:
            frame = _decode_last_frame(source)
        except (FFmpegError, OSError, ValueError, IndexError) as exc:
            # The segment may be locked or still growing; the caller retries.
            logger.debug("Snapshot of %s failed: %s", source, exc)
            return False
        if frame is None:
            return False
        width, height = resolution
        image = frame.to_ndarray(format="bgr24", width=int(width), height=int(height))
        destination.parent.mkdir(parents=True, exist_ok=True)
        partial = destination.with_name(f"{destination.stem}.partial{destination.suffix}")
        if not cv2.imwrite(partial.as_posix(), image):
            logger.debug("Unable to write snapshot %s", partial)
            return False
        os.replace(partial, destination)
        return True


def _decode_last_frame(source: Path):
    last = None
    with av.open(source.as_posix()) as container:
        stream = container.streams.video[0]
        duration = container.duration
        tail = int(_SNAPSHOT_TAIL_SECONDS * av.time_base)
        if duration and duration > tail:
            try:
                container.seek(duration - tail)
            except FFmpegError:
                container.seek(0)
        try:
            for packet in container.demux(stream):
                try:
                    for frame in packet.decode():
                        last = frame
                except InvalidDataError:
                    # Partially written packets at the end of a growing file.
                    continue
        except FFmpegError:
            if last is None:
                raise
    return last


__all__ = [
    "CaptureError",
    "CaptureOutcome",
    "DEFAULT_SNAPSHOT_RESOLUTION",
    "FFmpegCaptureService",
    "StreamCaptureService",
    "StreamInfo",
    "build_capture_command",
    "parse_progress_line",
]
