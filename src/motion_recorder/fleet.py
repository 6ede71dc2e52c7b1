"""Run one recording session per camera under a shared stop signal."""
from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Mapping

from .cancellation import CancelSignal
from .capture import StreamCaptureService
from .config import CameraDescriptor, RecorderSettings, ValidationError
from .event_log import EventLog
from .session import MonitorOutcome, RecordingSession

logger = logging.getLogger(__name__)


class FleetCoordinator:
    """Fan cameras out into independent sessions and join them.

    A failure in one session is logged and recorded in :attr:`failures`; it
    never cancels the other sessions. Only :meth:`stop` (or cancelling the
    injected signal) ends the fleet.
    """

    def __init__(
        self,
        cameras: Iterable[CameraDescriptor],
        capture: StreamCaptureService,
        *,
        settings: RecorderSettings | None = None,
        stop_signal: CancelSignal | None = None,
        event_log: EventLog | None = None,
        monitor_timeout_s: float | None = None,
    ) -> None:
        self._cameras = list(cameras)
        if not self._cameras:
            raise ValidationError("At least one camera must be configured")
        for camera in self._cameras:
            if not camera.temp_root.is_dir():
                raise ValidationError(f"The temp directory {camera.temp_root} must exist")
            if not camera.archive_root.is_dir():
                raise ValidationError(f"The records directory {camera.archive_root} must exist")
        seen: set[str] = set()
        for camera in self._cameras:
            if not camera.is_complete:
                continue
            if camera.name in seen:
                raise ValidationError(f"Camera name {camera.name!r} is used more than once")
            seen.add(camera.name)

        self._capture = capture
        self._settings = settings or RecorderSettings()
        self._signal = stop_signal if stop_signal is not None else CancelSignal(name="fleet")
        self._event_log = event_log
        self._monitor_timeout_s = monitor_timeout_s
        self._sessions: dict[str, RecordingSession] = {}
        self._failures: dict[str, str] = {}
        self._outcomes: dict[str, MonitorOutcome] = {}
        self._running = False

    @property
    def cameras(self) -> list[CameraDescriptor]:
        return list(self._cameras)

    @property
    def signal(self) -> CancelSignal:
        return self._signal

    @property
    def sessions(self) -> Mapping[str, RecordingSession]:
        return dict(self._sessions)

    @property
    def failures(self) -> Mapping[str, str]:
        return dict(self._failures)

    @property
    def outcomes(self) -> Mapping[str, MonitorOutcome]:
        return dict(self._outcomes)

    @property
    def running(self) -> bool:
        return self._running

    async def run(self) -> dict[str, MonitorOutcome]:
        """Run every complete camera and return once all sessions finished."""

        tasks: list[asyncio.Task[None]] = []
        for camera in self._cameras:
            if not camera.is_complete:
                logger.warning("Skipping camera %r without a name or stream URL", camera.name)
                continue
            tasks.append(asyncio.create_task(self._run_camera(camera), name=f"session-{camera.name}"))
        self._running = True
        try:
            await asyncio.gather(*tasks)
        finally:
            self._running = False
        logger.info("All %d camera session(s) finished", len(tasks))
        return dict(self._outcomes)

    def stop(self) -> None:
        """Stop every session. Calling it again is harmless."""

        if self._signal.cancel("stop"):
            logger.info("Stopping %d camera session(s)", len(self._sessions))

    def status(self) -> dict[str, object]:
        return {
            "running": self._running,
            "stopping": self._signal.cancelled,
            "sessions": {name: session.status() for name, session in self._sessions.items()},
            "failures": dict(self._failures),
        }

    async def _run_camera(self, camera: CameraDescriptor) -> None:
        try:
            session = RecordingSession(
                camera,
                self._capture,
                settings=self._settings,
                stop_signal=self._signal,
                event_log=self._event_log,
            )
            self._sessions[camera.name] = session
            self._outcomes[camera.name] = await session.run(self._monitor_timeout_s)
        except Exception as exc:
            # Isolate the failure; sibling sessions keep running.
            logger.exception("%s: session terminated", camera.name)
            self._failures[camera.name] = str(exc) or type(exc).__name__
            if self._event_log is not None:
                self._event_log.record(
                    camera.name, "session_error", f"Session terminated: {self._failures[camera.name]}"
                )


__all__ = ["FleetCoordinator"]
