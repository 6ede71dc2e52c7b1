"""Per-camera monitoring and recording state machine."""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
import threading
import time
import uuid
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable

from .cancellation import CancelSignal
from .capture import CaptureError, CaptureOutcome, StreamCaptureService, StreamInfo
from .config import CameraDescriptor, RecorderSettings, record_filename
from .deadline import bounded_wait, ceil_period
from .event_log import EventLog
from .motion import NO_MOTION, MotionVerdict, ShapeMismatchError, evaluate, load_frame

logger = logging.getLogger(__name__)


class MonitorOutcome(str, Enum):
    """Terminal states of the monitoring phase."""

    MOTION_SEEN = "motion_seen"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class SessionPhase(str, Enum):
    IDLE = "idle"
    MONITORING = "monitoring"
    RECORDING = "recording"
    STOPPED = "stopped"
    FAILED = "failed"


class SessionState:
    """Flags shared by the monitoring, recording, motion and liveness loops.

    Every read and write goes through one lock. Critical sections never await,
    so the lock is safe to take from the event loop, worker threads and the
    capture progress callback alike.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._phase = SessionPhase.IDLE
        self._reference_ready = False
        self._motion_active = False
        self._segment_flushed = False
        self._last_progress_mark = 0
        self._reference_progress_mark = 0
        self._segment_base = 0

    @property
    def phase(self) -> SessionPhase:
        with self._lock:
            return self._phase

    @phase.setter
    def phase(self, value: SessionPhase) -> None:
        with self._lock:
            self._phase = value

    @property
    def reference_ready(self) -> bool:
        with self._lock:
            return self._reference_ready

    @reference_ready.setter
    def reference_ready(self, value: bool) -> None:
        with self._lock:
            self._reference_ready = bool(value)

    @property
    def motion_active(self) -> bool:
        with self._lock:
            return self._motion_active

    @motion_active.setter
    def motion_active(self, value: bool) -> None:
        with self._lock:
            self._motion_active = bool(value)

    @property
    def segment_flushed(self) -> bool:
        with self._lock:
            return self._segment_flushed

    @property
    def last_progress_mark(self) -> int:
        with self._lock:
            return self._last_progress_mark

    def motion_flags(self) -> tuple[bool, bool]:
        """Return ``(segment_flushed, motion_active)`` read together."""

        with self._lock:
            return self._segment_flushed, self._motion_active

    def mark_flushed(self) -> None:
        with self._lock:
            self._segment_flushed = True
            self._reference_ready = False

    def begin_interval(self) -> None:
        with self._lock:
            self._segment_flushed = False

    def begin_segment(self) -> None:
        """Start counting progress of a new capture on top of the previous one."""

        with self._lock:
            self._segment_base = self._last_progress_mark

    def note_progress(self, mark: int) -> None:
        # Capture progress restarts at zero with every segment; the session
        # mark keeps growing across segments and never decreases.
        with self._lock:
            candidate = self._segment_base + max(0, int(mark))
            if candidate > self._last_progress_mark:
                self._last_progress_mark = candidate

    def progress_changed(self) -> bool:
        """Return ``True`` and adopt the latest mark when progress advanced."""

        with self._lock:
            if self._last_progress_mark == self._reference_progress_mark:
                return False
            self._reference_progress_mark = self._last_progress_mark
            return True

    def snapshot(self) -> dict[str, object]:
        with self._lock:
            return {
                "phase": self._phase.value,
                "reference_ready": self._reference_ready,
                "motion_active": self._motion_active,
                "segment_flushed": self._segment_flushed,
                "last_progress_mark": self._last_progress_mark,
                "reference_progress_mark": self._reference_progress_mark,
            }


class RecordingSession:
    """Monitor one camera until motion appears, then record it in segments."""

    def __init__(
        self,
        camera: CameraDescriptor,
        capture: StreamCaptureService,
        *,
        settings: RecorderSettings | None = None,
        stop_signal: CancelSignal | None = None,
        event_log: EventLog | None = None,
        clock: Callable[[], datetime] = datetime.now,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        camera.validate()
        camera.ensure_directories()
        self._camera = camera
        self._capture = capture
        self._settings = settings or RecorderSettings()
        parent = stop_signal if stop_signal is not None else CancelSignal(name="global")
        self._signal = parent.child(camera.name)
        self._segment_signal: CancelSignal | None = None
        self._event_log = event_log
        self._clock = clock
        self._monotonic = monotonic
        self._state = SessionState()

        token = uuid.uuid4().hex
        self._segment_path = camera.temp_dir / f"video_{token}{self._settings.video_extension}"
        self._reference_path = camera.temp_dir / f"reference_{token}{self._settings.image_extension}"
        self._candidate_path = camera.temp_dir / f"candidate_{token}{self._settings.image_extension}"

        self._interval_start = self._clock()
        self._motion_retries = 0
        self._stall_retries = 0
        self._flush_count = 0
        self._last_record: Path | None = None
        self._last_error: str | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def camera(self) -> CameraDescriptor:
        return self._camera

    @property
    def name(self) -> str:
        return self._camera.name

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def settings(self) -> RecorderSettings:
        return self._settings

    @property
    def signal(self) -> CancelSignal:
        return self._signal

    @property
    def segment_path(self) -> Path:
        return self._segment_path

    @property
    def reference_path(self) -> Path:
        return self._reference_path

    @property
    def candidate_path(self) -> Path:
        return self._candidate_path

    @property
    def flush_count(self) -> int:
        return self._flush_count

    @property
    def stopped(self) -> bool:
        return self._signal.cancelled

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def run(self, timeout_s: float | None = None) -> MonitorOutcome:
        """Monitor the stream and, once motion is seen, record until stopped."""

        self._record_event("session_started", "Session started")
        try:
            outcome = await self.monitor(timeout_s)
            if outcome is MonitorOutcome.MOTION_SEEN:
                await self.record()
        except Exception as exc:
            self._state.phase = SessionPhase.FAILED
            self._last_error = str(exc) or type(exc).__name__
            self._record_event("session_failed", f"Session failed: {self._last_error}")
            raise
        self._state.phase = SessionPhase.STOPPED
        self._record_event("session_stopped", "Session stopped", outcome=outcome.value)
        return outcome

    def stop(self) -> None:
        """Cancel every loop of this session. Repeated calls do nothing."""

        if self._signal.cancel("stop"):
            logger.info("%s: stop requested", self.name)

    def status(self) -> dict[str, object]:
        payload: dict[str, object] = {"camera": self.name, "url": self._camera.url}
        payload.update(self._state.snapshot())
        payload["flush_count"] = self._flush_count
        payload["last_record"] = self._last_record.as_posix() if self._last_record else None
        payload["last_error"] = self._last_error
        return payload

    async def describe_stream(self) -> StreamInfo | None:
        try:
            return await bounded_wait(
                self._capture.probe(self._camera.url), self._settings.probe_timeout_s
            )
        except (CaptureError, TimeoutError) as exc:
            logger.warning("%s: unable to analyse the stream: %s", self.name, exc)
            return None

    # ------------------------------------------------------------------
    # Monitoring phase
    # ------------------------------------------------------------------
    async def monitor(self, timeout_s: float | None = None) -> MonitorOutcome:
        """Probe the stream until motion is seen, the timeout passes or a stop."""

        timeout = timeout_s if timeout_s is not None else self._settings.monitor_timeout_s
        if timeout is not None and timeout <= 0:
            timeout = None
        started = self._monotonic()
        self._state.phase = SessionPhase.MONITORING
        logger.info("%s: monitoring %s", self.name, self._camera.url)

        while not self._signal.cancelled:
            if await self._probe_segment():
                if not self._state.reference_ready:
                    self._state.reference_ready = await self._take_snapshot(self._reference_path)
                elif await self._take_snapshot(self._candidate_path):
                    verdict = await self._compare()
                    if verdict.motion:
                        self._state.motion_active = True
                        logger.info("%s: motion detected, recording starts", self.name)
                        self._record_event("motion_seen", "Motion detected", **verdict.to_dict())
                        return MonitorOutcome.MOTION_SEEN
            elif not self._signal.cancelled:
                if await self._signal.sleep(self._settings.loop_delay_s):
                    break
            if timeout is not None and self._monotonic() - started >= timeout:
                logger.info("%s: no motion within %gs", self.name, timeout)
                self._record_event("monitor_timed_out", "Monitoring timed out")
                return MonitorOutcome.TIMED_OUT
        return MonitorOutcome.CANCELLED

    async def _probe_segment(self) -> bool:
        duration = self._settings.probe_segment_s
        probe = self._signal.child("probe")
        self._state.begin_segment()
        try:
            outcome = await bounded_wait(
                self._capture.capture_segment(
                    self._camera.url,
                    self._segment_path,
                    duration=duration,
                    signal=probe,
                    on_progress=self._state.note_progress,
                ),
                duration + self._settings.segment_timeout_margin_s,
            )
        except TimeoutError as exc:
            # The abandoned capture unwinds through its own signal.
            probe.cancel("timeout")
            self._note_failure("probe_failed", exc)
            return False
        except CaptureError as exc:
            self._note_failure("probe_failed", exc)
            return False
        return outcome is CaptureOutcome.COMPLETED

    # ------------------------------------------------------------------
    # Recording phase
    # ------------------------------------------------------------------
    async def record(self) -> None:
        """Run the recording, motion and liveness loops until stopped.

        Returns once all three loops exited. If a loop fails unexpectedly the
        session is stopped so the others wind down, and the first failure is
        raised after the join.
        """

        self._state.phase = SessionPhase.RECORDING
        self._interval_start = self._clock()
        self._motion_retries = 0
        self._stall_retries = 0
        loops = [
            asyncio.create_task(self._guard(self._recording_loop()), name=f"{self.name}-recording"),
            asyncio.create_task(self._guard(self._motion_loop()), name=f"{self.name}-motion"),
            asyncio.create_task(self._guard(self._liveness_loop()), name=f"{self.name}-liveness"),
        ]
        results = await asyncio.gather(*loops, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result

    async def _guard(self, loop) -> None:
        try:
            await loop
        except Exception:
            logger.exception("%s: recording loop failed", self.name)
            self._signal.cancel("failure")
            raise

    async def _recording_loop(self) -> None:
        while not self._signal.cancelled:
            segment = self.open_segment()
            failed = False
            try:
                outcome = await self._capture.capture_segment(
                    self._camera.url,
                    self._segment_path,
                    signal=segment,
                    on_progress=self._state.note_progress,
                )
            except CaptureError as exc:
                self._note_failure("capture_failed", exc)
                failed = True
                outcome = None
            if self._signal.cancelled:
                break
            if outcome is CaptureOutcome.STOPPED and not failed:
                logger.debug("%s: segment rotated (%s)", self.name, segment.reason)
                continue
            if await self._signal.sleep(self._settings.loop_delay_s):
                break
        logger.debug("%s: recording loop exited", self.name)

    async def _motion_loop(self) -> None:
        period = ceil_period(self._settings.confirm_window_s, self._settings.retry_budget)
        while not self._signal.cancelled:
            await self.motion_tick()
            if await self._signal.sleep(period):
                break
        logger.debug("%s: motion loop exited", self.name)

    async def _liveness_loop(self) -> None:
        period = ceil_period(self._settings.stall_window_s, self._settings.retry_budget)
        while not self._signal.cancelled:
            if await self._signal.sleep(period):
                break
            self.liveness_tick()
        logger.debug("%s: liveness loop exited", self.name)

    async def motion_tick(self) -> Path | None:
        """Run one motion-loop period. Returns the archived path on a flush."""

        if not self._state.reference_ready:
            self._state.reference_ready = await self._take_snapshot(self._reference_path)
        elif await self._take_snapshot(self._candidate_path):
            verdict = await self._compare()
            self._state.motion_active = verdict.motion

        flushed, motion = self._state.motion_flags()
        if not flushed and not motion:
            self._motion_retries += 1
            if self._motion_retries >= self._settings.retry_budget:
                return await self.flush_segment()
        elif flushed and motion:
            self._motion_retries = 0
            self._interval_start = self._clock()
            self._state.begin_interval()
            logger.info("%s: motion resumed, new recording interval", self.name)
            self._record_event("motion_resumed", "Motion resumed")
        else:
            self._motion_retries = 0
        return None

    def liveness_tick(self) -> bool:
        """Run one liveness period. Returns ``True`` when a stall was declared."""

        if self._state.progress_changed():
            self._stall_retries = 0
            return False
        self._stall_retries += 1
        if self._stall_retries < self._settings.retry_budget:
            return False
        self._stall_retries = 0
        logger.warning("%s: stream progress stalled, restarting capture", self.name)
        self._record_event("stall_detected", "Stream stalled; capture restarted")
        self.rotate_segment("stall")
        return True

    async def flush_segment(self) -> Path | None:
        """Copy the current segment into the archive as a permanent record."""

        end = self._clock()
        target = self._camera.archive_dir / record_filename(
            self._interval_start, end, self._settings.video_extension
        )
        try:
            await asyncio.to_thread(shutil.copyfile, self._segment_path, target)
        except OSError as exc:
            # The retry counter stays armed so the next period tries again.
            self._note_failure("flush_failed", exc)
            return None
        self._state.mark_flushed()
        self._motion_retries = 0
        self._flush_count += 1
        self._last_record = target
        logger.info("%s: segment saved to %s", self.name, target)
        self._record_event("segment_flushed", "Segment saved", path=target.as_posix())
        self.rotate_segment("flushed")
        return target

    def open_segment(self) -> CancelSignal:
        """Create the scope for a new capture, linked to the session signal."""

        segment = self._signal.child("segment")
        self._segment_signal = segment
        self._state.begin_segment()
        return segment

    def rotate_segment(self, reason: str = "rotate") -> bool:
        """Stop the current capture so the recording loop starts a new one."""

        segment = self._segment_signal
        if segment is None:
            return False
        return segment.cancel(reason)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    async def _take_snapshot(self, destination: Path) -> bool:
        try:
            return bool(
                await bounded_wait(
                    self._capture.snapshot(
                        self._segment_path, destination, self._settings.snapshot_resolution
                    ),
                    self._settings.snapshot_timeout_s,
                )
            )
        except (CaptureError, TimeoutError, OSError) as exc:
            # A growing or locked segment is expected; the next period retries.
            logger.debug("%s: snapshot failed: %s", self.name, exc)
            return False

    async def _compare(self) -> MotionVerdict:
        try:
            return await bounded_wait(
                asyncio.to_thread(self._compare_sync), self._settings.evaluation_timeout_s
            )
        except ShapeMismatchError as exc:
            logger.warning("%s: %s", self.name, exc)
        except TimeoutError:
            logger.warning("%s: motion evaluation timed out", self.name)
        except (OSError, ValueError) as exc:
            logger.warning("%s: unable to read frames: %s", self.name, exc)
        return NO_MOTION

    def _compare_sync(self) -> MotionVerdict:
        reference = load_frame(self._reference_path)
        candidate = load_frame(self._candidate_path)
        verdict = evaluate(reference, candidate, self._settings.motion)
        logger.debug(
            "%s: %s detector: %s (score %s)",
            self.name,
            self._settings.motion.kind,
            "motion" if verdict.motion else "no motion",
            verdict.score,
        )
        if verdict.motion:
            # The candidate becomes the new reference frame.
            os.replace(self._candidate_path, self._reference_path)
        return verdict

    def _note_failure(self, event: str, exc: BaseException) -> None:
        message = str(exc) or type(exc).__name__
        self._last_error = message
        logger.warning("%s: %s: %s", self.name, event.replace("_", " "), message)
        self._record_event(event, message)

    def _record_event(self, event: str, message: str, **metadata: object) -> None:
        if self._event_log is None:
            return
        self._event_log.record(self.name, event, message, metadata=metadata or None)


__all__ = ["MonitorOutcome", "RecordingSession", "SessionPhase", "SessionState"]
