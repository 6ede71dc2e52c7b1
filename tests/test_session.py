from __future__ import annotations

import asyncio
import itertools
import logging
from datetime import datetime, timedelta
from pathlib import Path

import numpy as np
import pytest

from motion_recorder.cancellation import CancelSignal
from motion_recorder.capture import CaptureError
from motion_recorder.config import CameraDescriptor, RecorderSettings, ValidationError, record_filename
from motion_recorder.event_log import EventLog
from motion_recorder.motion import PixelSampling
from motion_recorder.session import (
    MonitorOutcome,
    RecordingSession,
    SessionPhase,
    SessionState,
)


def _settings(**overrides) -> RecorderSettings:
    values = {
        "motion": PixelSampling(step=2, sensitivity=0.01),
        "loop_delay_s": 0,
        "probe_segment_s": 1,
        "confirm_window_s": 1,
        "stall_window_s": 1,
        "retry_budget": 3,
    }
    values.update(overrides)
    return RecorderSettings(**values)


def _stepping_clock(start: datetime = datetime(2024, 5, 1, 12, 0, 0)):
    steps = itertools.count()
    return lambda: start + timedelta(minutes=next(steps))


def _session(
    roots: tuple[Path, Path],
    capture,
    *,
    name: str = "front",
    **kwargs,
) -> RecordingSession:
    temp_root, records_root = roots
    camera = CameraDescriptor(name, f"rtsp://{name}", temp_root, records_root)
    kwargs.setdefault("settings", _settings())
    return RecordingSession(camera, capture, **kwargs)


# ----------------------------------------------------------------------
# Shared state
# ----------------------------------------------------------------------


def test_progress_marks_never_decrease_across_segments() -> None:
    state = SessionState()
    state.note_progress(10)
    state.note_progress(4)
    assert state.last_progress_mark == 10
    state.begin_segment()
    state.note_progress(0)
    assert state.last_progress_mark == 10
    state.note_progress(2)
    assert state.last_progress_mark == 12


def test_progress_changed_adopts_new_baseline() -> None:
    state = SessionState()
    assert state.progress_changed() is False
    state.note_progress(3)
    assert state.progress_changed() is True
    assert state.progress_changed() is False
    assert state.snapshot()["reference_progress_mark"] == 3


def test_construction_validates_and_creates_directories(
    roots: tuple[Path, Path], make_capture
) -> None:
    session = _session(roots, make_capture())
    assert session.camera.temp_dir.is_dir()
    assert session.camera.archive_dir.is_dir()
    assert session.segment_path.parent == session.camera.temp_dir
    assert session.segment_path.suffix == ".mp4"
    assert session.reference_path != session.candidate_path
    assert session.status()["phase"] == SessionPhase.IDLE.value

    temp_root, records_root = roots
    with pytest.raises(ValidationError):
        RecordingSession(CameraDescriptor("side", "", temp_root, records_root), make_capture())


def test_sessions_use_distinct_working_files(roots: tuple[Path, Path], make_capture) -> None:
    first = _session(roots, make_capture())
    second = _session(roots, make_capture())
    assert first.segment_path != second.segment_path


# ----------------------------------------------------------------------
# Monitoring phase
# ----------------------------------------------------------------------


def test_monitor_succeeds_after_nth_candidate(
    roots: tuple[Path, Path], make_capture, still_frame, moving_frame
) -> None:
    capture = make_capture([still_frame, still_frame, still_frame, moving_frame])
    log = EventLog()
    session = _session(roots, capture, event_log=log)

    outcome = asyncio.run(session.monitor())

    assert outcome is MonitorOutcome.MOTION_SEEN
    # One probe for the reference frame, then one per candidate.
    assert len(capture.capture_calls) == 4
    assert all(duration == 1.0 for _, _, duration in capture.capture_calls)
    assert len(capture.snapshot_calls) == 4
    assert session.state.motion_active is True
    # The moving candidate became the new reference.
    assert session.reference_path.exists()
    assert not session.candidate_path.exists()
    assert [entry.event for entry in log.tail(category="front")] == ["motion_seen"]


def test_monitor_times_out(roots: tuple[Path, Path], make_capture, still_frame) -> None:
    ticks = itertools.count(0, 2)
    capture = make_capture([still_frame])
    session = _session(roots, capture, monotonic=lambda: float(next(ticks)))

    outcome = asyncio.run(session.monitor(timeout_s=5))

    assert outcome is MonitorOutcome.TIMED_OUT
    assert len(capture.capture_calls) == 3


def test_monitor_returns_cancelled_when_stopped(
    roots: tuple[Path, Path], make_capture, still_frame
) -> None:
    capture = make_capture([still_frame])
    global_signal = CancelSignal()
    session = _session(roots, capture, stop_signal=global_signal)
    global_signal.cancel()

    assert asyncio.run(session.monitor()) is MonitorOutcome.CANCELLED
    assert capture.capture_calls == []


def test_monitor_backs_off_after_capture_failures(
    roots: tuple[Path, Path], make_capture, still_frame, moving_frame, caplog
) -> None:
    capture = make_capture(
        [still_frame, moving_frame],
        segment_errors=[CaptureError("connection refused"), CaptureError("timeout")],
    )
    session = _session(roots, capture)

    with caplog.at_level(logging.WARNING, logger="motion_recorder.session"):
        outcome = asyncio.run(session.monitor())

    assert outcome is MonitorOutcome.MOTION_SEEN
    assert len(capture.capture_calls) == 4
    assert "connection refused" in caplog.text
    assert session.status()["last_error"] == "timeout"


def test_monitor_abandons_hung_probe_and_cancels_it(
    roots: tuple[Path, Path], make_capture, still_frame, wait_until
) -> None:
    ticks = itertools.count(0, 10)
    capture = make_capture([still_frame], hang=True)
    session = _session(
        roots,
        capture,
        settings=_settings(probe_segment_s=0.05, segment_timeout_margin_s=0),
        monotonic=lambda: float(next(ticks)),
    )

    async def scenario() -> MonitorOutcome:
        outcome = await session.monitor(timeout_s=5)
        await wait_until(lambda: all(signal.cancelled for signal in capture.signals))
        return outcome

    assert asyncio.run(scenario()) is MonitorOutcome.TIMED_OUT
    assert capture.signals[0].reason == "timeout"
    # The session itself keeps running.
    assert session.stopped is False


def test_monitor_treats_mismatched_frames_as_no_motion(
    roots: tuple[Path, Path], make_capture, still_frame
) -> None:
    ticks = itertools.count()
    small = np.zeros((16, 16, 3), dtype=np.uint8)
    capture = make_capture([still_frame, small])
    session = _session(roots, capture, monotonic=lambda: float(next(ticks)))
    assert asyncio.run(session.monitor(timeout_s=3)) is MonitorOutcome.TIMED_OUT


# ----------------------------------------------------------------------
# Motion loop
# ----------------------------------------------------------------------


def test_motion_tick_flushes_once_after_retry_budget(
    roots: tuple[Path, Path], make_capture, still_frame, moving_frame
) -> None:
    capture = make_capture([still_frame, still_frame, still_frame, still_frame, moving_frame])
    clock = _stepping_clock()
    log = EventLog()
    session = _session(roots, capture, clock=clock, event_log=log)
    session.segment_path.write_bytes(b"segment-data")

    async def scenario() -> list[Path | None]:
        results = []
        segment = session.open_segment()
        for tick in range(8):
            results.append(await session.motion_tick())
            if segment.cancelled:
                # The recording loop would rotate into a new capture here.
                segment = session.open_segment()
        return results

    results = asyncio.run(scenario())

    flushed = [index for index, result in enumerate(results) if result is not None]
    assert flushed == [2, 7]
    start = datetime(2024, 5, 1, 12, 0, 0)
    names = sorted(path.name for path in session.camera.archive_dir.iterdir())
    assert names == sorted(
        [
            record_filename(start, start + timedelta(minutes=1)),
            record_filename(start + timedelta(minutes=2), start + timedelta(minutes=3)),
        ]
    )
    assert session.flush_count == 2
    assert (session.camera.archive_dir / names[0]).read_bytes() == b"segment-data"
    events = [entry.event for entry in log.tail(category="front")]
    assert events == ["segment_flushed", "motion_resumed", "segment_flushed"]


def test_motion_tick_does_not_flush_twice_without_new_motion(
    roots: tuple[Path, Path], make_capture, still_frame
) -> None:
    capture = make_capture([still_frame])
    session = _session(roots, capture)
    session.segment_path.write_bytes(b"segment-data")

    async def scenario() -> tuple[list[Path | None], int]:
        segment = session.open_segment()
        results = [await session.motion_tick() for _ in range(10)]
        return results, int(segment.cancelled)

    results, cancelled = asyncio.run(scenario())
    assert sum(result is not None for result in results) == 1
    assert cancelled == 1
    assert len(list(session.camera.archive_dir.iterdir())) == 1
    assert session.state.segment_flushed is True


def test_flush_failure_keeps_retry_armed(
    roots: tuple[Path, Path], make_capture, still_frame
) -> None:
    capture = make_capture([still_frame])
    log = EventLog()
    session = _session(roots, capture, event_log=log)

    async def scenario() -> list[Path | None]:
        session.open_segment()
        results = [await session.motion_tick() for _ in range(3)]
        session.segment_path.write_bytes(b"late segment")
        results.append(await session.motion_tick())
        return results

    results = asyncio.run(scenario())
    assert results[:3] == [None, None, None]
    assert results[3] is not None
    assert results[3].read_bytes() == b"late segment"
    assert "flush_failed" in [entry.event for entry in log.tail()]


def test_motion_tick_without_snapshot_keeps_previous_flag(
    roots: tuple[Path, Path], make_capture
) -> None:
    session = _session(roots, make_capture([]))
    asyncio.run(session.motion_tick())
    assert session.state.reference_ready is False
    assert session.state.motion_active is False


# ----------------------------------------------------------------------
# Liveness loop
# ----------------------------------------------------------------------


def test_liveness_tick_rotates_after_stall(roots: tuple[Path, Path], make_capture) -> None:
    session = _session(roots, make_capture())

    async def scenario() -> list[bool]:
        segment = session.open_segment()
        session.state.note_progress(4)
        results = [session.liveness_tick()]
        results += [session.liveness_tick() for _ in range(3)]
        results.append(segment.cancelled)
        next_segment = session.open_segment()
        results.append(session.liveness_tick())
        results.append(next_segment.cancelled)
        return results

    assert asyncio.run(scenario()) == [False, False, False, True, True, False, False]


def test_liveness_tick_resets_when_progress_advances(
    roots: tuple[Path, Path], make_capture
) -> None:
    session = _session(roots, make_capture())

    async def scenario() -> list[bool]:
        session.open_segment()
        results = []
        for mark in range(1, 8):
            results.append(session.liveness_tick())
            session.state.note_progress(mark)
        return results

    assert asyncio.run(scenario()) == [False] * 7


# ----------------------------------------------------------------------
# Recording phase and lifecycle
# ----------------------------------------------------------------------


def test_record_joins_all_loops_on_stop(
    roots: tuple[Path, Path], make_capture, still_frame, wait_until
) -> None:
    capture = make_capture([still_frame])
    session = _session(roots, capture)

    async def scenario() -> bool:
        task = asyncio.create_task(session.record())
        await wait_until(lambda: len(capture.capture_calls) == 1)
        assert session.state.phase is SessionPhase.RECORDING
        assert session.rotate_segment("test") is True
        await wait_until(lambda: len(capture.capture_calls) == 2)
        session.stop()
        await asyncio.wait_for(task, timeout=5)
        return task.done()

    assert asyncio.run(scenario()) is True
    assert all(signal.cancelled for signal in capture.signals)
    assert all(duration is None for _, _, duration in capture.capture_calls)


def test_record_surfaces_loop_failure_after_join(
    roots: tuple[Path, Path], make_capture, still_frame
) -> None:
    capture = make_capture([still_frame], segment_errors=[RuntimeError("decoder crashed")])
    session = _session(roots, capture)

    async def scenario() -> None:
        await asyncio.wait_for(session.record(), timeout=5)

    with pytest.raises(RuntimeError, match="decoder crashed"):
        asyncio.run(scenario())
    assert session.stopped is True


def test_record_retries_after_capture_error(
    roots: tuple[Path, Path], make_capture, still_frame, wait_until
) -> None:
    capture = make_capture([still_frame], segment_errors=[CaptureError("lost stream")])
    session = _session(roots, capture)

    async def scenario() -> None:
        task = asyncio.create_task(session.record())
        await wait_until(lambda: len(capture.capture_calls) >= 2)
        session.stop()
        await asyncio.wait_for(task, timeout=5)

    asyncio.run(scenario())
    assert session.status()["last_error"] == "lost stream"


def test_run_monitors_then_records_until_stopped(
    roots: tuple[Path, Path], make_capture, still_frame, moving_frame, wait_until
) -> None:
    capture = make_capture([still_frame, moving_frame])
    log = EventLog()
    session = _session(roots, capture, event_log=log)

    async def scenario() -> MonitorOutcome:
        task = asyncio.create_task(session.run())
        await wait_until(lambda: session.state.phase is SessionPhase.RECORDING)
        session.stop()
        return await asyncio.wait_for(task, timeout=5)

    assert asyncio.run(scenario()) is MonitorOutcome.MOTION_SEEN
    assert session.state.phase is SessionPhase.STOPPED
    events = [entry.event for entry in log.tail()]
    assert events[0] == "session_started"
    assert events[-1] == "session_stopped"


def test_stop_is_idempotent(roots: tuple[Path, Path], make_capture) -> None:
    session = _session(roots, make_capture())
    session.stop()
    session.stop()
    assert session.stopped is True
    assert session.rotate_segment() is False
    assert asyncio.run(session.run()) is MonitorOutcome.CANCELLED
    session.stop()


def test_describe_stream(roots: tuple[Path, Path], make_capture) -> None:
    session = _session(roots, make_capture())
    info = asyncio.run(session.describe_stream())
    assert info is not None and info.codec_name == "h264"

    failing = _session(roots, make_capture(probe_error=CaptureError("no route")), name="back")
    assert asyncio.run(failing.describe_stream()) is None
