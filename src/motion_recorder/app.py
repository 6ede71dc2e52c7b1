"""FastAPI application exposing start/stop control over the recorder fleet."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from .cancellation import CancelSignal
from .capture import CaptureError, FFmpegCaptureService, StreamCaptureService
from .config import CameraDescriptor, ConfigManager, ValidationError
from .deadline import bounded_wait
from .event_log import EventLog
from .fleet import FleetCoordinator
from .version import APP_VERSION


class StartPayload(BaseModel):
    monitor_timeout_s: float | None = Field(default=None, ge=0)


def create_app(
    config_path: Path | str = Path("data/config.json"),
    *,
    capture: StreamCaptureService | None = None,
    event_log: EventLog | None = None,
) -> FastAPI:
    app = FastAPI(title="Motion Recorder", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    config_manager = ConfigManager(config_path)
    config = config_manager.load()
    settings = config.settings
    capture_service = capture if capture is not None else FFmpegCaptureService()
    journal = event_log if event_log is not None else EventLog()

    stop_signal = CancelSignal(name="global")
    fleets: dict[str, FleetCoordinator] = {}
    runs: dict[str, asyncio.Task[object]] = {}

    def _descriptor(name: str) -> CameraDescriptor:
        try:
            return config.descriptor(name)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Unknown camera {name!r}") from None

    def _running_names() -> list[str]:
        return [name for name, task in runs.items() if not task.done()]

    def _launch(cameras: list[CameraDescriptor], monitor_timeout_s: float | None) -> FleetCoordinator:
        nonlocal stop_signal
        if stop_signal.cancelled:
            stop_signal = CancelSignal(name="global")
        try:
            fleet = FleetCoordinator(
                cameras,
                capture_service,
                settings=settings,
                stop_signal=stop_signal,
                event_log=journal,
                monitor_timeout_s=monitor_timeout_s,
            )
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        task = asyncio.create_task(fleet.run())
        for camera in cameras:
            fleets[camera.name] = fleet
            runs[camera.name] = task
        return fleet

    async def _stop_all() -> list[str]:
        stopped = _running_names()
        stop_signal.cancel("stop")
        pending = {task for task in runs.values() if not task.done()}
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        return stopped

    @app.on_event("startup")
    async def startup() -> None:
        config.temp_root.mkdir(parents=True, exist_ok=True)
        config.records_root.mkdir(parents=True, exist_ok=True)
        journal.record("system", "startup", "Motion recorder starting up.")

    @app.on_event("shutdown")
    async def shutdown() -> None:
        stopped = await _stop_all()
        journal.record(
            "system",
            "shutdown",
            "Motion recorder shutting down.",
            metadata={"stopped": stopped or None},
        )

    @app.get("/api/cameras")
    async def list_cameras() -> dict[str, object]:
        running = set(_running_names())
        return {
            "cameras": [
                {**camera.to_dict(), "running": camera.name in running}
                for camera in config.descriptors()
            ]
        }

    @app.get("/api/cameras/{name}/stream")
    async def describe_stream(name: str) -> dict[str, object]:
        camera = _descriptor(name)
        try:
            info = await bounded_wait(capture_service.probe(camera.url), settings.probe_timeout_s)
        except (CaptureError, TimeoutError) as exc:
            logger.warning("%s: stream probe failed: %s", name, exc)
            raise HTTPException(status_code=502, detail=f"Unable to analyse stream: {exc}") from exc
        return {"camera": name, "info": info.to_dict(), "summary": info.describe()}

    @app.post("/api/cameras/{name}/start")
    async def start_camera(name: str, payload: StartPayload | None = None) -> dict[str, object]:
        camera = _descriptor(name)
        if name in _running_names():
            raise HTTPException(status_code=409, detail=f"Camera {name!r} is already running")
        timeout = payload.monitor_timeout_s if payload is not None else None
        _launch([camera], timeout)
        logger.info("Started camera %s", name)
        return {"started": [name]}

    @app.post("/api/start")
    async def start_all(payload: StartPayload | None = None) -> dict[str, object]:
        if _running_names():
            raise HTTPException(status_code=409, detail="Recording is already running")
        cameras = config.descriptors()
        timeout = payload.monitor_timeout_s if payload is not None else None
        _launch(cameras, timeout)
        started = [camera.name for camera in cameras if camera.is_complete]
        logger.info("Started %d camera(s)", len(started))
        return {"started": started}

    @app.post("/api/stop")
    async def stop_all() -> dict[str, object]:
        stopped = await _stop_all()
        return {"stopped": stopped}

    @app.get("/api/status")
    async def status() -> dict[str, object]:
        sessions: dict[str, object] = {}
        failures: dict[str, str] = {}
        for fleet in {id(fleet): fleet for fleet in fleets.values()}.values():
            report = fleet.status()
            sessions.update(report["sessions"])
            failures.update(report["failures"])
        return {
            "running": bool(_running_names()),
            "cameras": _running_names(),
            "sessions": sessions,
            "failures": failures,
        }

    @app.get("/api/events")
    async def events(limit: int = 100, camera: str | None = None) -> dict[str, object]:
        entries = journal.tail(limit, category=camera)
        return {"entries": [entry.to_dict() for entry in entries]}

    return app


__all__ = ["create_app"]
