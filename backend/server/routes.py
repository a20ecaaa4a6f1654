"""
Route registration for the live audio control API.

Responsibilities:
- Define HTTP endpoints for the caller affordances (start, end, retry,
  mute, settings, recording, analyser)
- Build a supervisor per call
- Pull dependencies from app.state
"""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, HTTPException, Response
from pydantic import BaseModel, ConfigDict, Field

from errors import InvalidSettings
from observability.logger import log_event
from session.state import SessionState
from session.supervisor import ReconnectionSupervisor

_BUSY_STATES = (SessionState.CONNECTING, SessionState.ACTIVE, SessionState.SUMMARIZING)


class MuteRequest(BaseModel):
    muted: bool


class StartRequest(BaseModel):
    label: str = "call"


class SettingsUpdate(BaseModel):
    """Partial settings update; omitted fields keep their current value."""
    model_config = ConfigDict(populate_by_name=True)

    volume: float | None = None
    speed: float | None = None
    enhancer: bool | None = None
    auto_level: bool | None = Field(default=None, alias="autoLevel")


def register_routes(app: FastAPI) -> None:
    """Register all routes on the FastAPI app."""

    def _require_supervisor() -> ReconnectionSupervisor:
        supervisor: ReconnectionSupervisor | None = app.state.supervisor
        if supervisor is None:
            raise HTTPException(status_code=404, detail="No call has been started.")
        return supervisor

    def _remember(memory: str) -> None:
        app.state.memory = memory

    @app.get("/health")
    async def health() -> dict[str, str]: # pyright: ignore[reportUnusedFunction]
        return {"status": "ok"}

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    @app.get("/session")
    async def get_session() -> dict[str, Any]: # pyright: ignore[reportUnusedFunction]
        supervisor: ReconnectionSupervisor | None = app.state.supervisor
        if supervisor is None:
            return {"state": None}
        return supervisor.snapshot()

    @app.post("/session/start")
    async def start_session(body: StartRequest | None = None) -> dict[str, Any]: # pyright: ignore[reportUnusedFunction]
        previous: ReconnectionSupervisor | None = app.state.supervisor
        if previous is not None and previous.state in _BUSY_STATES:
            raise HTTPException(status_code=409, detail=f"Call is {previous.state.value}.")
        if previous is not None:
            await previous.shutdown()

        supervisor = ReconnectionSupervisor(
            config=app.state.config,
            backend_factory=app.state.backend_factory,
            transport_factory=app.state.transport_factory,
            settings=app.state.settings,
            summarizer=app.state.summarizer,
            connectivity=app.state.connectivity,
            memory=app.state.memory,
            on_memory_updated=_remember,
            label=(body.label if body is not None else "call"),
            recordings_dir=app.state.config.recordings_dir,
        )
        app.state.supervisor = supervisor
        await supervisor.start()
        return supervisor.snapshot()

    @app.post("/session/end")
    async def end_session() -> dict[str, Any]: # pyright: ignore[reportUnusedFunction]
        supervisor = _require_supervisor()
        await supervisor.end()
        return supervisor.snapshot()

    @app.post("/session/retry")
    async def retry_session() -> dict[str, Any]: # pyright: ignore[reportUnusedFunction]
        supervisor = _require_supervisor()
        if supervisor.state != SessionState.ERROR:
            raise HTTPException(status_code=409, detail="Retry is only available after an error.")
        await supervisor.retry_now()
        return supervisor.snapshot()

    @app.post("/session/mute")
    async def mute_session(body: MuteRequest) -> dict[str, Any]: # pyright: ignore[reportUnusedFunction]
        supervisor = _require_supervisor()
        supervisor.set_muted(body.muted)
        return {"muted": supervisor.muted}

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    @app.get("/settings")
    async def get_settings() -> dict[str, Any]: # pyright: ignore[reportUnusedFunction]
        return app.state.settings.current.to_record()

    @app.put("/settings")
    async def put_settings(body: SettingsUpdate) -> dict[str, Any]: # pyright: ignore[reportUnusedFunction]
        changes = body.model_dump(exclude_none=True, by_alias=True)
        try:
            updated = app.state.settings.update(**changes)
        except InvalidSettings as exc:
            raise HTTPException(status_code=422, detail=exc.user_message) from exc
        return updated.to_record()

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    @app.post("/recording/start")
    async def start_recording() -> dict[str, Any]: # pyright: ignore[reportUnusedFunction]
        supervisor = _require_supervisor()
        if not supervisor.start_recording():
            raise HTTPException(status_code=409, detail=supervisor.recording_error)
        return {"recording": True}

    @app.post("/recording/stop")
    async def stop_recording() -> dict[str, Any]: # pyright: ignore[reportUnusedFunction]
        supervisor = _require_supervisor()
        artifact = supervisor.stop_recording()
        if artifact is None:
            raise HTTPException(status_code=409, detail="No recording in progress.")
        return {
            "recording": False,
            "filename": artifact.filename,
            "duration_s": artifact.duration_s,
            "bytes": len(artifact.data),
        }

    @app.get("/recording")
    async def download_recording() -> Response: # pyright: ignore[reportUnusedFunction]
        supervisor = _require_supervisor()
        artifact = supervisor.last_recording
        if artifact is None:
            raise HTTPException(status_code=404, detail="No recording available.")
        log_event({
            "event_type": "recording_downloaded",
            "session_id": supervisor.session_id,
            "filename": artifact.filename,
        })
        return Response(
            content=artifact.data,
            media_type=artifact.mime_type,
            headers={"Content-Disposition": f'attachment; filename="{artifact.filename}"'},
        )

    # ------------------------------------------------------------------
    # Visualization
    # ------------------------------------------------------------------

    @app.get("/analyser")
    async def analyser() -> dict[str, Any]: # pyright: ignore[reportUnusedFunction]
        supervisor = _require_supervisor()
        call = supervisor.call
        if call is None or call.graph is None:
            raise HTTPException(status_code=404, detail="No active playback graph.")
        data = call.graph.analyser.byte_frequency_data()
        return {
            "bin_count": call.graph.analyser.frequency_bin_count,
            "data": [int(v) for v in data],
        }
