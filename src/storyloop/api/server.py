"""
HTTP control and query surface for storyloop.

Routes wrap a single ``LoopOrchestrator`` held on ``app.state``. Responses use
an ``{"ok": ..., "data" | "error": ...}`` envelope; live progress is served as
server-sent events.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from storyloop.errors import (
    LoopNotFound,
    PreconditionFailed,
    RunnerUnavailable,
    StoryLoopError,
)
from storyloop.models import LoopConfig, LoopStatus, QualityCheckConfig, QualityCheckType
from storyloop.orchestrator import LoopOrchestrator, build_orchestrator

logger = logging.getLogger(__name__)

SSE_KEEPALIVE_SECONDS = 15.0


# =============================================================================
# Request models
# =============================================================================


class QualityCheckBody(BaseModel):
    id: str
    name: Optional[str] = None
    command: str
    type: QualityCheckType = QualityCheckType.CUSTOM
    timeout_seconds: float = Field(default=300.0, gt=0)
    required: bool = True
    enabled: bool = True


class LoopConfigBody(BaseModel):
    max_iterations: int = Field(default=50, ge=1)
    max_attempts_per_item: int = Field(default=3, ge=1)
    max_fix_up_attempts: int = Field(default=2, ge=0)
    model: str = "sonnet"
    effort: str = "medium"
    auto_snapshot: bool = True
    auto_commit: bool = True
    pause_on_failure: bool = False
    quality_checks: list[QualityCheckBody] = Field(default_factory=list)
    system_prompt_override: Optional[str] = None

    def to_config(self) -> LoopConfig:
        data = self.model_dump(exclude={"quality_checks"})
        checks = [QualityCheckConfig.from_dict(check.model_dump()) for check in self.quality_checks]
        return LoopConfig(quality_checks=checks, **data)


class StartLoopRequest(BaseModel):
    workspace_path: Optional[str] = None
    group_id: Optional[str] = None
    config: LoopConfigBody = Field(default_factory=LoopConfigBody)


# =============================================================================
# Helpers
# =============================================================================


def _ok(data: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse({"ok": True, "data": data}, status_code=status_code)


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"ok": False, "error": message}, status_code=status_code)


def _orchestrator(request: Request) -> LoopOrchestrator:
    return request.app.state.orchestrator


def _parse_statuses(raw: Optional[str]) -> Optional[list[LoopStatus]]:
    if not raw:
        return None
    return [LoopStatus(part.strip()) for part in raw.split(",") if part.strip()]


# =============================================================================
# App factory
# =============================================================================


def create_app(
    orchestrator: Optional[LoopOrchestrator] = None,
    *,
    db_path: Optional[str] = None,
    recover: Optional[bool] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        orch = orchestrator or build_orchestrator(db_path)
        app.state.orchestrator = orch
        logger.info("storyloop API starting")
        await orch.start(recover=recover)
        yield
        logger.info("storyloop API shutting down")
        await orch.shutdown()

    app = FastAPI(
        title="storyloop",
        description="Autonomous work-item completion loops",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LoopNotFound)
    async def _not_found(request: Request, exc: LoopNotFound):
        return _error(str(exc), 404)

    @app.exception_handler(PreconditionFailed)
    async def _precondition(request: Request, exc: PreconditionFailed):
        return _error(str(exc), 409)

    @app.exception_handler(RunnerUnavailable)
    async def _runner_unavailable(request: Request, exc: RunnerUnavailable):
        return _error(str(exc), 409)

    @app.exception_handler(StoryLoopError)
    async def _loop_error(request: Request, exc: StoryLoopError):
        return _error(str(exc), 400)

    @app.get("/api/health")
    async def health(request: Request):
        orch = _orchestrator(request)
        return _ok({"status": "healthy", "active_loops": orch.active_loop_ids()})

    @app.post("/api/loops")
    async def start_loop(request: Request, body: StartLoopRequest):
        if not body.workspace_path and not body.group_id:
            return _error("workspace_path or group_id is required", 422)
        orch = _orchestrator(request)
        loop_id = await orch.start_loop(
            body.workspace_path, body.config.to_config(), group_id=body.group_id
        )
        return _ok({"loop_id": loop_id}, status_code=201)

    @app.get("/api/loops")
    async def list_loops(
        request: Request,
        status: Optional[str] = Query(default=None),
        limit: int = Query(default=50, ge=1, le=500),
    ):
        try:
            statuses = _parse_statuses(status)
        except ValueError:
            return _error(f"Unknown loop status filter: {status}", 422)
        records = _orchestrator(request).list_loops(statuses, limit=limit)
        return _ok([record.to_dict() for record in records])

    @app.get("/api/loops/{loop_id}")
    async def get_loop(request: Request, loop_id: str):
        return _ok(_orchestrator(request).get_loop_state(loop_id).to_dict())

    @app.get("/api/loops/{loop_id}/log")
    async def get_loop_log(request: Request, loop_id: str):
        record = _orchestrator(request).get_loop_state(loop_id)
        return _ok([entry.to_dict() for entry in record.iteration_log])

    @app.get("/api/loops/{loop_id}/notes")
    async def get_loop_notes(
        request: Request, loop_id: str, item_id: Optional[str] = Query(default=None)
    ):
        notes = _orchestrator(request).list_agent_notes(loop_id, item_id=item_id)
        return _ok([note.to_dict() for note in notes])

    @app.post("/api/loops/{loop_id}/pause")
    async def pause_loop(request: Request, loop_id: str):
        record = await _orchestrator(request).pause_loop(loop_id)
        return _ok(record.to_dict())

    @app.post("/api/loops/{loop_id}/resume")
    async def resume_loop(request: Request, loop_id: str):
        record = await _orchestrator(request).resume_loop(loop_id)
        return _ok(record.to_dict())

    @app.post("/api/loops/{loop_id}/cancel")
    async def cancel_loop(request: Request, loop_id: str):
        record = await _orchestrator(request).cancel_loop(loop_id)
        return _ok(record.to_dict())

    @app.get("/api/loops/{loop_id}/events")
    async def loop_events(request: Request, loop_id: str):
        """Server-Sent Events stream for one loop; closes after its terminal event."""
        orch = _orchestrator(request)
        record = orch.get_loop_state(loop_id)
        subscription = orch.subscribe(loop_id)

        async def generator():
            try:
                snapshot = {"kind": "snapshot", "loop": record.to_dict()}
                yield f"event: snapshot\ndata: {json.dumps(snapshot)}\n\n"
                if record.status.is_terminal:
                    return
                while True:
                    if await request.is_disconnected():
                        return
                    event = await subscription.get(timeout=SSE_KEEPALIVE_SECONDS)
                    if event is None:
                        yield ": keepalive\n\n"
                        continue
                    yield f"event: {event.kind.value}\ndata: {event.to_json()}\n\n"
                    if event.kind.is_terminal:
                        return
            finally:
                subscription.close()

        return StreamingResponse(generator(), media_type="text/event-stream")

    return app
