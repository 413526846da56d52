# sandbox_relay/api.py
"""
FastAPI adapter around the sandbox orchestrator.

Endpoints:
- GET  /health                               liveness
- POST /sessions/{thread_id}/commands        run a chat command in the thread's sandbox
- GET  /admin/sessions                       list live sessions
- POST /admin/sessions/stop-all              stop every session, report counts
- POST /admin/sessions/{thread_id}/stop      stop one session (idempotent)
- GET  /admin/sessions/{thread_id}/logs      container logs
- GET  /workspace/{thread_id}/{file_path}    serve one workspace file

The orchestrator is read from `app.state`, so the router carries no globals and
tests can mount it on an app wired to a fake runtime.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import structlog
from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.responses import FileResponse
from pydantic import BaseModel

from .errors import (
    ExecFailure,
    ExecTimeout,
    LogsFailure,
    ProvisionFailure,
    SessionNotFound,
    TeardownFailure,
    WorkspacePathError,
)
from .sandbox.orchestrator import SandboxOrchestrator
from .sandbox.scheduler import CleanupScheduler

logger = structlog.get_logger(__name__)

router = APIRouter()


class CommandRequest(BaseModel):
    channel_id: str
    user_id: str
    text: str


def _orchestrator(request: Request) -> SandboxOrchestrator:
    return request.app.state.orchestrator


@router.get("/health")
def health():
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@router.post("/sessions/{thread_id}/commands")
async def run_command(thread_id: str, body: CommandRequest, request: Request):
    """
    Run `body.text` in the sandbox bound to `thread_id`, provisioning it first if
    needed. Returns the ExecutionResult; turning it into chat messages is the
    caller's job.

    Raises:
        HTTPException: 503 when provisioning fails, 504 on exec deadline,
                       502 on any other exec failure
    """
    orch = _orchestrator(request)
    try:
        result = await orch.process_command(thread_id, body.channel_id, body.user_id, body.text)
    except ProvisionFailure as e:
        raise HTTPException(status_code=503, detail=str(e))
    except ExecTimeout as e:
        raise HTTPException(status_code=504, detail=str(e))
    except ExecFailure as e:
        raise HTTPException(status_code=502, detail=str(e))
    return result.to_dict()


@router.get("/admin/sessions")
def list_sessions(request: Request):
    sessions = _orchestrator(request).list_sessions()
    return {"count": len(sessions), "sessions": [s.to_dict() for s in sessions]}


@router.post("/admin/sessions/stop-all")
async def stop_all_sessions(request: Request):
    result = await _orchestrator(request).stop_all()
    return {"success": True, "message": "All sessions processed", **result.to_dict()}


@router.post("/admin/sessions/{thread_id}/stop")
async def stop_session(thread_id: str, request: Request):
    try:
        stopped = await _orchestrator(request).stop_session(thread_id)
    except TeardownFailure as e:
        logger.error("admin_stop_failed", thread_id=thread_id, error=str(e))
        raise HTTPException(status_code=500, detail=str(e))
    return {"success": True, "stopped": stopped}


@router.get("/admin/sessions/{thread_id}/logs")
async def session_logs(thread_id: str, request: Request):
    try:
        logs = await _orchestrator(request).get_logs(thread_id)
    except SessionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except LogsFailure as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"thread_id": thread_id, "logs": logs}


@router.get("/workspace/{thread_id}/{file_path:path}")
def workspace_file(thread_id: str, file_path: str, request: Request):
    """
    Serve a file from a thread's workspace. Works after the sandbox is gone:
    workspaces outlive their containers.

    Raises:
        HTTPException: 400 if the path escapes the workspace, 404 if missing
    """
    store = _orchestrator(request).workspaces
    try:
        path = store.resolve_file(thread_id, file_path)
    except WorkspacePathError as e:
        logger.warning("workspace_path_rejected", thread_id=thread_id, file_path=file_path)
        raise HTTPException(status_code=400, detail=str(e))
    if not path.is_file():
        raise HTTPException(status_code=404, detail="File not found")
    return FileResponse(path=str(path), filename=path.name)


def create_app(
    orchestrator: SandboxOrchestrator,
    scheduler: Optional[CleanupScheduler] = None,
) -> FastAPI:
    """
    Build the FastAPI app. The lifespan starts the cleanup scheduler and, on
    shutdown, stops it and every live sandbox, then closes the runtime.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if scheduler is not None:
            scheduler.start()
        try:
            yield
        finally:
            if scheduler is not None:
                await scheduler.stop()
            result = await orchestrator.stop_all()
            logger.info("shutdown_sessions_stopped", **result.to_dict())
            orchestrator.runtime.close()

    app = FastAPI(title="sandbox-relay", lifespan=lifespan)
    app.state.orchestrator = orchestrator
    app.include_router(router)
    return app
