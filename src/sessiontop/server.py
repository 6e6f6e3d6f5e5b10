"""
HTTP intake for hooks and a read-only view of the session snapshot.

Endpoints:
- POST /api/hooks/{kind} - session_start | request_start | request_stop
- GET  /api/sessions     - full current snapshot
- GET  /api/stats        - aggregate counts
- GET  /api/health       - liveness of the monitor itself
"""

import logging
from datetime import datetime
from typing import Any

import uvicorn
from fastapi import APIRouter, FastAPI, HTTPException, Request

from sessiontop.config import MonitorConfig
from sessiontop.coordinator import ReconciliationCoordinator
from sessiontop.hooks import HookReceiver, InvalidHookPayload

logger = logging.getLogger(__name__)


def create_router(coordinator: ReconciliationCoordinator, receiver: HookReceiver) -> APIRouter:
    router = APIRouter(prefix="/api", tags=["sessions"])

    @router.post("/hooks/{kind}")
    async def receive_hook(kind: str, request: Request) -> dict[str, str]:
        try:
            payload = await request.json()
        except ValueError as e:
            raise HTTPException(status_code=400, detail="invalid JSON body") from e
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="hook body must be a JSON object")
        try:
            event = receiver.receive(kind, payload)
        except InvalidHookPayload as e:
            logger.warning(f"Rejected {kind} hook: {e}")
            raise HTTPException(status_code=400, detail=str(e)) from e
        return {"status": "ok", "sessionId": event.session_id}

    @router.get("/sessions")
    async def list_sessions() -> list[dict[str, Any]]:
        return [record.to_dict() for record in coordinator.snapshot()]

    @router.get("/stats")
    async def stats() -> dict[str, int]:
        s = coordinator.stats()
        return {"total": s.total, "running": s.running, "idle": s.idle, "placeholders": s.placeholders}

    @router.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "timestamp": datetime.now().isoformat()}

    return router


def create_app(coordinator: ReconciliationCoordinator, receiver: HookReceiver | None = None) -> FastAPI:
    """Build the FastAPI application around a running coordinator."""
    receiver = receiver or HookReceiver(coordinator.receive_hook)
    app = FastAPI(title="sessiontop", docs_url=None, redoc_url=None)
    app.include_router(create_router(coordinator, receiver))
    return app


def create_server(coordinator: ReconciliationCoordinator, config: MonitorConfig) -> uvicorn.Server:
    """A uvicorn server meant to be served on the caller's event loop."""
    server_config = uvicorn.Config(
        create_app(coordinator),
        host=config.host,
        port=config.port,
        log_config=None,
        access_log=False,
    )
    return uvicorn.Server(server_config)
