"""FastAPI application exposing the orchestrator to dashboards and scripts."""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from ..service import OrchestratorService
from .router import create_router, handle_session_socket


def create_app(
    project_dir: Optional[Path] = None,
    *,
    service: Optional[OrchestratorService] = None,
    enable_cors: bool = True,
    monitor: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        project_dir: Project whose `.orchestrator/` state is served (default: cwd).
        service: Pre-built service, mainly for tests; overrides `project_dir`.
        enable_cors: Whether to enable permissive CORS.
        monitor: Whether to run the background liveness monitor.

    Returns:
        Configured FastAPI app.
    """
    orchestrator = service or OrchestratorService.for_project(project_dir or Path.cwd())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await orchestrator.startup(monitor=monitor)
        try:
            yield
        finally:
            await orchestrator.shutdown()

    app = FastAPI(
        title="Feature Orchestrator",
        description="Run feature phases, drive worker sessions and stream their output",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator

    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(create_router(lambda: orchestrator))

    @app.get("/")
    async def root() -> dict[str, str]:
        return {"name": "Feature Orchestrator", "version": "0.1.0", "status": "running"}

    @app.websocket("/ws/sessions/{session_id}")
    async def session_socket(websocket: WebSocket, session_id: str) -> None:
        await handle_session_socket(websocket, orchestrator, session_id)

    return app
