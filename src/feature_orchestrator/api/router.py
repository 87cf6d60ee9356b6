from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Optional

from fastapi import APIRouter, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import StreamingResponse
from loguru import logger
from pydantic import BaseModel, Field

from ..domain.models import OutputEvent
from ..errors import (
    ConfigurationError,
    FeatureNotFound,
    InvalidTransition,
    OrchestratorError,
    SessionAlreadyRunning,
    SessionNotFound,
    SessionNotResumable,
    SpawnFailed,
    TaskNotFound,
)
from ..service import OrchestratorService
from ..state.loader import parse_feature_definition


class FeatureDefinitionRequest(BaseModel):
    feature: dict[str, Any]
    tasks: list[dict[str, Any]]


class TaskStatusRequest(BaseModel):
    status: str
    note: str = ""
    actor: str = "user"


class QAResultRequest(BaseModel):
    item: int | str
    passed: Optional[bool] = None


class FeatureSessionRequest(BaseModel):
    instructions: str = Field(min_length=1)


_STATUS_CODES: list[tuple[type[OrchestratorError], int]] = [
    (FeatureNotFound, 404),
    (TaskNotFound, 404),
    (SessionNotFound, 404),
    (SessionAlreadyRunning, 409),
    (SessionNotResumable, 409),
    (InvalidTransition, 409),
    (ConfigurationError, 422),
    (SpawnFailed, 503),
]


def _http_error(exc: OrchestratorError) -> HTTPException:
    for exc_type, status_code in _STATUS_CODES:
        if isinstance(exc, exc_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _sse(payload: dict[str, Any], event: Optional[str] = None) -> str:
    prefix = f"event: {event}\n" if event else ""
    return f"{prefix}data: {json.dumps(payload)}\n\n"


def create_router(resolve_service: Callable[[], OrchestratorService]) -> APIRouter:
    router = APIRouter(prefix="/api", tags=["orchestrator"])

    @router.get("/status")
    async def get_status() -> dict[str, Any]:
        return await resolve_service().status()

    @router.get("/features")
    async def list_features() -> dict[str, Any]:
        features = await resolve_service().list_features()
        return {"features": [f.to_dict() for f in features], "total": len(features)}

    @router.post("/features", status_code=201)
    async def define_feature(body: FeatureDefinitionRequest) -> dict[str, Any]:
        service = resolve_service()
        try:
            feature, tasks = parse_feature_definition(body.model_dump())
            feature = await service.define_feature(feature, tasks)
        except OrchestratorError as exc:
            raise _http_error(exc)
        return {"feature": feature.to_dict()}

    @router.get("/features/{feature_id}")
    async def get_feature(feature_id: str) -> dict[str, Any]:
        try:
            feature = await resolve_service().get_feature(feature_id)
        except OrchestratorError as exc:
            raise _http_error(exc)
        return {"feature": feature.to_dict()}

    @router.delete("/features/{feature_id}")
    async def delete_feature(feature_id: str) -> dict[str, Any]:
        try:
            removed = await resolve_service().delete_feature(feature_id)
        except OrchestratorError as exc:
            raise _http_error(exc)
        return {"deleted": feature_id, "tasks_removed": removed}

    @router.post("/features/{feature_id}/archive")
    async def archive_feature(feature_id: str) -> dict[str, Any]:
        try:
            feature = await resolve_service().archive_feature(feature_id)
        except OrchestratorError as exc:
            raise _http_error(exc)
        return {"feature": feature.to_dict()}

    @router.get("/features/{feature_id}/tasks")
    async def list_tasks(feature_id: str, phase: Optional[int] = Query(None)) -> dict[str, Any]:
        try:
            tasks = await resolve_service().list_tasks(feature_id, phase)
        except OrchestratorError as exc:
            raise _http_error(exc)
        return {"tasks": [t.to_dict() for t in tasks], "total": len(tasks)}

    @router.post("/features/{feature_id}/tasks/{task_id}/status")
    async def update_task_status(feature_id: str, task_id: str, body: TaskStatusRequest) -> dict[str, Any]:
        try:
            task = await resolve_service().state.update_task_status(
                feature_id, task_id, body.status, actor=body.actor, note=body.note
            )
        except OrchestratorError as exc:
            raise _http_error(exc)
        return {"task": task.to_dict()}

    @router.post("/features/{feature_id}/tasks/{task_id}/qa")
    async def set_qa_result(feature_id: str, task_id: str, body: QAResultRequest) -> dict[str, Any]:
        try:
            task = await resolve_service().state.set_qa_result(feature_id, task_id, body.item, body.passed)
        except OrchestratorError as exc:
            raise _http_error(exc)
        return {"task": task.to_dict()}

    @router.get("/features/{feature_id}/plan")
    async def plan_feature(feature_id: str) -> dict[str, Any]:
        try:
            plans = await resolve_service().plan_feature(feature_id)
        except OrchestratorError as exc:
            raise _http_error(exc)
        return {
            "feature_id": feature_id,
            "phases": [p.to_dict() for p in plans],
            "estimated_minutes": sum(p.estimated_minutes for p in plans),
            "can_execute": all(p.can_execute for p in plans),
        }

    @router.post("/features/{feature_id}/phases/{phase}/run")
    async def run_phase(feature_id: str, phase: int) -> dict[str, Any]:
        try:
            summary = await resolve_service().run_phase(feature_id, phase)
        except OrchestratorError as exc:
            raise _http_error(exc)
        return {"summary": summary.to_dict()}

    @router.post("/features/{feature_id}/cancel")
    async def cancel_feature(feature_id: str) -> dict[str, Any]:
        try:
            killed = await resolve_service().cancel_feature(feature_id)
        except OrchestratorError as exc:
            raise _http_error(exc)
        return {"killed": killed}

    @router.post("/features/{feature_id}/session", status_code=201)
    async def start_feature_session(feature_id: str, body: FeatureSessionRequest) -> dict[str, Any]:
        try:
            session_id = await resolve_service().start_feature_session(feature_id, body.instructions)
        except OrchestratorError as exc:
            raise _http_error(exc)
        return {"session_id": session_id}

    @router.get("/sessions")
    async def list_sessions(feature_id: Optional[str] = Query(None)) -> dict[str, Any]:
        service = resolve_service()
        sessions = await service.list_sessions(feature_id)
        items = []
        for record in sessions:
            item = record.to_dict()
            item["status"] = await service.session_status(record.id)
            items.append(item)
        return {"sessions": items, "total": len(items)}

    @router.get("/sessions/{session_id}")
    async def get_session(session_id: str) -> dict[str, Any]:
        service = resolve_service()
        try:
            record = await service.get_session(session_id)
            status = await service.session_status(session_id)
        except OrchestratorError as exc:
            raise _http_error(exc)
        return {"session": record.to_dict(), "status": status}

    @router.get("/sessions/{session_id}/transcript")
    async def get_transcript(session_id: str) -> dict[str, Any]:
        try:
            events = await resolve_service().get_transcript(session_id)
        except OrchestratorError as exc:
            raise _http_error(exc)
        return {"session_id": session_id, "events": [e.to_dict() for e in events]}

    @router.post("/sessions/{session_id}/kill")
    async def kill_session(session_id: str) -> dict[str, Any]:
        try:
            record = await resolve_service().kill_session(session_id)
        except OrchestratorError as exc:
            raise _http_error(exc)
        return {"session": record.to_dict()}

    @router.post("/sessions/{session_id}/resume")
    async def resume_session(session_id: str) -> dict[str, Any]:
        try:
            record = await resolve_service().resume_session(session_id)
        except OrchestratorError as exc:
            raise _http_error(exc)
        return {"session": record.to_dict()}

    @router.get("/sessions/{session_id}/stream")
    async def stream_session(session_id: str) -> StreamingResponse:
        service = resolve_service()
        try:
            await service.get_session(session_id)
        except OrchestratorError as exc:
            raise _http_error(exc)

        async def _events() -> AsyncIterator[str]:
            async with _observe(service, session_id) as (past, live):
                for event in past:
                    yield _sse(event.to_dict(), event="transcript")
                async for event in live:
                    yield _sse(event.to_dict(), event="event")
            yield _sse({"session_id": session_id}, event="end")

        return StreamingResponse(_events(), media_type="text/event-stream", headers={"Cache-Control": "no-cache"})

    return router


@asynccontextmanager
async def _observe(
    service: OrchestratorService, session_id: str
) -> AsyncIterator[tuple[list[OutputEvent], AsyncIterator[OutputEvent]]]:
    """Subscribe first, then read the transcript, so no event falls between the two."""
    queue: asyncio.Queue[Optional[OutputEvent]] = asyncio.Queue()
    unsubscribe = service.subscribe(session_id, queue.put_nowait, on_end=lambda: queue.put_nowait(None))
    try:
        past = await service.get_transcript(session_id)
        last_seq = past[-1].seq if past else 0

        async def _live() -> AsyncIterator[OutputEvent]:
            while True:
                event = await queue.get()
                if event is None:
                    return
                if event.seq > last_seq:
                    yield event

        yield past, _live()
    finally:
        unsubscribe()


async def handle_session_socket(websocket: WebSocket, service: OrchestratorService, session_id: str) -> None:
    """Send the session transcript, then live events until the session ends or the client leaves."""
    await websocket.accept()
    try:
        await service.get_session(session_id)
    except SessionNotFound as exc:
        await websocket.send_text(json.dumps({"type": "error", "detail": str(exc)}))
        await websocket.close(code=4404)
        return
    try:
        async with _observe(service, session_id) as (past, live):
            await websocket.send_text(
                json.dumps({"type": "transcript", "session_id": session_id, "events": [e.to_dict() for e in past]})
            )
            async for event in live:
                await websocket.send_text(json.dumps({"type": "event", "event": event.to_dict()}))
        await websocket.send_text(json.dumps({"type": "end", "session_id": session_id}))
        await websocket.close()
    except WebSocketDisconnect:
        logger.debug("Observer of session {} disconnected", session_id)
