"""Wire the orchestrator components together for one project."""

from __future__ import annotations

from pathlib import Path
from typing import Any, AsyncIterator, Optional

from loguru import logger

from .config import OrchestratorSettings, load_settings
from .domain.models import Feature, OutputEvent, PhasePlan, PhaseRunSummary, SessionOwner, Task, WorkerSession
from .errors import ConfigurationError
from .scheduling.executor import PhaseExecutor
from .sessions.manager import WorkerSessionManager
from .sessions.registry import SessionRegistry
from .state.accessor import StateAccessor
from .state.loader import load_feature_file
from .storage.container import Container
from .streaming.multiplexer import EndCallback, EventCallback, RegistryUpstreamSource, StreamMultiplexer, Unsubscribe, UpstreamSource


class OrchestratorService:
    """Observer-facing entry point: phases, sessions and live streams of one project."""

    def __init__(
        self,
        container: Container,
        *,
        settings: Optional[OrchestratorSettings] = None,
        upstream_source: Optional[UpstreamSource] = None,
    ) -> None:
        self.container = container
        self.settings = settings or load_settings(container.project_dir)
        self.state = StateAccessor(container)
        self.registry = SessionRegistry(container.sessions)
        self.sessions = WorkerSessionManager(container, self.state, self.registry, self.settings)
        self.executor = PhaseExecutor(
            self.state,
            self.sessions,
            self.registry,
            max_parallel_starts=self.settings.max_parallel_starts,
        )
        self.multiplexer = StreamMultiplexer(upstream_source or RegistryUpstreamSource(self.registry))
        self._started = False

    @classmethod
    def for_project(cls, project_dir: Path, **kwargs: Any) -> "OrchestratorService":
        return cls(Container(project_dir), **kwargs)

    async def startup(self, *, monitor: bool = True) -> None:
        if self._started:
            return
        self._started = True
        await self.sessions.recover()
        if monitor:
            self.sessions.start_monitor()
        logger.info("Orchestrator ready for {}", self.container.project_dir)

    async def shutdown(self) -> None:
        await self.sessions.shutdown()
        await self.multiplexer.close()
        self._started = False

    # Features and tasks

    async def load_feature(self, path: Path) -> Feature:
        feature, tasks = load_feature_file(path)
        return await self.state.define_feature(feature, tasks)

    async def define_feature(self, feature: Feature, tasks: list[Task]) -> Feature:
        return await self.state.define_feature(feature, tasks)

    async def list_features(self) -> list[Feature]:
        return await self.state.list_features()

    async def get_feature(self, feature_id: str) -> Feature:
        return await self.state.get_feature(feature_id)

    async def list_tasks(self, feature_id: str, phase: Optional[int] = None) -> list[Task]:
        return await self.state.list_tasks(feature_id, phase)

    async def plan_feature(self, feature_id: str) -> list[PhasePlan]:
        return await self.executor.analyze_feature(feature_id)

    async def run_phase(self, feature_id: str, phase: int) -> PhaseRunSummary:
        return await self.executor.run_phase(feature_id, phase)

    async def cancel_feature(self, feature_id: str) -> list[str]:
        return await self.executor.cancel_feature(feature_id)

    async def archive_feature(self, feature_id: str) -> Feature:
        await self.executor.cancel_feature(feature_id)
        return await self.state.archive_feature(feature_id)

    async def delete_feature(self, feature_id: str) -> int:
        await self.executor.cancel_feature(feature_id)
        return await self.state.delete_feature(feature_id)

    # Sessions

    async def start_feature_session(self, feature_id: str, instructions: str) -> str:
        feature = await self.state.get_feature(feature_id)
        if feature.status == "archived":
            raise ConfigurationError(f"Feature {feature_id} is archived")
        return await self.sessions.start(SessionOwner(feature_id), instructions)

    async def kill_session(self, session_id: str) -> WorkerSession:
        return await self.sessions.kill(session_id)

    async def resume_session(self, session_id: str) -> WorkerSession:
        return await self.sessions.resume(session_id)

    async def get_session(self, session_id: str) -> WorkerSession:
        return await self.sessions.get_session(session_id)

    async def session_status(self, session_id: str) -> str:
        return await self.sessions.status(session_id)

    async def list_sessions(self, feature_id: Optional[str] = None) -> list[WorkerSession]:
        return await self.sessions.list_sessions(feature_id)

    async def wait_for_session(self, session_id: str, timeout: Optional[float] = None) -> WorkerSession:
        return await self.sessions.wait_for_session(session_id, timeout)

    async def get_transcript(self, session_id: str) -> list[OutputEvent]:
        return await self.sessions.get_transcript(session_id)

    # Streams

    def subscribe(self, session_id: str, on_event: EventCallback, on_end: Optional[EndCallback] = None) -> Unsubscribe:
        return self.multiplexer.subscribe(session_id, on_event, on_end)

    def stream(self, session_id: str) -> AsyncIterator[OutputEvent]:
        return self.multiplexer.stream(session_id)

    async def status(self) -> dict[str, Any]:
        live = self.registry.live_handles()
        features = await self.state.list_features()
        return {
            "project_dir": str(self.container.project_dir),
            "features": len(features),
            "live_sessions": [h.session_id for h in live],
            "streams": self.multiplexer.active_sessions(),
            "max_parallel_starts": self.settings.max_parallel_starts,
        }
