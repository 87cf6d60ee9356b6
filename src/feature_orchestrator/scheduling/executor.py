"""Start every eligible task of a feature phase in parallel."""

from __future__ import annotations

import asyncio
from typing import Optional, Protocol

from loguru import logger

from ..constants import DEFAULT_MAX_PARALLEL_STARTS, DEFAULT_TASK_ESTIMATE_MINUTES
from ..domain.models import PhasePlan, PhaseRunSummary, SessionOwner, Task
from ..errors import ConfigurationError, SessionAlreadyRunning, SpawnFailed
from ..sessions.manager import SpawnHook
from ..sessions.registry import SessionRegistry
from ..state.accessor import StateAccessor
from ..utils import KeyedLock
from .instructions import build_task_instructions
from .resolver import eligible, plan_phases, unmet_dependencies


class SessionStarter(Protocol):
    async def start(self, owner: SessionOwner, instructions: str, *, on_spawned: Optional[SpawnHook] = None) -> str: ...

    async def kill(self, session_id: str) -> object: ...


class PhaseExecutor:
    """Dispatch the ready tasks of one phase without waiting for them to finish."""

    def __init__(
        self,
        state: StateAccessor,
        sessions: SessionStarter,
        registry: SessionRegistry,
        *,
        max_parallel_starts: int = DEFAULT_MAX_PARALLEL_STARTS,
        default_estimate_minutes: int = DEFAULT_TASK_ESTIMATE_MINUTES,
    ) -> None:
        self.state = state
        self.sessions = sessions
        self.registry = registry
        self.max_parallel_starts = max(1, max_parallel_starts)
        self.default_estimate_minutes = default_estimate_minutes
        self._feature_locks = KeyedLock()

    async def run_phase(self, feature_id: str, phase: int) -> PhaseRunSummary:
        """Start the ready tasks of `phase` and report what every task is doing.

        Idempotent: tasks already running are reported, never restarted.

        Raises:
            FeatureNotFound: If the feature does not exist.
            ConfigurationError: If the feature is archived, the phase is empty,
                or the dependency graph is invalid.
        """
        async with self._feature_locks(feature_id):
            feature = await self.state.get_feature(feature_id)
            if feature.status == "archived":
                raise ConfigurationError(f"Feature {feature_id} is archived")
            tasks = await self.state.list_tasks(feature_id)
            phase_tasks = [t for t in tasks if t.phase == phase]
            if not phase_tasks:
                raise ConfigurationError(f"Feature {feature_id} has no tasks in phase {phase}")
            eligibility = eligible(phase, tasks)

            summary = PhaseRunSummary(feature_id=feature_id, phase=phase)
            for task in phase_tasks:
                if task.status == "completed":
                    summary.completed.append(task.id)
                elif task.status == "qa":
                    summary.in_qa.append(task.id)
                elif task.status == "in_progress":
                    summary.already_running.append(task.id)

            ready: list[Task] = []
            for task in eligibility.ready:
                live = self.registry.live_for_owner(SessionOwner(feature_id, task.id))
                if live is not None:
                    summary.already_running.append(task.id)
                    summary.sessions[task.id] = live.session_id
                else:
                    ready.append(task)

            for task in eligibility.blocked:
                summary.blocked.append(task.id)
                if task.status == "pending":
                    waiting_on = ", ".join(unmet_dependencies(task, tasks))
                    await self.state.update_task_status(
                        feature_id, task.id, "blocked", note=f"waiting on {waiting_on}"
                    )
                    summary.newly_blocked.append(task.id)

            logger.info(
                "[Phase {}] {}: {} ready, {} blocked, {} running",
                phase,
                feature_id,
                len(ready),
                len(summary.blocked),
                len(summary.already_running),
            )

            semaphore = asyncio.Semaphore(self.max_parallel_starts)
            outcomes = await asyncio.gather(
                *(self._start_task(feature_id, task, semaphore) for task in ready),
                return_exceptions=True,
            )
            for task, outcome in zip(ready, outcomes):
                if isinstance(outcome, SessionAlreadyRunning):
                    summary.already_running.append(task.id)
                    summary.sessions[task.id] = outcome.session_id
                elif isinstance(outcome, BaseException):
                    summary.failed_to_start.append(task.id)
                    if not isinstance(outcome, SpawnFailed):
                        logger.opt(exception=outcome).error("[Phase {}] Unexpected error starting {}", phase, task.id)
                else:
                    summary.started.append(task.id)
                    summary.sessions[task.id] = outcome

            if summary.is_complete and summary.has_blocked:
                logger.warning(
                    "[Phase {}] {} has nothing left to start but {} task(s) are blocked",
                    phase,
                    feature_id,
                    len(summary.blocked),
                )
            elif summary.is_complete:
                logger.info("[Phase {}] {} is complete", phase, feature_id)
            return summary

    async def _start_task(self, feature_id: str, task: Task, semaphore: asyncio.Semaphore) -> str:
        async with semaphore:

            async def _mark_in_progress(session_id: str) -> None:
                await self.state.update_task_status(
                    feature_id,
                    task.id,
                    "in_progress",
                    actor=task.agent,
                    note=f"worker session {session_id} spawned",
                    session_id=session_id,
                )

            try:
                return await self.sessions.start(
                    SessionOwner(feature_id, task.id),
                    build_task_instructions(task),
                    on_spawned=_mark_in_progress,
                )
            except SpawnFailed as exc:
                logger.warning("[Phase {}] Failed to start {}: {}", task.phase, task.id, exc)
                raise

    async def analyze_feature(self, feature_id: str) -> list[PhasePlan]:
        """Dry-run plan of every phase; nothing is started."""
        tasks = await self.state.list_tasks(feature_id)
        return plan_phases(tasks, self.default_estimate_minutes)

    async def cancel_feature(self, feature_id: str) -> list[str]:
        """Kill every live session of the feature; returns the killed session ids."""
        async with self._feature_locks(feature_id):
            await self.state.get_feature(feature_id)
            live = self.registry.live_handles(feature_id)
            session_ids = [h.session_id for h in live]
            if session_ids:
                logger.info("Cancelling {} session(s) of feature {}", len(session_ids), feature_id)
                await asyncio.gather(*(self.sessions.kill(sid) for sid in session_ids))
            return session_ids
