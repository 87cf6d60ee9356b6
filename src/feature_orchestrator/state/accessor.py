"""Async access to persisted features and tasks.

Every task read-modify-write runs under a per-task `asyncio.Lock` and a
revision check in the repository, so progress entries from concurrent
writers are never lost.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

from loguru import logger

from ..constants import STORE_WRITE_RETRIES
from ..domain.models import (
    TASK_STATUSES,
    TASK_TRANSITIONS,
    Feature,
    PhaseSpec,
    ProgressEntry,
    Task,
    now_iso,
)
from ..errors import (
    ConfigurationError,
    FeatureNotFound,
    InvalidTransition,
    StoreWriteConflict,
    TaskNotFound,
)
from ..scheduling.resolver import group_by_phase, reverse_dependencies, unmet_dependencies, validate_dependencies
from ..storage.container import Container
from ..utils import KeyedLock


_UNSET: Any = object()


def _aggregate_feature_status(current: str, tasks: list[Task]) -> str:
    if current == "archived" or not tasks:
        return current
    statuses = [t.status for t in tasks]
    if all(s == "completed" for s in statuses):
        return "completed"
    if all(s in {"qa", "completed"} for s in statuses):
        return "qa"
    if any(s != "pending" for s in statuses) or current in {"qa", "completed"}:
        return "in_progress"
    return current


class StateAccessor:
    def __init__(self, container: Container) -> None:
        self.container = container
        self._locks = KeyedLock()

    # Features

    async def list_features(self) -> list[Feature]:
        return await asyncio.to_thread(self.container.features.list)

    async def get_feature(self, feature_id: str) -> Feature:
        feature = await asyncio.to_thread(self.container.features.get, feature_id)
        if feature is None:
            raise FeatureNotFound(feature_id)
        return feature

    async def define_feature(self, feature: Feature, tasks: list[Task]) -> Feature:
        """Persist a new feature and its tasks after validating the dependency graph."""
        if not feature.title:
            raise ConfigurationError("Feature title is required")
        for task in tasks:
            task.feature_id = feature.id
            if task.status not in TASK_STATUSES:
                raise ConfigurationError(f"Task {task.id} has unknown status '{task.status}'")
        validate_dependencies(tasks)
        blocks = reverse_dependencies(tasks)
        for task in tasks:
            task.blocks = blocks[task.id]

        declared = {tid for spec in feature.phases for tid in spec.task_ids}
        if feature.phases:
            unknown = declared - {t.id for t in tasks}
            if unknown:
                raise ConfigurationError(f"Feature phases reference unknown tasks: {', '.join(sorted(unknown))}")
        feature.phases = [
            PhaseSpec(phase=phase, task_ids=[t.id for t in phase_tasks])
            for phase, phase_tasks in group_by_phase(tasks).items()
        ]

        async with self._locks(("feature", feature.id)):
            existing = await asyncio.to_thread(self.container.features.get, feature.id)
            if existing is not None:
                raise ConfigurationError(f"Feature already defined: {feature.id}")
            for task in tasks:
                await asyncio.to_thread(self.container.tasks.upsert, task)
            await asyncio.to_thread(self.container.features.upsert, feature)
        logger.info("Defined feature '{}' with {} tasks in {} phases", feature.id, len(tasks), len(feature.phases))
        return feature

    async def set_feature_session(self, feature_id: str, session_id: Optional[str]) -> Feature:
        async with self._locks(("feature", feature_id)):
            feature = await self.get_feature(feature_id)
            feature.session_id = session_id
            return await asyncio.to_thread(self.container.features.upsert, feature)

    async def archive_feature(self, feature_id: str) -> Feature:
        async with self._locks(("feature", feature_id)):
            feature = await self.get_feature(feature_id)
            feature.status = "archived"
            return await asyncio.to_thread(self.container.features.upsert, feature)

    async def delete_feature(self, feature_id: str) -> int:
        """Delete a feature and every task it owns; returns the number of tasks removed."""
        async with self._locks(("feature", feature_id)):
            await self.get_feature(feature_id)
            removed = await asyncio.to_thread(self.container.tasks.delete_feature, feature_id)
            await asyncio.to_thread(self.container.features.delete, feature_id)
        logger.info("Deleted feature '{}' ({} tasks)", feature_id, removed)
        return removed

    async def refresh_feature_status(self, feature_id: str) -> Feature:
        async with self._locks(("feature", feature_id)):
            feature = await self.get_feature(feature_id)
            tasks = await asyncio.to_thread(self.container.tasks.list, feature_id)
            target = _aggregate_feature_status(feature.status, tasks)
            if target == feature.status:
                return feature
            logger.info("Feature '{}' status {} -> {}", feature_id, feature.status, target)
            feature.status = target  # type: ignore[assignment]
            if target == "in_progress" and not feature.started_at:
                feature.started_at = now_iso()
            feature.completed_at = now_iso() if target == "completed" else None
            return await asyncio.to_thread(self.container.features.upsert, feature)

    # Tasks

    async def list_tasks(self, feature_id: str, phase: Optional[int] = None) -> list[Task]:
        await self.get_feature(feature_id)
        tasks = await asyncio.to_thread(self.container.tasks.list, feature_id)
        if phase is None:
            return tasks
        return [t for t in tasks if t.phase == phase]

    async def get_task(self, feature_id: str, task_id: str) -> Task:
        task = await asyncio.to_thread(self.container.tasks.get, feature_id, task_id)
        if task is None:
            raise TaskNotFound(feature_id, task_id)
        return task

    async def _mutate_task(self, feature_id: str, task_id: str, mutate: Callable[[Task], None]) -> Task:
        async with self._locks(("task", feature_id, task_id)):
            for attempt in range(1, STORE_WRITE_RETRIES + 1):
                task = await self.get_task(feature_id, task_id)
                revision = task.revision
                mutate(task)
                try:
                    return await asyncio.to_thread(self.container.tasks.replace, task, expected_revision=revision)
                except StoreWriteConflict:
                    if attempt == STORE_WRITE_RETRIES:
                        raise
                    logger.debug("Write conflict on {}/{} (attempt {}), retrying", feature_id, task_id, attempt)
        raise AssertionError("unreachable")

    async def update_task_status(
        self,
        feature_id: str,
        task_id: str,
        status: str,
        *,
        actor: str = "orchestrator",
        note: str = "",
        session_id: Optional[str] = _UNSET,
    ) -> Task:
        """Move a task to `status` and record the move in its progress log.

        Raises:
            TaskNotFound: If the task does not exist.
            InvalidTransition: If the move is not allowed, or targets `in_progress`
                while a dependency is incomplete.
        """
        if status not in TASK_STATUSES:
            raise InvalidTransition(task_id, "?", status, "unknown status")
        if status == "in_progress":
            siblings = await asyncio.to_thread(self.container.tasks.list, feature_id)
            target = next((t for t in siblings if t.id == task_id), None)
            if target is None:
                raise TaskNotFound(feature_id, task_id)
            unmet = unmet_dependencies(target, siblings)
            if unmet:
                raise InvalidTransition(task_id, target.status, status, f"unmet dependencies: {', '.join(unmet)}")

        changed = False

        def _apply(task: Task) -> None:
            nonlocal changed
            if session_id is not _UNSET:
                task.session_id = session_id
            if task.status == status:
                return
            if status not in TASK_TRANSITIONS.get(task.status, set()):
                raise InvalidTransition(task.id, task.status, status)
            changed = True
            task.status = status  # type: ignore[assignment]
            if status == "in_progress" and not task.started_at:
                task.started_at = now_iso()
            task.completed_at = now_iso() if status == "completed" else None
            task.progress.append(ProgressEntry(actor=actor, action=f"status_{status}", note=note))

        task = await self._mutate_task(feature_id, task_id, _apply)
        if changed:
            logger.info("Task {}/{} -> {}{}", feature_id, task_id, status, f" ({note})" if note else "")
            await self.refresh_feature_status(feature_id)
        return task

    async def append_progress(
        self,
        feature_id: str,
        task_id: str,
        action: str,
        note: str = "",
        *,
        actor: str = "orchestrator",
    ) -> Task:
        entry = ProgressEntry(actor=actor, action=action, note=note)
        return await self._mutate_task(feature_id, task_id, lambda task: task.progress.append(entry))

    async def set_qa_result(self, feature_id: str, task_id: str, item: int | str, passed: Optional[bool]) -> Task:
        """Record a QA checklist verdict, addressing the item by index or text."""

        def _apply(task: Task) -> None:
            if isinstance(item, int):
                if not 0 <= item < len(task.qa):
                    raise ConfigurationError(f"Task {task_id} has no QA item #{item}")
                task.qa[item].passed = passed
                return
            for qa_item in task.qa:
                if qa_item.item == item:
                    qa_item.passed = passed
                    return
            raise ConfigurationError(f"Task {task_id} has no QA item '{item}'")

        return await self._mutate_task(feature_id, task_id, _apply)
