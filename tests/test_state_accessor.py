from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from feature_orchestrator.domain.models import Feature, QAItem, Task
from feature_orchestrator.errors import (
    ConfigurationError,
    FeatureNotFound,
    InvalidTransition,
    StoreWriteConflict,
    TaskNotFound,
)
from feature_orchestrator.state.accessor import StateAccessor
from feature_orchestrator.storage.container import Container


def _state(tmp_path: Path) -> tuple[Container, StateAccessor]:
    container = Container(tmp_path)
    return container, StateAccessor(container)


def _define(state: StateAccessor, *tasks: Task, feature_id: str = "f1") -> Feature:
    feature = Feature(id=feature_id, title="Checkout flow", status="approved")
    return asyncio.run(state.define_feature(feature, list(tasks)))


def test_define_feature_derives_phases_and_blocks(tmp_path: Path) -> None:
    container, state = _state(tmp_path)

    feature = _define(
        state,
        Task(id="T1", title="Schema", phase=1),
        Task(id="T2", title="API", phase=1),
        Task(id="T3", title="UI", phase=2, depends_on=["T1"]),
    )

    assert [(p.phase, p.task_ids) for p in feature.phases] == [(1, ["T1", "T2"]), (2, ["T3"])]
    stored = container.tasks.get("f1", "T1")
    assert stored is not None
    assert stored.blocks == ["T3"]
    assert stored.feature_id == "f1"
    assert container.features.get("f1").status == "approved"


def test_define_feature_rejects_duplicates_and_cycles(tmp_path: Path) -> None:
    _, state = _state(tmp_path)
    _define(state, Task(id="T1", title="One"))

    with pytest.raises(ConfigurationError, match="already defined"):
        _define(state, Task(id="T1", title="One"))
    with pytest.raises(ConfigurationError, match="cycle"):
        _define(
            state,
            Task(id="A", title="A", depends_on=["B"]),
            Task(id="B", title="B", depends_on=["A"]),
            feature_id="f2",
        )


def test_status_update_records_progress_and_aggregates_feature(tmp_path: Path) -> None:
    container, state = _state(tmp_path)
    _define(state, Task(id="T1", title="One"))

    async def _run() -> Task:
        await state.update_task_status("f1", "T1", "in_progress", actor="backend", note="go", session_id="s-1")
        return await state.get_task("f1", "T1")

    task = asyncio.run(_run())

    assert task.status == "in_progress"
    assert task.session_id == "s-1"
    assert task.started_at is not None
    assert task.progress[-1].action == "status_in_progress"
    assert task.progress[-1].actor == "backend"
    feature = container.features.get("f1")
    assert feature.status == "in_progress"
    assert feature.started_at is not None


def test_feature_completes_when_all_tasks_complete(tmp_path: Path) -> None:
    container, state = _state(tmp_path)
    _define(state, Task(id="T1", title="One"), Task(id="T2", title="Two", qa=[QAItem(item="renders")]))

    async def _run() -> None:
        for tid in ("T1", "T2"):
            await state.update_task_status("f1", tid, "in_progress")
        await state.update_task_status("f1", "T1", "completed")
        await state.update_task_status("f1", "T2", "qa")

    asyncio.run(_run())
    assert container.features.get("f1").status == "qa"

    asyncio.run(state.update_task_status("f1", "T2", "completed"))
    feature = container.features.get("f1")
    assert feature.status == "completed"
    assert feature.completed_at is not None


def test_in_progress_requires_completed_dependencies(tmp_path: Path) -> None:
    _, state = _state(tmp_path)
    _define(state, Task(id="T1", title="One"), Task(id="T2", title="Two", depends_on=["T1"]))

    with pytest.raises(InvalidTransition, match="unmet dependencies: T1"):
        asyncio.run(state.update_task_status("f1", "T2", "in_progress"))


def test_disallowed_transition_is_rejected(tmp_path: Path) -> None:
    _, state = _state(tmp_path)
    _define(state, Task(id="T1", title="One"))

    with pytest.raises(InvalidTransition, match="pending -> qa"):
        asyncio.run(state.update_task_status("f1", "T1", "qa"))
    with pytest.raises(InvalidTransition):
        asyncio.run(state.update_task_status("f1", "T1", "finished"))


def test_same_status_is_a_no_op(tmp_path: Path) -> None:
    _, state = _state(tmp_path)
    _define(state, Task(id="T1", title="One"))

    task = asyncio.run(state.update_task_status("f1", "T1", "pending"))

    assert task.progress == []


def test_concurrent_progress_appends_are_all_kept(tmp_path: Path) -> None:
    _, state = _state(tmp_path)
    _define(state, Task(id="T1", title="One"))

    async def _run() -> Task:
        await asyncio.gather(*(state.append_progress("f1", "T1", "note", f"n{i}") for i in range(20)))
        return await state.get_task("f1", "T1")

    task = asyncio.run(_run())

    assert sorted(p.note for p in task.progress) == sorted(f"n{i}" for i in range(20))


def test_stale_revision_write_conflicts(tmp_path: Path) -> None:
    container, state = _state(tmp_path)
    _define(state, Task(id="T1", title="One"))
    stale = container.tasks.get("f1", "T1")
    asyncio.run(state.append_progress("f1", "T1", "note", "first"))

    with pytest.raises(StoreWriteConflict):
        container.tasks.replace(stale, expected_revision=stale.revision)


def test_qa_results_by_index_and_text(tmp_path: Path) -> None:
    _, state = _state(tmp_path)
    _define(state, Task(id="T1", title="One", qa=[QAItem(item="renders"), QAItem(item="a11y")]))

    asyncio.run(state.set_qa_result("f1", "T1", 0, True))
    task = asyncio.run(state.set_qa_result("f1", "T1", "a11y", False))

    assert [(q.item, q.passed) for q in task.qa] == [("renders", True), ("a11y", False)]
    with pytest.raises(ConfigurationError):
        asyncio.run(state.set_qa_result("f1", "T1", 5, True))


def test_archived_feature_keeps_status(tmp_path: Path) -> None:
    container, state = _state(tmp_path)
    _define(state, Task(id="T1", title="One"))

    asyncio.run(state.archive_feature("f1"))
    asyncio.run(state.update_task_status("f1", "T1", "in_progress"))

    assert container.features.get("f1").status == "archived"


def test_delete_feature_removes_tasks(tmp_path: Path) -> None:
    container, state = _state(tmp_path)
    _define(state, Task(id="T1", title="One"), Task(id="T2", title="Two"))

    removed = asyncio.run(state.delete_feature("f1"))

    assert removed == 2
    assert container.tasks.list("f1") == []
    with pytest.raises(FeatureNotFound):
        asyncio.run(state.get_feature("f1"))
    with pytest.raises(TaskNotFound):
        asyncio.run(state.get_task("f1", "T1"))
