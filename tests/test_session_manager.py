from __future__ import annotations

import asyncio
import sys
import time
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable

import pytest

from feature_orchestrator.config import OrchestratorSettings
from feature_orchestrator.constants import RESTART_INTERRUPTED_ERROR
from feature_orchestrator.domain.models import Feature, OutputEvent, QAItem, SessionOwner, Task, WorkerSession
from feature_orchestrator.errors import WORKER_CRASHED, SessionNotFound, SessionNotResumable, SpawnFailed
from feature_orchestrator.service import OrchestratorService
from feature_orchestrator.sessions.registry import SessionRegistry
from feature_orchestrator.storage.container import Container
from feature_orchestrator.streaming.multiplexer import RegistryUpstreamSource, StreamMultiplexer, Upstream


FAKE_WORKER = Path(__file__).with_name("_fake_worker.py")


def _settings(**overrides: object) -> OrchestratorSettings:
    command = f"{sys.executable} {FAKE_WORKER} {{prompt_file}}"
    values: dict[str, object] = {
        "worker_command": command,
        "resume_command": command,
        "kill_grace_seconds": 1.0,
        "poll_interval_seconds": 0.1,
        "liveness_window_seconds": 30,
    }
    values.update(overrides)
    return OrchestratorSettings(**values)  # type: ignore[arg-type]


def _service(tmp_path: Path, **overrides: object) -> OrchestratorService:
    return OrchestratorService(Container(tmp_path), settings=_settings(**overrides))


async def _define(service: OrchestratorService, *tasks: Task) -> None:
    await service.define_feature(Feature(id="f1", title="Checkout", status="approved"), list(tasks))


async def _eventually(check: Callable[[], Awaitable[bool]], timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while not await check():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.05)


def _run(tmp_path: Path, body: Callable[[OrchestratorService], Awaitable[None]], **overrides: object) -> None:
    async def _main() -> None:
        service = _service(tmp_path, **overrides)
        await service.startup(monitor=False)
        try:
            await body(service)
        finally:
            await service.shutdown()

    asyncio.run(_main())


def test_clean_exit_completes_task(tmp_path: Path) -> None:
    async def _body(service: OrchestratorService) -> None:
        await _define(service, Task(id="T1", title="One", instructions="MODE:ok"))
        summary = await service.run_phase("f1", 1)
        assert summary.started == ["T1"]

        record = await service.wait_for_session(summary.sessions["T1"], 10)

        assert record.state == "stopped"
        assert record.exit_code == 0
        task = (await service.list_tasks("f1"))[0]
        assert task.status == "completed"
        assert task.session_id == record.id
        actions = [p.action for p in task.progress]
        assert actions == ["status_in_progress", "session_running", "session_stopped", "status_completed"]
        events = await service.get_transcript(record.id)
        assert [e.kind for e in events] == ["message", "message", "session_end"]
        assert [e.seq for e in events] == [1, 2, 3]
        assert events[1].content == "done"
        assert await service.session_status(record.id) == "idle"

    _run(tmp_path, _body)


def test_clean_exit_with_checklist_goes_to_qa(tmp_path: Path) -> None:
    async def _body(service: OrchestratorService) -> None:
        await _define(service, Task(id="T1", title="One", instructions="MODE:ok", qa=[QAItem(item="renders")]))
        summary = await service.run_phase("f1", 1)
        await service.wait_for_session(summary.sessions["T1"], 10)

        task = (await service.list_tasks("f1"))[0]
        assert task.status == "qa"
        assert (await service.get_feature("f1")).status == "qa"

    _run(tmp_path, _body)


def test_crash_after_three_events(tmp_path: Path) -> None:
    async def _body(service: OrchestratorService) -> None:
        await _define(service, Task(id="T1", title="One", instructions="MODE:crash"))
        summary = await service.run_phase("f1", 1)
        session_id = summary.sessions["T1"]
        observers: list[list[OutputEvent]] = [[], []]
        ended = [asyncio.Event(), asyncio.Event()]
        for seen, done in zip(observers, ended):
            service.subscribe(session_id, seen.append, on_end=done.set)

        record = await service.wait_for_session(session_id, 10)
        await asyncio.wait_for(asyncio.gather(*(done.wait() for done in ended)), 10)

        for seen in observers:
            assert [e.seq for e in seen] == [1, 2, 3, 4]
            assert [e.content for e in seen[:3]] == ["step 1", "step 2", "step 3"]
            assert seen[-1].kind == "session_end"
            assert seen[-1].error_type == WORKER_CRASHED
        assert record.state == "crashed"
        assert record.exit_code == 3
        assert "boom" in (record.error or "")
        events = await service.get_transcript(record.id)
        assert [e.content for e in events[:3]] == ["step 1", "step 2", "step 3"]
        end = events[-1]
        assert len(events) == 4
        assert end.kind == "session_end"
        assert end.error_type == WORKER_CRASHED
        assert end.exit_code == 3
        assert await service.session_status(record.id) == "idle"
        task = (await service.list_tasks("f1"))[0]
        assert task.status == "blocked"
        assert task.progress[-2].action == "session_crashed"

    _run(tmp_path, _body)


def test_live_observer_sees_every_event_in_order(tmp_path: Path) -> None:
    async def _body(service: OrchestratorService) -> None:
        await _define(service, Task(id="T1", title="One", instructions="MODE:slow"))
        summary = await service.run_phase("f1", 1)
        session_id = summary.sessions["T1"]
        seen: list[OutputEvent] = []
        ended = asyncio.Event()
        service.subscribe(session_id, seen.append, on_end=ended.set)

        await asyncio.wait_for(ended.wait(), 10)

        transcript = await service.get_transcript(session_id)
        assert [e.seq for e in seen] == [e.seq for e in transcript]
        assert seen[-1].kind == "session_end"
        assert service.multiplexer.active_sessions() == []

    _run(tmp_path, _body)


def test_kill_returns_task_to_pending(tmp_path: Path) -> None:
    async def _body(service: OrchestratorService) -> None:
        await _define(service, Task(id="T1", title="One", instructions="MODE:hang"))
        summary = await service.run_phase("f1", 1)
        session_id = summary.sessions["T1"]

        record = await service.kill_session(session_id)
        again = await service.kill_session(session_id)

        assert record.state == "killed"
        assert again.state == "killed"
        assert (await service.list_tasks("f1"))[0].status == "pending"
        events = await service.get_transcript(session_id)
        assert events[-1].kind == "session_end"
        assert events[-1].error_type is None
        with pytest.raises(SessionNotResumable):
            await service.resume_session(session_id)

    _run(tmp_path, _body)


def test_resume_continues_transcript_sequence(tmp_path: Path) -> None:
    async def _body(service: OrchestratorService) -> None:
        await _define(service, Task(id="T1", title="One", instructions="MODE:crash"))
        summary = await service.run_phase("f1", 1)
        session_id = summary.sessions["T1"]
        await service.wait_for_session(session_id, 10)
        assert (await service.list_tasks("f1"))[0].status == "blocked"

        resumed = await service.resume_session(session_id)
        assert resumed.id == session_id
        record = await service.wait_for_session(session_id, 10)

        assert record.state == "stopped"
        assert record.resume_count == 1
        seqs = [e.seq for e in await service.get_transcript(session_id)]
        assert seqs == list(range(1, len(seqs) + 1))
        assert seqs[4] == 5
        assert (await service.list_tasks("f1"))[0].status == "completed"

    _run(tmp_path, _body)


def test_spawn_failure_leaves_task_pending(tmp_path: Path) -> None:
    async def _body(service: OrchestratorService) -> None:
        await _define(service, Task(id="T1", title="One"))
        summary = await service.run_phase("f1", 1)

        assert summary.failed_to_start == ["T1"]
        assert summary.started == []
        task = (await service.list_tasks("f1"))[0]
        assert task.status == "pending"
        assert task.progress[-1].action == "spawn_failed"
        sessions = await service.list_sessions("f1")
        assert [s.state for s in sessions] == ["crashed"]

    _run(tmp_path, _body, worker_command=f"{tmp_path}/no-such-worker {{prompt_file}}")


def test_missing_working_directory_raises_spawn_failed(tmp_path: Path) -> None:
    async def _body(service: OrchestratorService) -> None:
        await _define(service, Task(id="T1", title="One"))
        with pytest.raises(SpawnFailed, match="Working directory does not exist"):
            await service.sessions.start(SessionOwner("f1", "T1"), "MODE:ok", cwd=tmp_path / "missing")

    _run(tmp_path, _body)


def test_approval_request_sets_needs_approval(tmp_path: Path) -> None:
    async def _body(service: OrchestratorService) -> None:
        await _define(service, Task(id="T1", title="One", instructions="MODE:approval"))
        summary = await service.run_phase("f1", 1)
        session_id = summary.sessions["T1"]

        async def _needs_approval() -> bool:
            return await service.session_status(session_id) == "needs_approval"

        await _eventually(_needs_approval)
        events = await service.get_transcript(session_id)
        assert events[0].kind == "approval_request"
        await service.kill_session(session_id)

    _run(tmp_path, _body)


def test_liveness_check_publishes_status_change(tmp_path: Path) -> None:
    async def _body(service: OrchestratorService) -> None:
        await _define(service, Task(id="T1", title="One", instructions="MODE:hang"))
        summary = await service.run_phase("f1", 1)
        session_id = summary.sessions["T1"]

        async def _waiting() -> bool:
            await service.sessions.check_liveness()
            return await service.session_status(session_id) == "waiting"

        await _eventually(_waiting)
        events = await service.get_transcript(session_id)
        assert any(e.kind == "status" and e.content == "waiting" for e in events)
        await service.kill_session(session_id)

    _run(tmp_path, _body, liveness_window_seconds=0.3)


def test_feature_session_binds_and_releases_feature(tmp_path: Path) -> None:
    async def _body(service: OrchestratorService) -> None:
        await _define(service, Task(id="T1", title="One"))
        session_id = await service.start_feature_session("f1", "MODE:hang")
        assert (await service.get_feature("f1")).session_id == session_id

        await service.kill_session(session_id)

        assert (await service.get_feature("f1")).session_id is None

    _run(tmp_path, _body)


def test_unknown_session_raises(tmp_path: Path) -> None:
    async def _body(service: OrchestratorService) -> None:
        with pytest.raises(SessionNotFound):
            await service.kill_session("session-missing")
        with pytest.raises(SessionNotFound):
            await service.resume_session("session-missing")

    _run(tmp_path, _body)


def test_restart_recovery_blocks_interrupted_tasks(tmp_path: Path) -> None:
    async def _seed() -> None:
        service = _service(tmp_path)
        await _define(service, Task(id="T1", title="One"))
        await service.state.update_task_status("f1", "T1", "in_progress", session_id="session-old")

    asyncio.run(_seed())
    Container(tmp_path).sessions.upsert(WorkerSession(id="session-old", feature_id="f1", task_id="T1", state="running"))

    async def _body(service: OrchestratorService) -> None:
        record = await service.get_session("session-old")
        assert record.state == "crashed"
        assert record.error == RESTART_INTERRUPTED_ERROR
        task = (await service.list_tasks("f1"))[0]
        assert task.status == "blocked"

    _run(tmp_path, _body)


class _CountedUpstream:
    def __init__(self, source: "_CountingUpstreamSource", inner: Upstream) -> None:
        self._source = source
        self._inner = inner

    def __aiter__(self) -> AsyncIterator[OutputEvent]:
        return self._inner.__aiter__()

    def close(self) -> None:
        self._source.closes += 1
        self._inner.close()


class _CountingUpstreamSource:
    """Reads the real session feeds and counts upstream opens and closes."""

    def __init__(self, registry: SessionRegistry) -> None:
        self._inner = RegistryUpstreamSource(registry)
        self.opens = 0
        self.closes = 0

    def open(self, session_id: str) -> Upstream:
        self.opens += 1
        return _CountedUpstream(self, self._inner.open(session_id))


@pytest.mark.parametrize("subscribers", [0, 1, 3])
def test_kill_during_spawn_releases_upstream_once(tmp_path: Path, subscribers: int) -> None:
    async def _body(service: OrchestratorService) -> None:
        source = _CountingUpstreamSource(service.registry)
        service.multiplexer = StreamMultiplexer(source)
        await _define(service, Task(id="T1", title="One"))
        owner = SessionOwner("f1", "T1")
        hooked: list[str] = []

        async def _on_spawned(session_id: str) -> None:
            hooked.append(session_id)

        starting = asyncio.create_task(service.sessions.start(owner, "MODE:hang", on_spawned=_on_spawned))
        await asyncio.sleep(0)
        handle = service.registry.live_for_owner(owner)
        assert handle is not None
        assert handle.record.state == "spawning"
        session_id = handle.session_id

        seen: list[OutputEvent] = []
        ended = [asyncio.Event() for _ in range(subscribers)]
        for done in ended:
            service.subscribe(session_id, seen.append, on_end=done.set)

        killed = await service.kill_session(session_id)
        assert await starting == session_id
        await asyncio.wait_for(asyncio.gather(*(done.wait() for done in ended)), 10)

        assert killed.state == "killed"
        assert hooked == []
        assert source.opens == source.closes == (1 if subscribers else 0)
        assert service.multiplexer.active_sessions() == []
        assert len(seen) == subscribers * len(await service.get_transcript(session_id))
        task = await service.state.get_task("f1", "T1")
        assert task.status == "pending"
        actions = [p.action for p in task.progress]
        assert "session_running" not in actions
        assert actions[-1] == "session_killed"

    _run(tmp_path, _body)


def test_ended_sessions_leave_no_handles_behind(tmp_path: Path) -> None:
    async def _body(service: OrchestratorService) -> None:
        await _define(service, Task(id="T1", title="One"))
        session_ids: list[str] = []
        for _ in range(5):
            session_id = await service.sessions.start(SessionOwner("f1", "T1"), "MODE:ok")
            await service.wait_for_session(session_id, 10)
            session_ids.append(session_id)

        assert len(service.registry) == 0
        assert service.registry.live_handles() == []
        for session_id in session_ids:
            assert service.registry.get(session_id) is None
            assert (await service.get_session(session_id)).state == "stopped"
            assert await service.session_status(session_id) == "idle"
        assert len(await service.list_sessions("f1")) == 5

    _run(tmp_path, _body)


def test_monitor_keeps_polling_after_unexpected_errors(tmp_path: Path) -> None:
    async def _body(service: OrchestratorService) -> None:
        calls: list[int] = []

        async def _flaky_check() -> None:
            calls.append(len(calls))
            if len(calls) == 1:
                raise OSError("transcript volume unavailable")

        service.sessions.check_liveness = _flaky_check  # type: ignore[method-assign]
        service.sessions.start_monitor()

        async def _polled_again() -> bool:
            return len(calls) >= 3

        await _eventually(_polled_again)

    _run(tmp_path, _body)
