"""Start, resume, kill and observe worker sessions.

Each session is one OS process at a time. Its stdout is parsed into output
events which are appended to the session transcript and published on the
session's live feed, where the stream multiplexer picks them up. When the
process exits the owning task is moved on: a clean exit goes to `qa` (if the
task has a checklist) or `completed`, a crash goes to `blocked`, and a kill
returns the task to `pending`.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from loguru import logger

from ..config import OrchestratorSettings
from ..constants import RESTART_INTERRUPTED_ERROR, RESUME_PROMPT
from ..domain.models import RESUMABLE_SESSION_STATES, OutputEvent, SessionOwner, WorkerSession, now_iso
from ..errors import (
    WORKER_CRASHED,
    OrchestratorError,
    SessionAlreadyRunning,
    SessionNotFound,
    SessionNotResumable,
    SpawnFailed,
)
from ..logging_utils import summarize_event
from ..state.accessor import StateAccessor
from ..storage.container import Container
from ..utils import KeyedLock, _tail
from .launcher import build_launch_spec, launch
from .output import derive_status, parse_output_line
from .registry import OutputFeed, SessionHandle, SessionRegistry


SpawnHook = Callable[[str], Awaitable[Any]]

_TASK_STATUS_ON_EXIT = {"killed": "pending", "crashed": "blocked"}


class WorkerSessionManager:
    def __init__(
        self,
        container: Container,
        state: StateAccessor,
        registry: SessionRegistry,
        settings: OrchestratorSettings,
    ) -> None:
        self.container = container
        self.state = state
        self.registry = registry
        self.settings = settings
        self._approval_patterns = settings.approval_patterns()
        self._session_locks = KeyedLock()
        self._monitor: Optional[asyncio.Task[None]] = None

    # Lifecycle

    async def start(
        self,
        owner: SessionOwner,
        instructions: str,
        *,
        cwd: Optional[Path] = None,
        on_spawned: Optional[SpawnHook] = None,
    ) -> str:
        """Spawn a new worker session for `owner`.

        `on_spawned` runs after the process exists and before any output is
        read; if it raises, the process is terminated and `SpawnFailed` is raised.

        Raises:
            SessionAlreadyRunning: If `owner` already has a live session.
            SpawnFailed: If the process could not be created.
        """
        existing = self.registry.live_for_owner(owner)
        if existing is not None:
            raise SessionAlreadyRunning(existing.session_id)
        workdir = (cwd or self.container.project_dir).resolve()
        record = WorkerSession(feature_id=owner.feature_id, task_id=owner.task_id, cwd=str(workdir))
        handle = self.registry.register(SessionHandle(record=record, feed=OutputFeed(record.id)))
        logger.info("Starting worker session {} for {}", record.id, owner.label)
        await self._spawn(handle, self.settings.worker_command, instructions, on_spawned)
        return record.id

    async def resume(self, session_id: str) -> WorkerSession:
        """Restart a stopped or crashed session, continuing its transcript.

        Raises:
            SessionNotFound: If the session id is unknown.
            SessionAlreadyRunning: If the session (or another session of its owner) is live.
            SessionNotResumable: If the session was killed.
            SpawnFailed: If the process could not be created.
        """
        async with self._session_locks(session_id):
            handle = self.registry.get(session_id)
            if handle is not None and not handle.is_live:
                # The previous run is still settling its owner.
                await handle.done.wait()
                handle = self.registry.get(session_id)
            record = handle.record if handle else await asyncio.to_thread(self.registry.load_record, session_id)
            if record is None:
                raise SessionNotFound(session_id)
            if record.is_live:
                raise SessionAlreadyRunning(session_id)
            if record.state not in RESUMABLE_SESSION_STATES:
                raise SessionNotResumable(session_id, record.state)
            other = self.registry.live_for_owner(record.owner)
            if other is not None:
                raise SessionAlreadyRunning(other.session_id)

            last_seq = await asyncio.to_thread(self.container.transcripts.last_seq, session_id)
            record.resume_count += 1
            record.pid = None
            record.exit_code = None
            record.ended_at = None
            record.error = None
            handle = self.registry.register(
                SessionHandle(record=record, feed=OutputFeed(session_id), next_seq=last_seq + 1)
            )
            logger.info("Resuming worker session {} (resume #{})", session_id, record.resume_count)

            async def _reopen_task(sid: str) -> None:
                if record.task_id is not None:
                    await self.state.update_task_status(
                        record.feature_id,
                        record.task_id,
                        "in_progress",
                        note=f"worker session {sid} resumed",
                        session_id=sid,
                    )

            await self._spawn(handle, self.settings.resume_command, RESUME_PROMPT, _reopen_task)
            return record

    async def kill(self, session_id: str) -> WorkerSession:
        """Terminate a session's process; a no-op for sessions that already ended.

        Safe to call while `start` is still spawning: the kill is applied as soon
        as the process exists.

        Raises:
            SessionNotFound: If the session id is unknown.
        """
        handle = self.registry.get(session_id)
        if handle is None:
            record = await asyncio.to_thread(self.registry.load_record, session_id)
            if record is None:
                raise SessionNotFound(session_id)
            return record
        if not handle.is_live:
            return handle.record
        handle.kill_requested = True
        logger.info("Killing worker session {}", session_id)
        if handle.process is not None:
            await self._terminate(handle.process)
        await handle.done.wait()
        return handle.record

    async def wait_for_session(self, session_id: str, timeout: Optional[float] = None) -> WorkerSession:
        """Wait until the session's current run has ended.

        Raises:
            SessionNotFound: If the session id is unknown.
            asyncio.TimeoutError: If `timeout` elapses first.
        """
        handle = self.registry.get(session_id)
        if handle is None:
            record = await asyncio.to_thread(self.registry.load_record, session_id)
            if record is None:
                raise SessionNotFound(session_id)
            return record
        await asyncio.wait_for(handle.done.wait(), timeout)
        return handle.record

    async def recover(self) -> list[str]:
        """Settle sessions a previous orchestrator process left running."""
        recovered = await asyncio.to_thread(self.registry.recover_interrupted)
        for session_id in recovered:
            record = await asyncio.to_thread(self.registry.load_record, session_id)
            if record is None:
                continue
            try:
                if record.task_id is None:
                    feature = await self.state.get_feature(record.feature_id)
                    if feature.session_id == session_id:
                        await self.state.set_feature_session(record.feature_id, None)
                    continue
                task = await self.state.get_task(record.feature_id, record.task_id)
                if task.status == "in_progress" and task.session_id == session_id:
                    await self.state.update_task_status(
                        record.feature_id, record.task_id, "blocked", note=RESTART_INTERRUPTED_ERROR
                    )
            except OrchestratorError as exc:
                logger.warning("Could not settle owner of recovered session {}: {}", session_id, exc)
        return recovered

    async def shutdown(self) -> None:
        """Stop the liveness monitor and kill every live session."""
        if self._monitor is not None:
            self._monitor.cancel()
            try:
                await self._monitor
            except asyncio.CancelledError:
                pass
            self._monitor = None
        live = self.registry.live_handles()
        if live:
            logger.info("Shutting down {} live worker session(s)", len(live))
            await asyncio.gather(*(self.kill(h.session_id) for h in live))

    # Observation

    async def get_session(self, session_id: str) -> WorkerSession:
        record = await asyncio.to_thread(self.registry.load_record, session_id)
        if record is None:
            raise SessionNotFound(session_id)
        return record

    async def list_sessions(self, feature_id: Optional[str] = None) -> list[WorkerSession]:
        records = await asyncio.to_thread(self.registry.records)
        if feature_id is not None:
            records = [r for r in records if r.feature_id == feature_id]
        return sorted(records, key=lambda r: r.started_at)

    async def status(self, session_id: str) -> str:
        handle = self.registry.get(session_id)
        if handle is None:
            await self.get_session(session_id)
            return "idle"
        return self._derive_status(handle, datetime.now(timezone.utc))

    async def get_transcript(self, session_id: str) -> list[OutputEvent]:
        await self.get_session(session_id)
        return await asyncio.to_thread(self.container.transcripts.read, session_id)

    def start_monitor(self) -> None:
        if self._monitor is None or self._monitor.done():
            self._monitor = asyncio.get_running_loop().create_task(self._monitor_loop())

    async def check_liveness(self) -> None:
        """Publish `status` events for live sessions whose derived status changed."""
        now = datetime.now(timezone.utc)
        for handle in self.registry.live_handles():
            if handle.process is None:
                continue
            if handle.pump is not None and handle.pump.done():
                logger.error("Output pump for session {} ended without settling it", handle.session_id)
                await self._finish(handle, handle.process.returncode, "output pump ended unexpectedly")
                continue
            status = self._derive_status(handle, now)
            if status == handle.last_status:
                continue
            handle.last_status = status
            await self._emit(handle, "status", content=status, role="system", activity=False)
            await self._persist(handle.record)

    # Internals

    def _derive_status(self, handle: SessionHandle, now: datetime) -> str:
        alive = handle.is_live and handle.process is not None and handle.process.returncode is None
        return derive_status(
            alive=alive,
            last_activity=handle.last_activity,
            last_event_kind=handle.last_event_kind,
            now=now,
            liveness_window_seconds=self.settings.liveness_window_seconds,
        )

    async def _monitor_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.poll_interval_seconds)
            try:
                await self.check_liveness()
            except Exception as exc:
                logger.opt(exception=exc).error("Liveness check failed")

    async def _persist(self, record: WorkerSession) -> None:
        await asyncio.to_thread(self.registry.persist, record)

    async def _spawn(
        self,
        handle: SessionHandle,
        template: str,
        prompt: str,
        on_spawned: Optional[SpawnHook],
    ) -> None:
        record = handle.record
        record.state = "spawning"
        await self._persist(record)
        prompt_file = self.container.prompts_dir / f"{record.id}.md"
        try:
            await asyncio.to_thread(prompt_file.write_text, prompt, encoding="utf-8")
            spec = build_launch_spec(
                template,
                prompt=prompt,
                prompt_file=prompt_file,
                session_id=record.id,
                project_dir=Path(record.cwd or self.container.project_dir),
            )
            process = await launch(spec)
        except SpawnFailed as exc:
            await self._abort_spawn(handle, str(exc))
            raise
        except OSError as exc:
            await self._abort_spawn(handle, f"Unable to write prompt file: {exc}")
            raise SpawnFailed(f"Unable to write prompt file {prompt_file}: {exc}") from exc

        handle.process = process
        record.pid = process.pid
        record.state = "running"
        handle.last_activity = datetime.now(timezone.utc)
        handle.last_status = "working"

        if handle.kill_requested:
            await self._terminate(process)
        else:
            try:
                if record.task_id is None:
                    await self.state.set_feature_session(record.feature_id, record.id)
                if on_spawned is not None:
                    await on_spawned(record.id)
            except Exception as exc:
                # The owner could not be bound to this run; nothing may keep running for it.
                await self._terminate(process)
                await self._abort_spawn(handle, f"post-spawn hook failed: {exc}")
                raise SpawnFailed(f"Session {record.id} started but could not be registered: {exc}") from exc

        await self._persist(record)
        if not handle.kill_requested:
            await self._progress(record, "session_running", f"worker session {record.id} running (pid {process.pid})")
        handle.pump = asyncio.create_task(self._pump(handle))
        logger.info("Worker session {} running with pid {}", record.id, process.pid)

    async def _abort_spawn(self, handle: SessionHandle, error: str) -> None:
        record = handle.record
        record.state = "killed" if handle.kill_requested else "crashed"
        record.error = error
        record.ended_at = now_iso()
        logger.error("Worker session {} failed to start: {}", record.id, error)
        try:
            await self._persist(record)
            await self._progress(record, "spawn_failed", error)
            if record.task_id is None:
                await self._release_feature_session(record)
        finally:
            handle.feed.close()
            handle.done.set()
            self.registry.discard(handle)

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), self.settings.kill_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning("Worker pid {} ignored SIGTERM, sending SIGKILL", process.pid)
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    async def _pump(self, handle: SessionHandle) -> None:
        process = handle.process
        assert process is not None and process.stdout is not None and process.stderr is not None
        stderr_task = asyncio.create_task(self._drain_stderr(handle, process.stderr))
        failure: Optional[str] = None
        try:
            while True:
                try:
                    line = await process.stdout.readline()
                except ValueError as exc:
                    logger.warning("Session {} emitted an oversized output line: {}", handle.session_id, exc)
                    continue
                if not line:
                    break
                for part in parse_output_line(line.decode("utf-8", errors="replace"), self._approval_patterns):
                    await self._emit(handle, **part)
        except OSError as exc:
            failure = f"output pump failed: {exc}"
            logger.opt(exception=exc).error("Output pump for session {} failed", handle.session_id)
            await self._terminate(process)
        exit_code = await process.wait()
        await stderr_task
        await self._finish(handle, exit_code, failure)

    async def _drain_stderr(self, handle: SessionHandle, stream: asyncio.StreamReader) -> None:
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                continue
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            handle.stderr_tail.append(text)
            logger.debug("[{}] stderr: {}", handle.session_id, text)

    async def _emit(
        self,
        handle: SessionHandle,
        kind: str,
        *,
        content: str = "",
        role: str = "assistant",
        tool: Optional[dict[str, Any]] = None,
        error_type: Optional[str] = None,
        exit_code: Optional[int] = None,
        activity: bool = True,
    ) -> OutputEvent:
        event = OutputEvent(
            session_id=handle.session_id,
            seq=handle.next_seq,
            kind=kind,  # type: ignore[arg-type]
            role=role,
            content=content,
            tool=tool,
            error_type=error_type,
            exit_code=exit_code,
        )
        handle.next_seq += 1
        if activity:
            handle.last_activity = datetime.now(timezone.utc)
            handle.record.last_activity_at = event.timestamp
            if kind != "status":
                handle.last_event_kind = kind
        await asyncio.to_thread(self.container.transcripts.append, event)
        logger.debug("Session event {}", summarize_event(event))
        handle.feed.publish(event)
        return event

    async def _finish(self, handle: SessionHandle, exit_code: Optional[int], failure: Optional[str] = None) -> None:
        record = handle.record
        if not record.is_live:
            return
        record.exit_code = exit_code
        record.ended_at = now_iso()
        if handle.kill_requested:
            record.state = "killed"
        elif exit_code == 0 and failure is None:
            record.state = "stopped"
        else:
            record.state = "crashed"
            detail = failure or f"worker exited with code {exit_code}"
            tail = _tail(list(handle.stderr_tail))
            record.error = f"{detail}\n{tail}" if tail else detail
        crashed = record.state == "crashed"
        log = logger.warning if crashed else logger.info
        log("Worker session {} ended: {} (exit code {})", record.id, record.state, exit_code)
        try:
            await self._persist(record)
            await self._settle_owner(record)
            await self._emit(
                handle,
                "session_end",
                content=record.error if crashed else record.state,
                role="system",
                error_type=WORKER_CRASHED if crashed else None,
                exit_code=exit_code,
                activity=False,
            )
        finally:
            handle.feed.close()
            handle.done.set()
            self.registry.discard(handle)

    async def _settle_owner(self, record: WorkerSession) -> None:
        if record.task_id is None:
            await self._release_feature_session(record)
            return
        note = f"worker session {record.id} {record.state}"
        if record.exit_code is not None:
            note += f" (exit code {record.exit_code})"
        if record.state == "crashed" and record.error:
            note = f"{note}: {record.error}"
        try:
            await self.state.append_progress(record.feature_id, record.task_id, f"session_{record.state}", note)
            task = await self.state.get_task(record.feature_id, record.task_id)
            if task.status != "in_progress" or task.session_id != record.id:
                return
            if record.state == "stopped":
                target = "qa" if task.qa else "completed"
            else:
                target = _TASK_STATUS_ON_EXIT[record.state]
            await self.state.update_task_status(record.feature_id, record.task_id, target, note=note)
        except OrchestratorError as exc:
            logger.warning("Could not update task {}/{} after session end: {}", record.feature_id, record.task_id, exc)

    async def _release_feature_session(self, record: WorkerSession) -> None:
        try:
            feature = await self.state.get_feature(record.feature_id)
            if feature.session_id == record.id:
                await self.state.set_feature_session(record.feature_id, None)
        except OrchestratorError as exc:
            logger.warning("Could not clear session of feature {}: {}", record.feature_id, exc)

    async def _progress(self, record: WorkerSession, action: str, note: str) -> None:
        if record.task_id is None:
            return
        try:
            await self.state.append_progress(record.feature_id, record.task_id, action, note)
        except OrchestratorError as exc:
            logger.warning("Could not record {} on {}/{}: {}", action, record.feature_id, record.task_id, exc)
