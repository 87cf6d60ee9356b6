"""In-process registry of worker sessions and their live output feeds."""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from loguru import logger

from ..constants import RESTART_INTERRUPTED_ERROR, STDERR_TAIL_LINES
from ..domain.models import OutputEvent, SessionOwner, WorkerSession, now_iso
from ..storage.interfaces import SessionRepository


class OutputFeed:
    """Live event fan-out point for one run of a session.

    Each tap is a queue; `None` marks the end of the feed. A tap opened after
    the feed closed receives the end marker immediately.
    """

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self._taps: list[asyncio.Queue[Optional[OutputEvent]]] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def tap_count(self) -> int:
        return len(self._taps)

    def open_tap(self) -> asyncio.Queue[Optional[OutputEvent]]:
        queue: asyncio.Queue[Optional[OutputEvent]] = asyncio.Queue()
        if self._closed:
            queue.put_nowait(None)
        else:
            self._taps.append(queue)
        return queue

    def close_tap(self, queue: asyncio.Queue[Optional[OutputEvent]]) -> None:
        if queue in self._taps:
            self._taps.remove(queue)

    def publish(self, event: OutputEvent) -> None:
        if self._closed:
            return
        for queue in list(self._taps):
            queue.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for queue in self._taps:
            queue.put_nowait(None)
        self._taps.clear()


@dataclass
class SessionHandle:
    record: WorkerSession
    feed: OutputFeed
    process: Optional[asyncio.subprocess.Process] = None
    kill_requested: bool = False
    next_seq: int = 1
    last_activity: Optional[datetime] = None
    last_event_kind: Optional[str] = None
    last_status: Optional[str] = None
    stderr_tail: deque[str] = field(default_factory=lambda: deque(maxlen=STDERR_TAIL_LINES))
    done: asyncio.Event = field(default_factory=asyncio.Event)
    pump: Optional[asyncio.Task[None]] = None

    @property
    def session_id(self) -> str:
        return self.record.id

    @property
    def is_live(self) -> bool:
        return self.record.is_live


class SessionRegistry:
    """Holds the handle of every session run in flight; one instance per orchestrator.

    A handle is discarded when its run ends; finished sessions are read back
    from the session repository.
    """

    def __init__(self, repo: SessionRepository) -> None:
        self._repo = repo
        self._handles: dict[str, SessionHandle] = {}

    def register(self, handle: SessionHandle) -> SessionHandle:
        self._handles[handle.session_id] = handle
        return handle

    def get(self, session_id: str) -> Optional[SessionHandle]:
        return self._handles.get(session_id)

    def discard(self, handle: SessionHandle) -> None:
        """Forget `handle` once its run ended; a newer run of the same session is kept."""
        if self._handles.get(handle.session_id) is handle:
            del self._handles[handle.session_id]

    def __len__(self) -> int:
        return len(self._handles)

    def feed(self, session_id: str) -> Optional[OutputFeed]:
        handle = self._handles.get(session_id)
        if handle is None or handle.feed.closed:
            return None
        return handle.feed

    def live_handles(self, feature_id: Optional[str] = None) -> list[SessionHandle]:
        return [
            h
            for h in self._handles.values()
            if h.is_live and (feature_id is None or h.record.feature_id == feature_id)
        ]

    def live_for_owner(self, owner: SessionOwner) -> Optional[SessionHandle]:
        for handle in self._handles.values():
            if handle.is_live and handle.record.owner == owner:
                return handle
        return None

    def load_record(self, session_id: str) -> Optional[WorkerSession]:
        handle = self._handles.get(session_id)
        if handle is not None:
            return handle.record
        return self._repo.get(session_id)

    def records(self) -> list[WorkerSession]:
        by_id = {record.id: record for record in self._repo.list()}
        for handle in self._handles.values():
            by_id[handle.session_id] = handle.record
        return list(by_id.values())

    def persist(self, record: WorkerSession) -> WorkerSession:
        return self._repo.upsert(record)

    def recover_interrupted(self) -> list[str]:
        """Mark sessions left live by a previous process as crashed so they can be resumed."""
        recovered: list[str] = []
        for record in self._repo.list():
            if not record.is_live or record.id in self._handles:
                continue
            record.state = "crashed"
            record.error = RESTART_INTERRUPTED_ERROR
            record.ended_at = record.ended_at or now_iso()
            self._repo.upsert(record)
            recovered.append(record.id)
        if recovered:
            logger.warning("Recovered {} interrupted worker session(s): {}", len(recovered), ", ".join(recovered))
        return recovered
