from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal, Optional

from ..utils import _id, _now_iso as now_iso


FeatureStatus = Literal["planning", "approved", "in_progress", "qa", "completed", "archived"]
TaskStatus = Literal["pending", "in_progress", "blocked", "qa", "completed"]
TaskPriority = Literal["high", "medium", "low"]
SessionState = Literal["spawning", "running", "stopped", "killed", "crashed"]
SessionStatus = Literal["working", "waiting", "needs_approval", "idle"]
EventKind = Literal["message", "tool_use", "tool_result", "approval_request", "status", "session_end", "raw"]

FEATURE_STATUSES = ("planning", "approved", "in_progress", "qa", "completed", "archived")
TASK_STATUSES = ("pending", "in_progress", "blocked", "qa", "completed")
TASK_PRIORITIES = ("high", "medium", "low")

TASK_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"in_progress", "blocked"},
    "in_progress": {"pending", "blocked", "qa", "completed"},
    "blocked": {"pending", "in_progress"},
    "qa": {"in_progress", "completed"},
    "completed": {"in_progress"},
}

LIVE_SESSION_STATES = {"spawning", "running"}
RESUMABLE_SESSION_STATES = {"stopped", "crashed"}


@dataclass
class ProgressEntry:
    timestamp: str = field(default_factory=now_iso)
    actor: str = "orchestrator"
    action: str = ""
    note: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProgressEntry":
        return cls(
            timestamp=str(data.get("timestamp") or now_iso()),
            actor=str(data.get("actor") or data.get("agent") or "orchestrator"),
            action=str(data.get("action") or ""),
            note=str(data.get("note") or ""),
        )


@dataclass
class QAItem:
    item: str = ""
    passed: Optional[bool] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QAItem":
        passed = data.get("passed")
        return cls(item=str(data.get("item") or ""), passed=passed if isinstance(passed, bool) else None)


@dataclass
class PhaseSpec:
    phase: int = 1
    task_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PhaseSpec":
        return cls(phase=int(data.get("phase") or 1), task_ids=[str(t) for t in data.get("task_ids") or []])


@dataclass
class Feature:
    id: str = field(default_factory=lambda: _id("feature"))
    title: str = ""
    description: str = ""
    status: FeatureStatus = "planning"
    phases: list[PhaseSpec] = field(default_factory=list)
    session_id: Optional[str] = None
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["phases"] = [p.to_dict() for p in self.phases]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Feature":
        return cls(
            id=str(data.get("id") or _id("feature")),
            title=str(data.get("title") or ""),
            description=str(data.get("description") or ""),
            status=str(data.get("status") or "planning"),  # type: ignore[arg-type]
            phases=[PhaseSpec.from_dict(p) for p in data.get("phases") or [] if isinstance(p, dict)],
            session_id=data.get("session_id"),
            created_at=str(data.get("created_at") or now_iso()),
            updated_at=str(data.get("updated_at") or now_iso()),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
        )


@dataclass
class Task:
    id: str = field(default_factory=lambda: _id("task"))
    feature_id: str = ""
    title: str = ""
    phase: int = 1
    agent: str = "general"
    status: TaskStatus = "pending"
    priority: TaskPriority = "medium"
    depends_on: list[str] = field(default_factory=list)
    blocks: list[str] = field(default_factory=list)
    instructions: str = ""
    files: list[str] = field(default_factory=list)
    estimated_minutes: Optional[int] = None
    progress: list[ProgressEntry] = field(default_factory=list)
    qa: list[QAItem] = field(default_factory=list)
    session_id: Optional[str] = None
    revision: int = 0
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.feature_id, self.id)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["progress"] = [p.to_dict() for p in self.progress]
        data["qa"] = [q.to_dict() for q in self.qa]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        payload = {k: data.get(k) for k in cls.__dataclass_fields__}
        payload["id"] = str(data.get("id") or _id("task"))
        payload["feature_id"] = str(data.get("feature_id") or "")
        payload["title"] = str(data.get("title") or "")
        payload["phase"] = int(data.get("phase") or 1)
        payload["agent"] = str(data.get("agent") or "general")
        payload["status"] = str(data.get("status") or "pending")
        payload["priority"] = str(data.get("priority") or "medium")
        payload["depends_on"] = [str(d) for d in data.get("depends_on") or []]
        payload["blocks"] = [str(b) for b in data.get("blocks") or []]
        payload["instructions"] = str(data.get("instructions") or "")
        payload["files"] = [str(f) for f in data.get("files") or []]
        payload["progress"] = [ProgressEntry.from_dict(p) for p in data.get("progress") or [] if isinstance(p, dict)]
        payload["qa"] = [QAItem.from_dict(q) for q in data.get("qa") or [] if isinstance(q, dict)]
        payload["revision"] = int(data.get("revision") or 0)
        payload["created_at"] = str(data.get("created_at") or now_iso())
        payload["updated_at"] = str(data.get("updated_at") or now_iso())
        return cls(**payload)


@dataclass(frozen=True)
class SessionOwner:
    feature_id: str
    task_id: Optional[str] = None

    @property
    def label(self) -> str:
        return f"{self.feature_id}/{self.task_id}" if self.task_id else self.feature_id


@dataclass
class WorkerSession:
    id: str = field(default_factory=lambda: _id("session"))
    feature_id: str = ""
    task_id: Optional[str] = None
    state: SessionState = "spawning"
    pid: Optional[int] = None
    cwd: Optional[str] = None
    started_at: str = field(default_factory=now_iso)
    last_activity_at: Optional[str] = None
    ended_at: Optional[str] = None
    exit_code: Optional[int] = None
    resume_count: int = 0
    error: Optional[str] = None

    @property
    def owner(self) -> SessionOwner:
        return SessionOwner(self.feature_id, self.task_id)

    @property
    def is_live(self) -> bool:
        return self.state in LIVE_SESSION_STATES

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkerSession":
        return cls(
            id=str(data.get("id") or _id("session")),
            feature_id=str(data.get("feature_id") or ""),
            task_id=data.get("task_id"),
            state=str(data.get("state") or "stopped"),  # type: ignore[arg-type]
            pid=data.get("pid"),
            cwd=data.get("cwd"),
            started_at=str(data.get("started_at") or now_iso()),
            last_activity_at=data.get("last_activity_at"),
            ended_at=data.get("ended_at"),
            exit_code=data.get("exit_code"),
            resume_count=int(data.get("resume_count") or 0),
            error=data.get("error"),
        )


@dataclass
class OutputEvent:
    session_id: str
    seq: int
    kind: EventKind = "message"
    role: str = "assistant"
    content: str = ""
    timestamp: str = field(default_factory=now_iso)
    tool: Optional[dict[str, Any]] = None
    error_type: Optional[str] = None
    exit_code: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OutputEvent":
        tool = data.get("tool")
        return cls(
            session_id=str(data.get("session_id") or ""),
            seq=int(data.get("seq") or 0),
            kind=str(data.get("kind") or "raw"),  # type: ignore[arg-type]
            role=str(data.get("role") or "assistant"),
            content=str(data.get("content") or ""),
            timestamp=str(data.get("timestamp") or now_iso()),
            tool=dict(tool) if isinstance(tool, dict) else None,
            error_type=data.get("error_type"),
            exit_code=data.get("exit_code"),
        )


@dataclass
class PhaseRunSummary:
    feature_id: str
    phase: int
    started: list[str] = field(default_factory=list)
    already_running: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)
    failed_to_start: list[str] = field(default_factory=list)
    newly_blocked: list[str] = field(default_factory=list)
    in_qa: list[str] = field(default_factory=list)
    sessions: dict[str, str] = field(default_factory=dict)

    @property
    def is_complete(self) -> bool:
        """True when this call had no task to start or wait on and blocked no new ones.

        Tasks blocked by an earlier call do not count, so a phase whose tasks
        are all still blocked reports complete on its second run; check
        `has_blocked` before moving on to the next phase.
        """
        return not (self.started or self.already_running or self.newly_blocked or self.failed_to_start)

    @property
    def has_blocked(self) -> bool:
        return bool(self.blocked)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["is_complete"] = self.is_complete
        data["has_blocked"] = self.has_blocked
        return data


@dataclass
class PlannedTask:
    id: str
    title: str
    agent: str
    status: str
    depends_on: list[str]
    can_execute: bool
    estimated_minutes: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PhasePlan:
    phase: int
    tasks: list[PlannedTask] = field(default_factory=list)
    estimated_minutes: int = 0

    @property
    def can_execute(self) -> bool:
        return all(t.can_execute for t in self.tasks)

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "tasks": [t.to_dict() for t in self.tasks],
            "estimated_minutes": self.estimated_minutes,
            "can_execute": self.can_execute,
        }
