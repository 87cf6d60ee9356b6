"""Define the orchestrator error hierarchy."""

from __future__ import annotations

from typing import Optional


class OrchestratorError(Exception):
    """Base class for errors raised synchronously to callers."""


class ConfigurationError(OrchestratorError):
    """Raised when feature, task or settings data is structurally invalid."""


class FeatureNotFound(OrchestratorError):
    def __init__(self, feature_id: str) -> None:
        super().__init__(f"Feature not found: {feature_id}")
        self.feature_id = feature_id


class TaskNotFound(OrchestratorError):
    def __init__(self, feature_id: str, task_id: str) -> None:
        super().__init__(f"Task not found: {feature_id}/{task_id}")
        self.feature_id = feature_id
        self.task_id = task_id


class InvalidTransition(OrchestratorError):
    def __init__(self, task_id: str, current: str, target: str, reason: Optional[str] = None) -> None:
        message = f"Invalid transition for {task_id}: {current} -> {target}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.task_id = task_id
        self.current = current
        self.target = target


class StoreWriteConflict(OrchestratorError):
    """Raised when a conditional write loses against a concurrent writer."""


class SpawnFailed(OrchestratorError):
    """Raised when a worker process could not be started."""


class SessionNotFound(OrchestratorError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class SessionAlreadyRunning(OrchestratorError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session already running: {session_id}")
        self.session_id = session_id


class SessionNotResumable(OrchestratorError):
    def __init__(self, session_id: str, state: str) -> None:
        super().__init__(f"Session {session_id} cannot be resumed from state '{state}'")
        self.session_id = session_id
        self.state = state


# Reported through session events and task progress; never raised.
WORKER_CRASHED = "WorkerCrashed"
