from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from ..domain.models import Feature, OutputEvent, Task, WorkerSession


class FeatureRepository(ABC):
    @abstractmethod
    def list(self) -> list[Feature]:
        raise NotImplementedError

    @abstractmethod
    def get(self, feature_id: str) -> Optional[Feature]:
        raise NotImplementedError

    @abstractmethod
    def upsert(self, feature: Feature) -> Feature:
        raise NotImplementedError

    @abstractmethod
    def delete(self, feature_id: str) -> bool:
        raise NotImplementedError


class TaskRepository(ABC):
    @abstractmethod
    def list(self, feature_id: Optional[str] = None) -> list[Task]:
        raise NotImplementedError

    @abstractmethod
    def get(self, feature_id: str, task_id: str) -> Optional[Task]:
        raise NotImplementedError

    @abstractmethod
    def upsert(self, task: Task) -> Task:
        raise NotImplementedError

    @abstractmethod
    def replace(self, task: Task, *, expected_revision: int) -> Task:
        """Write `task` only if the stored revision still equals `expected_revision`."""
        raise NotImplementedError

    @abstractmethod
    def delete_feature(self, feature_id: str) -> int:
        raise NotImplementedError


class SessionRepository(ABC):
    @abstractmethod
    def list(self) -> list[WorkerSession]:
        raise NotImplementedError

    @abstractmethod
    def get(self, session_id: str) -> Optional[WorkerSession]:
        raise NotImplementedError

    @abstractmethod
    def upsert(self, session: WorkerSession) -> WorkerSession:
        raise NotImplementedError


class TranscriptRepository(ABC):
    @abstractmethod
    def append(self, event: OutputEvent) -> None:
        raise NotImplementedError

    @abstractmethod
    def read(self, session_id: str) -> list[OutputEvent]:
        raise NotImplementedError

    @abstractmethod
    def last_seq(self, session_id: str) -> int:
        raise NotImplementedError


class ConfigRepository(ABC):
    @abstractmethod
    def save(self, config: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError
