from __future__ import annotations

import json
import os
import threading
from pathlib import Path
from typing import Any, Callable, Generic, Optional, TypeVar

import yaml
from filelock import FileLock
from loguru import logger

from ..constants import SCHEMA_VERSION
from ..domain.models import Feature, OutputEvent, Task, WorkerSession, now_iso
from ..errors import StoreWriteConflict
from .interfaces import (
    ConfigRepository,
    FeatureRepository,
    SessionRepository,
    TaskRepository,
    TranscriptRepository,
)


T = TypeVar("T")


def _atomic_write_yaml(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(f"{path.suffix}.tmp")
    with tmp_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(payload, handle, sort_keys=False)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


class _YamlCollectionRepo(Generic[T]):
    def __init__(
        self,
        path: Path,
        lock_path: Path,
        key: str,
        loader: Callable[[dict[str, Any]], T],
        dumper: Callable[[T], dict[str, Any]],
    ) -> None:
        self._path = path
        self._lock = FileLock(str(lock_path))
        self._thread_lock = threading.RLock()
        self._key = key
        self._loader = loader
        self._dumper = dumper

    def _load(self) -> list[T]:
        if not self._path.exists():
            return []
        raw = yaml.safe_load(self._path.read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            return []
        items = raw.get(self._key, [])
        if not isinstance(items, list):
            return []
        out: list[T] = []
        for item in items:
            if isinstance(item, dict):
                out.append(self._loader(item))
        return out

    def _save(self, items: list[T]) -> None:
        payload = {"version": SCHEMA_VERSION, self._key: [self._dumper(item) for item in items]}
        _atomic_write_yaml(self._path, payload)


class FileFeatureRepository(FeatureRepository):
    def __init__(self, path: Path, lock_path: Path) -> None:
        self._repo = _YamlCollectionRepo[Feature](
            path,
            lock_path,
            "features",
            loader=Feature.from_dict,
            dumper=lambda f: f.to_dict(),
        )

    def list(self) -> list[Feature]:
        with self._repo._thread_lock:
            with self._repo._lock:
                return self._repo._load()

    def get(self, feature_id: str) -> Optional[Feature]:
        for feature in self.list():
            if feature.id == feature_id:
                return feature
        return None

    def upsert(self, feature: Feature) -> Feature:
        with self._repo._thread_lock:
            with self._repo._lock:
                features = self._repo._load()
                feature.updated_at = now_iso()
                for idx, existing in enumerate(features):
                    if existing.id == feature.id:
                        features[idx] = feature
                        break
                else:
                    features.append(feature)
                self._repo._save(features)
        return feature

    def delete(self, feature_id: str) -> bool:
        with self._repo._thread_lock:
            with self._repo._lock:
                features = self._repo._load()
                keep = [f for f in features if f.id != feature_id]
                if len(keep) == len(features):
                    return False
                self._repo._save(keep)
        return True


class FileTaskRepository(TaskRepository):
    def __init__(self, path: Path, lock_path: Path) -> None:
        self._repo = _YamlCollectionRepo[Task](
            path,
            lock_path,
            "tasks",
            loader=Task.from_dict,
            dumper=lambda t: t.to_dict(),
        )

    def list(self, feature_id: Optional[str] = None) -> list[Task]:
        with self._repo._thread_lock:
            with self._repo._lock:
                tasks = self._repo._load()
        if feature_id is None:
            return tasks
        return [t for t in tasks if t.feature_id == feature_id]

    def get(self, feature_id: str, task_id: str) -> Optional[Task]:
        for task in self.list(feature_id):
            if task.id == task_id:
                return task
        return None

    def upsert(self, task: Task) -> Task:
        with self._repo._thread_lock:
            with self._repo._lock:
                tasks = self._repo._load()
                task.updated_at = now_iso()
                for idx, existing in enumerate(tasks):
                    if existing.key == task.key:
                        task.revision = existing.revision + 1
                        tasks[idx] = task
                        break
                else:
                    tasks.append(task)
                self._repo._save(tasks)
        return task

    def replace(self, task: Task, *, expected_revision: int) -> Task:
        with self._repo._thread_lock:
            with self._repo._lock:
                tasks = self._repo._load()
                for idx, existing in enumerate(tasks):
                    if existing.key != task.key:
                        continue
                    if existing.revision != expected_revision:
                        raise StoreWriteConflict(
                            f"Task {task.feature_id}/{task.id} is at revision {existing.revision}, expected {expected_revision}"
                        )
                    task.revision = expected_revision + 1
                    task.updated_at = now_iso()
                    tasks[idx] = task
                    self._repo._save(tasks)
                    return task
        raise StoreWriteConflict(f"Task {task.feature_id}/{task.id} no longer exists")

    def delete_feature(self, feature_id: str) -> int:
        with self._repo._thread_lock:
            with self._repo._lock:
                tasks = self._repo._load()
                keep = [t for t in tasks if t.feature_id != feature_id]
                removed = len(tasks) - len(keep)
                if removed:
                    self._repo._save(keep)
        return removed


class FileSessionRepository(SessionRepository):
    def __init__(self, path: Path, lock_path: Path) -> None:
        self._repo = _YamlCollectionRepo[WorkerSession](
            path,
            lock_path,
            "sessions",
            loader=WorkerSession.from_dict,
            dumper=lambda s: s.to_dict(),
        )

    def list(self) -> list[WorkerSession]:
        with self._repo._thread_lock:
            with self._repo._lock:
                return self._repo._load()

    def get(self, session_id: str) -> Optional[WorkerSession]:
        for session in self.list():
            if session.id == session_id:
                return session
        return None

    def upsert(self, session: WorkerSession) -> WorkerSession:
        with self._repo._thread_lock:
            with self._repo._lock:
                sessions = self._repo._load()
                for idx, existing in enumerate(sessions):
                    if existing.id == session.id:
                        sessions[idx] = session
                        break
                else:
                    sessions.append(session)
                self._repo._save(sessions)
        return session


class FileTranscriptRepository(TranscriptRepository):
    """Append-only JSONL transcript per session, kept after the worker exits."""

    def __init__(self, directory: Path, lock_path: Path) -> None:
        self._dir = directory
        self._lock = FileLock(str(lock_path))
        self._thread_lock = threading.RLock()

    def _path(self, session_id: str) -> Path:
        return self._dir / f"{session_id}.jsonl"

    def append(self, event: OutputEvent) -> None:
        with self._thread_lock:
            with self._lock:
                self._dir.mkdir(parents=True, exist_ok=True)
                with self._path(event.session_id).open("a", encoding="utf-8") as handle:
                    handle.write(json.dumps(event.to_dict()) + "\n")
                    handle.flush()

    def read(self, session_id: str) -> list[OutputEvent]:
        path = self._path(session_id)
        if not path.exists():
            return []
        with self._thread_lock:
            with self._lock:
                lines = path.read_text(encoding="utf-8").splitlines()
        events: list[OutputEvent] = []
        for line in lines:
            if not line.strip():
                continue
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Skipping unreadable transcript line for session {}", session_id)
                continue
            if isinstance(parsed, dict):
                events.append(OutputEvent.from_dict(parsed))
        return events

    def last_seq(self, session_id: str) -> int:
        events = self.read(session_id)
        return events[-1].seq if events else 0


class FileConfigRepository(ConfigRepository):
    def __init__(self, path: Path, lock_path: Path) -> None:
        self._path = path
        self._lock = FileLock(str(lock_path))
        self._thread_lock = threading.RLock()

    def save(self, config: dict[str, Any]) -> dict[str, Any]:
        with self._thread_lock:
            with self._lock:
                _atomic_write_yaml(self._path, config)
        return config
