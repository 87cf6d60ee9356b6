from __future__ import annotations

from pathlib import Path

from ..constants import FEATURES_FILE, SESSIONS_FILE, TASKS_FILE, TRANSCRIPTS_DIR
from .bootstrap import ensure_state_root
from .file_repos import (
    FileFeatureRepository,
    FileSessionRepository,
    FileTaskRepository,
    FileTranscriptRepository,
)


class Container:
    def __init__(self, project_dir: Path) -> None:
        self.project_dir = project_dir.resolve()
        self.state_root = ensure_state_root(self.project_dir)

        self.features = FileFeatureRepository(self.state_root / FEATURES_FILE, self.state_root / "features.lock")
        self.tasks = FileTaskRepository(self.state_root / TASKS_FILE, self.state_root / "tasks.lock")
        self.sessions = FileSessionRepository(self.state_root / SESSIONS_FILE, self.state_root / "sessions.lock")
        self.transcripts = FileTranscriptRepository(self.state_root / TRANSCRIPTS_DIR, self.state_root / "transcripts.lock")

    @property
    def project_id(self) -> str:
        return self.project_dir.name

    @property
    def prompts_dir(self) -> Path:
        return self.state_root / "prompts"
