from __future__ import annotations

from pathlib import Path

from ..constants import (
    CONFIG_FILE,
    FEATURES_FILE,
    PROMPTS_DIR,
    SCHEMA_VERSION,
    SESSIONS_FILE,
    STATE_DIR_NAME,
    TASKS_FILE,
    TRANSCRIPTS_DIR,
)
from ..config import default_config
from .file_repos import FileConfigRepository


STATE_FILES = (FEATURES_FILE, TASKS_FILE, SESSIONS_FILE)


def ensure_state_root(project_dir: Path) -> Path:
    """Create the state directory layout without touching existing files."""
    state_root = project_dir / STATE_DIR_NAME
    state_root.mkdir(parents=True, exist_ok=True)
    (state_root / TRANSCRIPTS_DIR).mkdir(exist_ok=True)
    (state_root / PROMPTS_DIR).mkdir(exist_ok=True)

    for file_name in STATE_FILES:
        target = state_root / file_name
        if not target.exists():
            target.write_text(f"version: {SCHEMA_VERSION}\n", encoding="utf-8")

    config_path = state_root / CONFIG_FILE
    if not config_path.exists():
        FileConfigRepository(config_path, state_root / "config.lock").save(default_config())

    return state_root
