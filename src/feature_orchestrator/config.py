"""Load orchestrator configuration from `.orchestrator/config.yaml`."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import yaml

from .constants import (
    CONFIG_FILE,
    DEFAULT_APPROVAL_MARKERS,
    DEFAULT_KILL_GRACE_SECONDS,
    DEFAULT_LIVENESS_WINDOW_SECONDS,
    DEFAULT_MAX_PARALLEL_STARTS,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_RESUME_COMMAND,
    DEFAULT_WORKER_COMMAND,
    SCHEMA_VERSION,
    STATE_DIR_NAME,
    WORKER_COMMAND_ENV,
)
from .errors import ConfigurationError


@dataclass(frozen=True)
class OrchestratorSettings:
    worker_command: str = DEFAULT_WORKER_COMMAND
    resume_command: str = DEFAULT_RESUME_COMMAND
    max_parallel_starts: int = DEFAULT_MAX_PARALLEL_STARTS
    liveness_window_seconds: float = DEFAULT_LIVENESS_WINDOW_SECONDS
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS
    approval_markers: tuple[str, ...] = DEFAULT_APPROVAL_MARKERS
    log_level: str = "INFO"

    def approval_patterns(self) -> list[re.Pattern[str]]:
        return [re.compile(marker, re.IGNORECASE) for marker in self.approval_markers]


def default_config() -> dict[str, Any]:
    return {
        "schema_version": SCHEMA_VERSION,
        "log_level": "INFO",
        "workers": {
            "command": DEFAULT_WORKER_COMMAND,
            "resume_command": DEFAULT_RESUME_COMMAND,
            "max_parallel_starts": DEFAULT_MAX_PARALLEL_STARTS,
            "kill_grace_seconds": DEFAULT_KILL_GRACE_SECONDS,
        },
        "sessions": {
            "liveness_window_seconds": DEFAULT_LIVENESS_WINDOW_SECONDS,
            "poll_interval_seconds": DEFAULT_POLL_INTERVAL_SECONDS,
            "approval_markers": list(DEFAULT_APPROVAL_MARKERS),
        },
    }


def load_config(project_dir: Path) -> tuple[dict[str, Any], Optional[str]]:
    """Load the optional orchestrator config file.

    Args:
        project_dir: Repository root directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
        A corrupt file is reported, never rewritten.
    """
    path = project_dir.resolve() / STATE_DIR_NAME / CONFIG_FILE
    if not path.exists():
        return {}, None
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        return {}, f"Unable to read {path}: {exc}"
    if data is None:
        return {}, None
    if not isinstance(data, dict):
        return {}, f"{path} must contain a mapping, got {type(data).__name__}"
    return data, None


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _as_positive(value: Any, name: str, default: float) -> float:
    if value is None:
        return default
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from exc
    if number <= 0:
        raise ConfigurationError(f"{name} must be positive, got {value!r}")
    return number


def _as_command(value: Any, name: str, default: str) -> str:
    if value is None:
        return default
    if not isinstance(value, str) or not value.strip():
        raise ConfigurationError(f"{name} must be a non-empty string")
    return value.strip()


def resolve_settings(config: dict[str, Any], env: Optional[dict[str, str]] = None) -> OrchestratorSettings:
    """Build typed settings from a raw config mapping.

    Args:
        config: Mapping as returned by `load_config`.
        env: Environment used for overrides (defaults to `os.environ`).

    Returns:
        The resolved `OrchestratorSettings`.

    Raises:
        ConfigurationError: If a value has the wrong type or an approval marker is not a valid regex.
    """
    env = os.environ if env is None else env
    worker_command = _as_command(_get_nested(config, "workers", "command"), "workers.command", DEFAULT_WORKER_COMMAND)
    override = str(env.get(WORKER_COMMAND_ENV) or "").strip()
    if override:
        worker_command = override
    resume_command = _as_command(
        _get_nested(config, "workers", "resume_command"), "workers.resume_command", DEFAULT_RESUME_COMMAND
    )

    markers_raw = _get_nested(config, "sessions", "approval_markers")
    if markers_raw is None:
        markers = DEFAULT_APPROVAL_MARKERS
    elif isinstance(markers_raw, list) and all(isinstance(m, str) for m in markers_raw):
        markers = tuple(markers_raw)
    else:
        raise ConfigurationError("sessions.approval_markers must be a list of strings")
    for marker in markers:
        try:
            re.compile(marker)
        except re.error as exc:
            raise ConfigurationError(f"Invalid approval marker {marker!r}: {exc}") from exc

    return OrchestratorSettings(
        worker_command=worker_command,
        resume_command=resume_command,
        max_parallel_starts=int(
            _as_positive(
                _get_nested(config, "workers", "max_parallel_starts"),
                "workers.max_parallel_starts",
                DEFAULT_MAX_PARALLEL_STARTS,
            )
        ),
        liveness_window_seconds=_as_positive(
            _get_nested(config, "sessions", "liveness_window_seconds"),
            "sessions.liveness_window_seconds",
            DEFAULT_LIVENESS_WINDOW_SECONDS,
        ),
        poll_interval_seconds=_as_positive(
            _get_nested(config, "sessions", "poll_interval_seconds"),
            "sessions.poll_interval_seconds",
            DEFAULT_POLL_INTERVAL_SECONDS,
        ),
        kill_grace_seconds=_as_positive(
            _get_nested(config, "workers", "kill_grace_seconds"),
            "workers.kill_grace_seconds",
            DEFAULT_KILL_GRACE_SECONDS,
        ),
        approval_markers=markers,
        log_level=str(config.get("log_level") or "INFO").upper(),
    )


def load_settings(project_dir: Path) -> OrchestratorSettings:
    config, err = load_config(project_dir)
    if err:
        raise ConfigurationError(err)
    return resolve_settings(config)
