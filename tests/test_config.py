from __future__ import annotations

from pathlib import Path

import pytest

from feature_orchestrator.config import default_config, load_config, load_settings, resolve_settings
from feature_orchestrator.constants import DEFAULT_WORKER_COMMAND, WORKER_COMMAND_ENV
from feature_orchestrator.errors import ConfigurationError
from feature_orchestrator.storage.bootstrap import ensure_state_root


def test_missing_config_uses_defaults(tmp_path: Path) -> None:
    config, err = load_config(tmp_path)

    assert config == {}
    assert err is None
    settings = resolve_settings(config, env={})
    assert settings.worker_command == DEFAULT_WORKER_COMMAND
    assert settings.max_parallel_starts == 5
    assert settings.liveness_window_seconds == 300


def test_bootstrap_writes_default_config_once(tmp_path: Path) -> None:
    state_root = ensure_state_root(tmp_path)
    config_path = state_root / "config.yaml"
    assert "schema_version: 1" in config_path.read_text(encoding="utf-8")

    config_path.write_text("log_level: debug\n", encoding="utf-8")
    ensure_state_root(tmp_path)

    assert config_path.read_text(encoding="utf-8") == "log_level: debug\n"
    assert load_settings(tmp_path).log_level == "DEBUG"


def test_nested_values_and_env_override(tmp_path: Path) -> None:
    config = default_config()
    config["workers"]["max_parallel_starts"] = 2
    config["sessions"]["approval_markers"] = ["waiting for sign-off"]

    settings = resolve_settings(config, env={WORKER_COMMAND_ENV: "my-agent --prompt-file {prompt_file}"})

    assert settings.max_parallel_starts == 2
    assert settings.worker_command == "my-agent --prompt-file {prompt_file}"
    assert [p.pattern for p in settings.approval_patterns()] == ["waiting for sign-off"]


@pytest.mark.parametrize(
    "config",
    [
        {"workers": {"max_parallel_starts": 0}},
        {"workers": {"kill_grace_seconds": "soon"}},
        {"workers": {"command": ""}},
        {"sessions": {"approval_markers": "approve"}},
        {"sessions": {"approval_markers": ["("]}},
    ],
)
def test_invalid_values_are_rejected(config: dict) -> None:
    with pytest.raises(ConfigurationError):
        resolve_settings(config, env={})


def test_corrupt_config_is_reported_not_rewritten(tmp_path: Path) -> None:
    state_root = tmp_path / ".orchestrator"
    state_root.mkdir()
    (state_root / "config.yaml").write_text("workers: [unclosed\n", encoding="utf-8")

    config, err = load_config(tmp_path)

    assert config == {}
    assert err is not None
    with pytest.raises(ConfigurationError):
        load_settings(tmp_path)
    assert (state_root / "config.yaml").read_text(encoding="utf-8") == "workers: [unclosed\n"
