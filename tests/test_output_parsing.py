from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from feature_orchestrator.config import OrchestratorSettings
from feature_orchestrator.errors import SpawnFailed
from feature_orchestrator.sessions.launcher import build_launch_spec
from feature_orchestrator.sessions.output import derive_status, parse_output_line


PATTERNS = OrchestratorSettings().approval_patterns()


def test_stream_json_assistant_blocks() -> None:
    line = json.dumps(
        {
            "type": "assistant",
            "message": {
                "content": [
                    {"type": "text", "text": "Reading the schema"},
                    {"type": "tool_use", "id": "tu1", "name": "Read", "input": {"path": "models.py"}},
                ]
            },
        }
    )

    parts = parse_output_line(line, PATTERNS)

    assert [p["kind"] for p in parts] == ["message", "tool_use"]
    assert parts[1]["tool"]["name"] == "Read"
    assert "models.py" in parts[1]["content"]


def test_tool_result_system_and_result_lines() -> None:
    tool_result = json.dumps(
        {"type": "user", "message": {"content": [{"type": "tool_result", "tool_use_id": "tu1", "content": "ok"}]}}
    )
    assert parse_output_line(tool_result)[0]["kind"] == "tool_result"
    assert parse_output_line(json.dumps({"type": "system", "subtype": "init"})) == [
        {"kind": "status", "role": "system", "content": "init"}
    ]
    assert parse_output_line(json.dumps({"type": "result", "result": "All done"}))[0]["content"] == "All done"


def test_approval_markers_reclassify_messages_and_text() -> None:
    flat = json.dumps({"kind": "message", "content": "This needs approval before deploy"})

    assert parse_output_line(flat, PATTERNS)[0]["kind"] == "approval_request"
    assert parse_output_line("Permission request: write to /etc", PATTERNS)[0]["kind"] == "approval_request"
    assert parse_output_line(json.dumps({"type": "permission_request", "content": "rm -rf build"}))[0]["kind"] == (
        "approval_request"
    )


def test_plain_text_and_blank_lines() -> None:
    assert parse_output_line("compiling...\n", PATTERNS) == [{"kind": "raw", "role": "worker", "content": "compiling..."}]
    assert parse_output_line("   \n", PATTERNS) == []
    assert parse_output_line("[1, 2]", PATTERNS)[0]["kind"] == "raw"


def test_derive_status() -> None:
    now = datetime.now(timezone.utc)
    recent = now - timedelta(seconds=5)
    stale = now - timedelta(seconds=600)

    def status(**kw) -> str:
        values = {"alive": True, "last_activity": recent, "last_event_kind": "message", "now": now,
                  "liveness_window_seconds": 300}
        values.update(kw)
        return derive_status(**values)

    assert status() == "working"
    assert status(last_activity=stale) == "waiting"
    assert status(last_event_kind="approval_request", last_activity=stale) == "needs_approval"
    assert status(alive=False, last_event_kind="approval_request") == "idle"


def test_launch_spec_substitutes_per_argument(tmp_path: Path) -> None:
    spec = build_launch_spec(
        "agent --session {session_id} -p {prompt}",
        prompt="fix the bug in checkout",
        prompt_file=tmp_path / "p.md",
        session_id="session-1",
        project_dir=tmp_path,
    )

    assert spec.argv == ["agent", "--session", "session-1", "-p", "fix the bug in checkout"]
    assert spec.stdin_payload is None

    stdin_spec = build_launch_spec("agent -", prompt="hi", prompt_file=tmp_path / "p.md", session_id="s", project_dir=tmp_path)
    assert stdin_spec.stdin_payload == "hi"


@pytest.mark.parametrize("template", ["agent --run", "agent {unknown}", ""])
def test_launch_spec_rejects_bad_templates(tmp_path: Path, template: str) -> None:
    with pytest.raises(SpawnFailed):
        build_launch_spec(template, prompt="p", prompt_file=tmp_path / "p.md", session_id="s", project_dir=tmp_path)
