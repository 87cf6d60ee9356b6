"""Parse worker stdout lines into output events and derive session status."""

from __future__ import annotations

import json
import re
from datetime import datetime
from typing import Any, Iterable, Optional


APPROVAL_TYPES = {"approval_request", "permission_request", "needs_approval"}
_PASSTHROUGH_KINDS = {"message", "tool_use", "tool_result", "approval_request", "status", "raw"}


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return "\n".join(_stringify(v) for v in value if v is not None)
    if isinstance(value, dict) and "text" in value:
        return _stringify(value["text"])
    return json.dumps(value, sort_keys=True)


def _matches(text: str, patterns: Iterable[re.Pattern[str]]) -> bool:
    return any(p.search(text) for p in patterns)


def _content_blocks(payload: dict[str, Any], role: str) -> list[dict[str, Any]]:
    message = payload.get("message")
    content = message.get("content") if isinstance(message, dict) else payload.get("content")
    if isinstance(content, str):
        return [{"kind": "message", "role": role, "content": content}]
    if not isinstance(content, list):
        return []
    parts: list[dict[str, Any]] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "text":
            parts.append({"kind": "message", "role": role, "content": _stringify(block.get("text"))})
        elif block_type == "tool_use":
            parts.append(
                {
                    "kind": "tool_use",
                    "role": role,
                    "content": _stringify(block.get("input")),
                    "tool": {"name": block.get("name"), "id": block.get("id"), "input": block.get("input")},
                }
            )
        elif block_type == "tool_result":
            parts.append(
                {
                    "kind": "tool_result",
                    "role": role,
                    "content": _stringify(block.get("content")),
                    "tool": {"id": block.get("tool_use_id"), "is_error": bool(block.get("is_error"))},
                }
            )
    return parts


def parse_output_line(line: str, approval_patterns: Iterable[re.Pattern[str]] = ()) -> list[dict[str, Any]]:
    """Turn one stdout line into zero or more event payloads.

    Accepts stream-json objects (`{"type": "assistant", "message": {...}}`),
    flat `{"kind": ..., "content": ...}` objects, and plain text. Text that
    matches an approval marker is reclassified as an approval request.

    Args:
        line: One line of worker stdout.
        approval_patterns: Compiled approval-marker regexes.

    Returns:
        A list of dicts with `kind`, `role`, `content` and optional `tool`.
    """
    approval_patterns = list(approval_patterns)
    text = line.rstrip("\r\n")
    if not text.strip():
        return []
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        payload = None
    if not isinstance(payload, dict):
        kind = "approval_request" if _matches(text, approval_patterns) else "raw"
        return [{"kind": kind, "role": "worker", "content": text}]

    raw_type = str(payload.get("type") or "")
    parts: list[dict[str, Any]]
    if raw_type in APPROVAL_TYPES:
        parts = [{"kind": "approval_request", "role": "assistant", "content": _stringify(payload.get("content") or payload.get("message"))}]
    elif raw_type in {"assistant", "user"}:
        parts = _content_blocks(payload, raw_type)
    elif raw_type == "system":
        parts = [{"kind": "status", "role": "system", "content": str(payload.get("subtype") or "system")}]
    elif raw_type == "result":
        parts = [{"kind": "message", "role": "assistant", "content": _stringify(payload.get("result"))}]
    elif payload.get("kind") in _PASSTHROUGH_KINDS:
        part: dict[str, Any] = {
            "kind": payload["kind"],
            "role": str(payload.get("role") or "assistant"),
            "content": _stringify(payload.get("content")),
        }
        if isinstance(payload.get("tool"), dict):
            part["tool"] = payload["tool"]
        parts = [part]
    else:
        parts = [{"kind": "raw", "role": "worker", "content": text}]

    for part in parts:
        if part["kind"] == "message" and approval_patterns and _matches(part["content"], approval_patterns):
            part["kind"] = "approval_request"
    return parts


def derive_status(
    *,
    alive: bool,
    last_activity: Optional[datetime],
    last_event_kind: Optional[str],
    now: datetime,
    liveness_window_seconds: float,
) -> str:
    """Compute the coarse session status.

    `idle` when no process is alive; `needs_approval` when the latest event is
    an approval request; `working` when output arrived within the liveness
    window; `waiting` otherwise.
    """
    if not alive:
        return "idle"
    if last_event_kind == "approval_request":
        return "needs_approval"
    if last_activity is not None and (now - last_activity).total_seconds() <= liveness_window_seconds:
        return "working"
    return "waiting"
