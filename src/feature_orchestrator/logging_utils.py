"""Configure loguru sinks and summarize session events for log lines."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Optional

from loguru import logger


_CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{module}</cyan>:<cyan>{line}</cyan> - "
    "{message}"
)


def configure_logging(level: str = "INFO", log_file: Optional[Path] = None) -> None:
    """Reset loguru sinks to stderr (and optionally a rotating file).

    Args:
        level: Minimum level name, case-insensitive.
        log_file: Optional path that also receives every record at `level`.
    """
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=_CONSOLE_FORMAT)
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(log_file, level=level.upper(), rotation="10 MB", retention=5, enqueue=True)


def summarize_event(event: Any, max_content: int = 120) -> dict[str, Any]:
    """Render a compact, JSON-friendly summary of an output event.

    Args:
        event: `OutputEvent` instance or its dict form (or None).
        max_content: Truncation length for the content preview.

    Returns:
        A dictionary suitable for logging.
    """
    if event is None:
        return {"event": None}
    data = event if isinstance(event, dict) else event.to_dict()
    summary: dict[str, Any] = {
        "session_id": data.get("session_id"),
        "seq": data.get("seq"),
        "kind": data.get("kind"),
    }
    content = str(data.get("content") or "")
    if content:
        summary["content"] = content if len(content) <= max_content else content[: max_content - 3] + "..."
    tool = data.get("tool")
    if isinstance(tool, dict) and tool.get("name"):
        summary["tool"] = tool["name"]
    if data.get("error_type"):
        summary["error_type"] = data["error_type"]
    return summary
