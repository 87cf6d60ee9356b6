"""Parse feature definition files into domain objects."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from ..domain.models import FEATURE_STATUSES, TASK_PRIORITIES, Feature, QAItem, Task
from ..errors import ConfigurationError


def _qa_items(raw: Any, task_id: str) -> list[QAItem]:
    if raw is None:
        return []
    if isinstance(raw, dict):
        raw = raw.get("checklist") or []
    if not isinstance(raw, list):
        raise ConfigurationError(f"Task {task_id}: qa must be a list")
    items: list[QAItem] = []
    for entry in raw:
        if isinstance(entry, str):
            items.append(QAItem(item=entry))
        elif isinstance(entry, dict) and entry.get("item"):
            items.append(QAItem.from_dict(entry))
        else:
            raise ConfigurationError(f"Task {task_id}: invalid qa entry {entry!r}")
    return items


def parse_task(data: dict[str, Any]) -> Task:
    task_id = str(data.get("id") or "").strip()
    if not task_id:
        raise ConfigurationError(f"Task is missing an id: {data!r}")
    priority = str(data.get("priority") or "medium")
    if priority not in TASK_PRIORITIES:
        raise ConfigurationError(f"Task {task_id}: unknown priority '{priority}'")
    depends_on = data.get("depends_on") or []
    if not isinstance(depends_on, list):
        raise ConfigurationError(f"Task {task_id}: depends_on must be a list")
    try:
        phase = int(data.get("phase") or 1)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Task {task_id}: phase must be an integer") from exc
    estimate = data.get("estimated_minutes")
    return Task(
        id=task_id,
        title=str(data.get("title") or task_id),
        phase=phase,
        agent=str(data.get("agent") or "general"),
        status=str(data.get("status") or "pending"),  # type: ignore[arg-type]
        priority=priority,  # type: ignore[arg-type]
        depends_on=[str(dep) for dep in depends_on],
        instructions=str(data.get("instructions") or ""),
        files=[str(f) for f in data.get("files") or []],
        estimated_minutes=int(estimate) if estimate is not None else None,
        qa=_qa_items(data.get("qa"), task_id),
    )


def parse_feature_definition(data: dict[str, Any]) -> tuple[Feature, list[Task]]:
    """Build a feature and its tasks from a `{feature: {...}, tasks: [...]}` mapping."""
    feature_raw = data.get("feature")
    if not isinstance(feature_raw, dict):
        raise ConfigurationError("Definition must contain a 'feature' mapping")
    tasks_raw = data.get("tasks")
    if not isinstance(tasks_raw, list) or not tasks_raw:
        raise ConfigurationError("Definition must contain a non-empty 'tasks' list")

    status = str(feature_raw.get("status") or "approved")
    if status not in FEATURE_STATUSES:
        raise ConfigurationError(f"Unknown feature status '{status}'")
    feature = Feature(
        title=str(feature_raw.get("title") or ""),
        description=str(feature_raw.get("description") or ""),
        status=status,  # type: ignore[arg-type]
    )
    if feature_raw.get("id"):
        feature.id = str(feature_raw["id"])
    tasks = [parse_task(item) for item in tasks_raw if isinstance(item, dict)]
    if len(tasks) != len(tasks_raw):
        raise ConfigurationError("Every entry in 'tasks' must be a mapping")
    return feature, tasks


def load_feature_file(path: Path) -> tuple[Feature, list[Task]]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Unable to read feature definition {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{path} must contain a mapping")
    return parse_feature_definition(raw)
