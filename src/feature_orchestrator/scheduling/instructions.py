"""Build the prompt handed to a worker for a single task."""

from __future__ import annotations

from ..domain.models import Task


def build_task_instructions(task: Task) -> str:
    """Render a task as a markdown prompt for its worker.

    Args:
        task: The task to describe.

    Returns:
        The prompt text.
    """
    parts: list[str] = [
        f"You are the {task.agent} agent executing task {task.id}.",
        "",
        f"## Task: {task.title}",
        f"**ID:** {task.id}",
        f"**Priority:** {task.priority}",
        f"**Phase:** {task.phase}",
        "",
    ]

    if task.instructions:
        parts += ["## Instructions", task.instructions.rstrip(), ""]

    if task.files:
        parts.append("## Files to modify")
        parts += [f"- {path}" for path in task.files]
        parts.append("")

    if task.qa:
        parts.append("## Success Criteria")
        parts += [f"- [ ] {item.item}" for item in task.qa]
        parts.append("")

    if task.depends_on:
        parts.append(f"**Note:** This task depends on: {', '.join(task.depends_on)}")
        parts.append("Those tasks are already complete.")
        parts.append("")

    parts.append("---")
    parts.append("When you have finished, summarize what you changed and exit.")
    return "\n".join(parts) + "\n"
