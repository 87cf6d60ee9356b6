"""Render plans and task boards as plain text with rich."""

from __future__ import annotations

import io

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .domain.models import Feature, PhasePlan, PhaseRunSummary, Task


_STATUS_STYLE = {
    "pending": "dim",
    "in_progress": "yellow",
    "blocked": "red",
    "qa": "magenta",
    "completed": "green",
}


def render_plan(feature: Feature, plans: list[PhasePlan]) -> str:
    console = Console(record=True, width=100, file=io.StringIO())
    console.print(f"\n[bold]Execution plan for {escape(feature.title or feature.id)}[/bold]")
    console.print(f"Phases: {len(plans)}")
    console.print(f"Estimated minutes: {sum(p.estimated_minutes for p in plans)}")
    console.print()
    for plan in plans:
        marker = "[green]ready[/green]" if plan.can_execute else "[yellow]waits on same-phase work[/yellow]"
        console.print(f"[bold cyan]Phase {plan.phase}:[/bold cyan] {len(plan.tasks)} task(s), ~{plan.estimated_minutes} min, {marker}")
        for task in plan.tasks:
            deps = f" [dim](depends on: {', '.join(task.depends_on)})[/dim]" if task.depends_on else ""
            console.print(f"  • {task.id} {escape(f'[{task.agent}]')} {escape(task.title)}{deps}")
        console.print()
    return console.export_text()


def render_tasks(tasks: list[Task]) -> str:
    console = Console(record=True, width=120, file=io.StringIO())
    table = Table(title="Tasks", show_header=True)
    table.add_column("Phase", justify="right")
    table.add_column("Task ID", style="cyan")
    table.add_column("Title")
    table.add_column("Agent")
    table.add_column("Status", style="bold")
    table.add_column("Depends on", style="dim")
    for task in sorted(tasks, key=lambda t: (t.phase, t.id)):
        style = _STATUS_STYLE.get(task.status, "")
        table.add_row(
            str(task.phase),
            task.id,
            escape(task.title[:40]),
            task.agent,
            f"[{style}]{task.status}[/{style}]" if style else task.status,
            ", ".join(task.depends_on),
        )
    console.print(table)
    return console.export_text()


def render_summary(summary: PhaseRunSummary) -> str:
    console = Console(record=True, width=100, file=io.StringIO())
    console.print(f"[bold]Phase {summary.phase} of {summary.feature_id}[/bold]")
    for label in ("started", "already_running", "blocked", "completed", "in_qa", "failed_to_start"):
        ids = getattr(summary, label)
        if ids:
            console.print(f"  {label.replace('_', ' ')}: {', '.join(ids)}")
    console.print(f"  complete: {'yes' if summary.is_complete else 'no'}")
    if summary.has_blocked:
        console.print("  [yellow]blocked tasks remain in this phase[/yellow]")
    return console.export_text()
