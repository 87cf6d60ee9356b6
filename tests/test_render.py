from __future__ import annotations

from feature_orchestrator.domain.models import Feature, PhaseRunSummary, Task
from feature_orchestrator.render import render_plan, render_summary, render_tasks
from feature_orchestrator.scheduling.resolver import plan_phases


def _tasks() -> list[Task]:
    return [
        Task(id="db", feature_id="f1", title="Draft table", agent="backend", status="completed"),
        Task(id="ui", feature_id="f1", title="Checkout [beta] page", phase=2, agent="frontend", depends_on=["db"]),
    ]


def test_render_plan_keeps_bracketed_text() -> None:
    text = render_plan(Feature(id="f1", title="Checkout"), plan_phases(_tasks()))

    assert "Execution plan for Checkout" in text
    assert "ui [frontend] Checkout [beta] page" in text
    assert "(depends on: db)" in text


def test_render_tasks_table() -> None:
    text = render_tasks(_tasks())

    assert "Draft table" in text
    assert "completed" in text
    assert "pending" in text


def test_render_summary() -> None:
    summary = PhaseRunSummary(feature_id="f1", phase=1, completed=["db"])

    text = render_summary(summary)

    assert "completed: db" in text
    assert "complete: yes" in text


def test_render_summary_flags_blocked_tasks() -> None:
    summary = PhaseRunSummary(feature_id="f1", phase=2, blocked=["ui"])

    text = render_summary(summary)

    assert "blocked: ui" in text
    assert "complete: yes" in text
    assert "blocked tasks remain in this phase" in text
