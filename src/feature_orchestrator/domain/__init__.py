from .models import (
    Feature,
    OutputEvent,
    PhasePlan,
    PhaseRunSummary,
    PhaseSpec,
    PlannedTask,
    ProgressEntry,
    QAItem,
    SessionOwner,
    Task,
    WorkerSession,
    now_iso,
)

__all__ = [
    "Feature",
    "OutputEvent",
    "PhasePlan",
    "PhaseRunSummary",
    "PhaseSpec",
    "PlannedTask",
    "ProgressEntry",
    "QAItem",
    "SessionOwner",
    "Task",
    "WorkerSession",
    "now_iso",
]
