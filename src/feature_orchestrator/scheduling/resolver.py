"""Decide which tasks of a phase can start, based on their dependencies."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable, Optional

from ..constants import DEFAULT_TASK_ESTIMATE_MINUTES
from ..domain.models import PhasePlan, PlannedTask, Task
from ..errors import ConfigurationError


STARTABLE_STATUSES = {"pending", "blocked"}


@dataclass
class Eligibility:
    ready: list[Task] = field(default_factory=list)
    blocked: list[Task] = field(default_factory=list)

    @property
    def ready_ids(self) -> list[str]:
        return [t.id for t in self.ready]

    @property
    def blocked_ids(self) -> list[str]:
        return [t.id for t in self.blocked]


def find_cycle(tasks: Iterable[Task]) -> Optional[list[str]]:
    """Detect a dependency cycle.

    Args:
        tasks: Tasks of one feature.

    Returns:
        The cycle as a list of task ids (first id repeated at the end), or None.
    """
    graph: dict[str, list[str]] = {t.id: list(t.depends_on) for t in tasks}
    # 0 = unvisited, 1 = on the current path, 2 = done
    state: dict[str, int] = {node: 0 for node in graph}

    for root in graph:
        if state[root]:
            continue
        path: list[str] = [root]
        iters = [iter(graph[root])]
        state[root] = 1
        while iters:
            dep = next(iters[-1], None)
            if dep is None:
                state[path.pop()] = 2
                iters.pop()
                continue
            if dep not in state:
                continue
            if state[dep] == 1:
                return path[path.index(dep):] + [dep]
            if state[dep] == 0:
                state[dep] = 1
                path.append(dep)
                iters.append(iter(graph[dep]))
    return None


def validate_dependencies(tasks: Iterable[Task]) -> None:
    """Reject unknown dependency ids, duplicate task ids and cycles.

    Raises:
        ConfigurationError: On the first structural problem found.
    """
    tasks = list(tasks)
    ids: set[str] = set()
    for task in tasks:
        if task.id in ids:
            raise ConfigurationError(f"Duplicate task id: {task.id}")
        ids.add(task.id)
    for task in tasks:
        for dep in task.depends_on:
            if dep == task.id:
                raise ConfigurationError(f"Task {task.id} depends on itself")
            if dep not in ids:
                raise ConfigurationError(f"Task {task.id} depends on unknown task {dep}")
    cycle = find_cycle(tasks)
    if cycle:
        raise ConfigurationError(f"Dependency cycle detected: {' -> '.join(cycle)}")


def eligible(phase: int, tasks: Iterable[Task]) -> Eligibility:
    """Split the startable tasks of `phase` into ready and blocked.

    A task is ready iff it is pending or blocked and every dependency, in any
    phase of the same feature, is completed. Tasks in other statuses are in
    neither list.

    Args:
        phase: Phase number to evaluate.
        tasks: Every task of the feature, so cross-phase dependencies resolve.

    Returns:
        An `Eligibility` with the ready and blocked tasks, in input order.

    Raises:
        ConfigurationError: If a dependency id is unknown or the graph has a cycle.
    """
    tasks = list(tasks)
    validate_dependencies(tasks)
    by_id = {t.id: t for t in tasks}
    result = Eligibility()
    for task in tasks:
        if task.phase != phase or task.status not in STARTABLE_STATUSES:
            continue
        if all(by_id[dep].status == "completed" for dep in task.depends_on):
            result.ready.append(task)
        else:
            result.blocked.append(task)
    return result


def unmet_dependencies(task: Task, tasks: Iterable[Task]) -> list[str]:
    by_id = {t.id: t for t in tasks}
    return [dep for dep in task.depends_on if dep not in by_id or by_id[dep].status != "completed"]


def group_by_phase(tasks: Iterable[Task]) -> dict[int, list[Task]]:
    grouped: dict[int, list[Task]] = defaultdict(list)
    for task in tasks:
        grouped[task.phase].append(task)
    return dict(sorted(grouped.items()))


def reverse_dependencies(tasks: Iterable[Task]) -> dict[str, list[str]]:
    """Map each task id to the ids of the tasks that depend on it."""
    tasks = list(tasks)
    blocks: dict[str, list[str]] = {t.id: [] for t in tasks}
    for task in tasks:
        for dep in task.depends_on:
            if dep in blocks and task.id not in blocks[dep]:
                blocks[dep].append(task.id)
    return blocks


def plan_phases(tasks: Iterable[Task], default_estimate: int = DEFAULT_TASK_ESTIMATE_MINUTES) -> list[PhasePlan]:
    """Build a dry-run execution plan.

    A task can execute when each dependency is already completed or belongs to
    an earlier phase (assumed to finish first). A phase is estimated at its
    slowest task since its tasks run in parallel.
    """
    tasks = list(tasks)
    validate_dependencies(tasks)
    by_id = {t.id: t for t in tasks}
    plans: list[PhasePlan] = []
    for phase, phase_tasks in group_by_phase(tasks).items():
        plan = PhasePlan(phase=phase)
        for task in phase_tasks:
            can_execute = all(
                by_id[dep].status == "completed" or by_id[dep].phase < phase for dep in task.depends_on
            )
            estimate = task.estimated_minutes or default_estimate
            plan.tasks.append(
                PlannedTask(
                    id=task.id,
                    title=task.title,
                    agent=task.agent,
                    status=task.status,
                    depends_on=list(task.depends_on),
                    can_execute=can_execute,
                    estimated_minutes=estimate,
                )
            )
            plan.estimated_minutes = max(plan.estimated_minutes, estimate)
        plans.append(plan)
    return plans
