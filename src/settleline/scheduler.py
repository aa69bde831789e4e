"""Dependency propagation on the multi-day clock, with working-hours clamping."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, replace

import networkx as nx

from settleline.exceptions import (
    CircularDependencyError,
    DuplicateTaskIdError,
    MissingReferenceError,
)
from settleline.models import DependencyType, Task, TaskKind, WorkingHours
from settleline.timeline import (
    format_position,
    format_time,
    from_absolute_minutes,
    parse_time,
    to_absolute_minutes,
)

logger = logging.getLogger(__name__)


def absolute_start(task: Task) -> int:
    return to_absolute_minutes(task.day_offset, task.start_time)


def absolute_end(task: Task) -> int:
    return absolute_start(task) + task.duration


def _index_by_id(tasks: list[Task]) -> dict[str, int]:
    """Map task id to list position; the first occurrence wins."""
    positions: dict[str, int] = {}
    for i, t in enumerate(tasks):
        positions.setdefault(t.id, i)
    return positions


# ---------------------------------------------------------------------------
# Working hours
# ---------------------------------------------------------------------------


def clamp_to_working_hours(
    day_offset: int,
    start_time: str,
    duration: int,
    window: WorkingHours | None,
) -> tuple[int, str]:
    """Move a candidate start into the office window.

    - before the window opens: snap to the opening time, same day
    - at or after closing: snap to the opening time of the next day
    - would run past closing: defer the whole task to the next opening

    A task that starts exactly at opening time is never deferred, even when
    it is longer than the window, since the next day would not fit it either.
    ``window=None`` disables clamping.
    """
    if window is None:
        return day_offset, start_time

    start = parse_time(start_time)
    opening = window.start_minutes
    closing = window.end_minutes

    if start < opening:
        return day_offset, format_time(opening)
    if start >= closing:
        return day_offset + 1, format_time(opening)
    if start + duration > closing and start != opening:
        return day_offset + 1, format_time(opening)
    return day_offset, start_time


# ---------------------------------------------------------------------------
# Dependency graph
# ---------------------------------------------------------------------------


def build_children_index(tasks: list[Task]) -> dict[str, list[int]]:
    """Map each parent id to the list positions of the tasks depending on it."""
    index: dict[str, list[int]] = {}
    for i, task in enumerate(tasks):
        if task.depends_on:
            index.setdefault(task.depends_on, []).append(i)
    return index


def build_dag(tasks: list[Task]) -> nx.DiGraph:
    """Construct the dependency graph. Dangling parent references are skipped."""
    G = nx.DiGraph()
    for task in tasks:
        G.add_node(task.id, task=task)
    for task in tasks:
        if task.depends_on and task.depends_on in G:
            G.add_edge(task.depends_on, task.id)
    return G


def validate_dependencies(tasks: list[Task]) -> None:
    """Raise if ids repeat, a parent is missing, or the parents form a cycle."""
    seen: set[str] = set()
    for task in tasks:
        if task.id in seen:
            raise DuplicateTaskIdError(f"Duplicate task id {task.id}")
        seen.add(task.id)

    for task in tasks:
        if task.depends_on and task.depends_on not in seen:
            raise MissingReferenceError(
                f"Task {task.id} depends on non-existent task {task.depends_on}"
            )

    G = build_dag(tasks)
    if not nx.is_directed_acyclic_graph(G):
        cycle = [u for u, _ in nx.find_cycle(G)]
        raise CircularDependencyError(
            "Circular dependency detected: " + " -> ".join(cycle + [cycle[0]])
        )


def downstream_tasks(task_id: str, tasks: list[Task]) -> list[str]:
    """Ids of every task transitively depending on *task_id*, in list order."""
    G = build_dag(tasks)
    if task_id not in G:
        return []
    below = nx.descendants(G, task_id)
    return [t.id for t in tasks if t.id in below]


@dataclass
class PrecedenceViolation:
    """A timed child that starts before its parent's end plus lag."""

    task_id: str
    parent_id: str
    required_start: int
    actual_start: int

    @property
    def shortfall(self) -> int:
        return self.required_start - self.actual_start


def precedence_violations(tasks: list[Task]) -> list[PrecedenceViolation]:
    """List timed children whose start precedes ``parent end + lag``."""
    positions = _index_by_id(tasks)
    violations: list[PrecedenceViolation] = []
    for task in tasks:
        if not task.depends_on or task.dependency_type == DependencyType.NO_RELATION:
            continue
        if task.depends_on not in positions or task.depends_on == task.id:
            continue
        parent = tasks[positions[task.depends_on]]
        required = absolute_end(parent) + task.required_lag
        actual = absolute_start(task)
        if actual < required:
            violations.append(
                PrecedenceViolation(
                    task_id=task.id,
                    parent_id=parent.id,
                    required_start=required,
                    actual_start=actual,
                )
            )
    return violations


# ---------------------------------------------------------------------------
# Propagation
# ---------------------------------------------------------------------------


def propagate(
    changed_task_id: str,
    tasks: list[Task],
    window: WorkingHours | None = None,
) -> list[Task]:
    """Reposition every task that transitively depends on *changed_task_id*.

    Breadth-first from the changed task.  Each task is processed as a parent
    at most once, which bounds the walk even on cyclic input; a child that
    was already processed in this call is left where it is.  Children are
    placed at ``parent end + lag``, clamped into *window* when they require
    working hours.  Children already in place stop the cascade.

    Returns a new list; the input list and its tasks are not modified.
    """
    result = list(tasks)
    positions = _index_by_id(result)
    if changed_task_id not in positions:
        logger.debug("propagate: task %s not found", changed_task_id)
        return result

    children = build_children_index(result)
    queue: deque[str] = deque([changed_task_id])
    visited: set[str] = set()

    while queue:
        parent_id = queue.popleft()
        if parent_id in visited:
            continue
        visited.add(parent_id)

        parent = result[positions[parent_id]]
        parent_end = absolute_end(parent)

        for child_idx in children.get(parent_id, []):
            child = result[child_idx]
            if child.dependency_type == DependencyType.NO_RELATION:
                continue
            if child.id in visited:
                logger.debug("propagate: %s -> %s closes a cycle, left in place", parent_id, child.id)
                continue

            target = parent_end + child.required_lag
            current = absolute_start(child)
            if current == target:
                continue

            day_offset, start_time = from_absolute_minutes(target)
            if child.requires_working_hours:
                day_offset, start_time = clamp_to_working_hours(
                    day_offset, start_time, child.duration, window
                )
            if to_absolute_minutes(day_offset, start_time) == current:
                continue

            result[child_idx] = replace(child, day_offset=day_offset, start_time=start_time)
            logger.info(
                "%s: %s -> %s (after %s)",
                child.id,
                format_position(child.day_offset, child.start_time),
                format_position(day_offset, start_time),
                parent_id,
            )
            queue.append(child.id)

    return result


# ---------------------------------------------------------------------------
# Editing operators
# ---------------------------------------------------------------------------


def _resolved_parent(task: Task, tasks: list[Task], positions: dict[str, int]) -> Task | None:
    """The parent *task* depends on, if it resolves to another task in the list."""
    if not task.depends_on:
        return None
    if task.depends_on == task.id or task.depends_on not in positions:
        return None
    return tasks[positions[task.depends_on]]


def move_task(
    task_id: str,
    new_day_offset: int,
    new_start_time: str,
    tasks: list[Task],
    window: WorkingHours | None = None,
) -> list[Task]:
    """Place a task at a requested position and cascade to its descendants.

    A request that would start the task before its parent ends is replaced
    by the parent's end, and the dependency becomes ``IMMEDIATE`` with no
    delay.  Otherwise the request is kept and the dependency delay is derived
    from the gap to the parent's end.
    """
    result = list(tasks)
    positions = _index_by_id(result)
    idx = positions.get(task_id)
    if idx is None:
        logger.debug("move_task: task %s not found", task_id)
        return result

    task = result[idx]
    requested = to_absolute_minutes(new_day_offset, new_start_time)
    parent = _resolved_parent(task, result, positions)

    if parent is not None:
        parent_end = absolute_end(parent)
        if requested < parent_end:
            day_offset, start_time = from_absolute_minutes(parent_end)
            logger.info(
                "move_task: %s cannot start before %s ends, snapped to %s",
                task_id,
                parent.id,
                format_position(day_offset, start_time),
            )
            task = replace(
                task,
                day_offset=day_offset,
                start_time=start_time,
                dependency_type=DependencyType.IMMEDIATE,
                dependency_delay=0,
            )
        else:
            delay = requested - parent_end
            day_offset, start_time = from_absolute_minutes(requested)
            task = replace(
                task,
                day_offset=day_offset,
                start_time=start_time,
                dependency_type=DependencyType.TIME_LAG if delay > 0 else DependencyType.IMMEDIATE,
                dependency_delay=delay,
            )
    else:
        day_offset, start_time = from_absolute_minutes(requested)
        task = replace(task, day_offset=day_offset, start_time=start_time)

    if task.requires_working_hours:
        day_offset, start_time = clamp_to_working_hours(
            task.day_offset, task.start_time, task.duration, window
        )
        task = replace(task, day_offset=day_offset, start_time=start_time)

    result[idx] = task
    logger.info("%s: moved to %s", task_id, format_position(task.day_offset, task.start_time))
    return propagate(task_id, result, window)


def resize_task_duration(
    task_id: str,
    new_duration: int,
    tasks: list[Task],
    window: WorkingHours | None = None,
) -> list[Task]:
    """Change a task's duration; its start stays, its descendants follow its end."""
    result = list(tasks)
    idx = _index_by_id(result).get(task_id)
    if idx is None:
        logger.debug("resize_task_duration: task %s not found", task_id)
        return result

    result[idx] = replace(result[idx], duration=new_duration)
    logger.info("%s: duration set to %d min", task_id, new_duration)
    return propagate(task_id, result, window)


def set_dependency(
    task_id: str,
    parent_id: str | None,
    tasks: list[Task],
    window: WorkingHours | None = None,
    dependency_type: DependencyType = DependencyType.IMMEDIATE,
    dependency_delay: int = 0,
) -> list[Task]:
    """Attach a task to a parent (or detach it with ``parent_id=None``).

    Detaching resets the relation to ``IMMEDIATE`` without moving the task.
    Attaching re-propagates from the parent so the task takes its place.
    Unknown ids and self-dependencies leave the list unchanged.
    """
    result = list(tasks)
    positions = _index_by_id(result)
    idx = positions.get(task_id)
    if idx is None:
        logger.debug("set_dependency: task %s not found", task_id)
        return result

    if parent_id is None:
        result[idx] = replace(
            result[idx],
            depends_on=None,
            dependency_type=DependencyType.IMMEDIATE,
            dependency_delay=0,
        )
        return result

    if parent_id == task_id or parent_id not in positions:
        logger.debug("set_dependency: invalid parent %s for %s", parent_id, task_id)
        return result

    result[idx] = replace(
        result[idx],
        depends_on=parent_id,
        dependency_type=dependency_type,
        dependency_delay=dependency_delay,
    )
    return propagate(parent_id, result, window)


def change_task_kind(
    task_id: str,
    kind: TaskKind,
    tasks: list[Task],
    window: WorkingHours | None = None,
) -> list[Task]:
    """Switch between process and cutoff; a cutoff is an instant (duration 0)."""
    result = list(tasks)
    idx = _index_by_id(result).get(task_id)
    if idx is None:
        return result

    task = result[idx]
    new_duration = 0 if kind == TaskKind.CUTOFF else task.duration
    result[idx] = replace(task, kind=kind, duration=new_duration)
    if new_duration != task.duration:
        return propagate(task_id, result, window)
    return result


def remove_task(task_id: str, tasks: list[Task]) -> list[Task]:
    """Drop a task, detach its children and renumber the sequence order."""
    if task_id not in _index_by_id(tasks):
        return list(tasks)

    result: list[Task] = []
    for task in tasks:
        if task.id == task_id:
            continue
        if task.depends_on == task_id:
            task = replace(
                task,
                depends_on=None,
                dependency_type=DependencyType.IMMEDIATE,
                dependency_delay=0,
            )
        result.append(replace(task, sequence_order=len(result)))
    return result
