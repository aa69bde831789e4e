"""MCP server for settleline: exposes timeline editing tools to AI assistants."""

from __future__ import annotations

import json

from mcp.server.fastmcp import FastMCP

from settleline import scheduler
from settleline.exceptions import SnapshotError, ValidationError
from settleline.metrics import compare_timelines, idle_gaps
from settleline.models import (
    DependencyType,
    SimulationConfig,
    Task,
    TaskKind,
    TimelineMode,
    WorkingHours,
)
from settleline.persistence import Store
from settleline.timeline import format_position, format_time, from_absolute_minutes, is_valid_time, parse_time

mcp = FastMCP(
    "settleline",
    instructions="""\
settleline models a fund's operational day as two timelines of tasks: the \
"current" process and a "target" redesign. Each task sits at a day offset \
relative to settlement day D (0 = D, -1 = the day before) and a start time \
(HH:MM), and lasts a number of minutes (0 for a cutoff).

Key concepts:
- **Dependencies**: a task may depend on one parent. IMMEDIATE starts it when \
the parent ends; TIME_LAG starts it a fixed number of minutes later (may be \
negative); NO_RELATION records the link without timing it.
- **Propagation**: moving or resizing a task shifts every task below it. \
Moving a task before its parent ends snaps it to the parent's end.
- **Office hours**: tasks flagged as requiring working hours are pushed into \
the simulation's office window, deferring to the next morning when they \
would not finish before closing.

Every tool takes an optional timeline ("current" or "target"); omitted means \
the active one. Use compare to summarise the time saved by the target.\
""",
)


def _get_store() -> Store:
    return Store()


def _load(timeline: str | None):
    store = _get_store()
    config, timelines = store.load()
    if not timeline:
        return store, config, timelines, config.mode if config else TimelineMode.CURRENT
    try:
        tl = TimelineMode(timeline.lower())
    except ValueError:
        raise ValueError(f"unknown timeline {timeline!r} (use current or target)") from None
    return store, config, timelines, tl


def _window(config: SimulationConfig | None) -> WorkingHours | None:
    return config.working_hours if config is not None else None


def _task_to_dict(t: Task) -> dict:
    """Convert a task to a JSON-friendly dict with computed positions."""
    d = t.to_dict()
    d["starts"] = format_position(t.day_offset, t.start_time)
    d["ends"] = format_position(*from_absolute_minutes(scheduler.absolute_end(t)))
    return d


def _find(tasks: list[Task], task_id: str) -> Task | None:
    return next((t for t in tasks if t.id == task_id), None)


def _moved(before: list[Task], after: list[Task]) -> list[dict]:
    old = {t.id: t for t in before}
    return [
        {
            "id": t.id,
            "from": format_position(old[t.id].day_offset, old[t.id].start_time),
            "to": format_position(t.day_offset, t.start_time),
        }
        for t in after
        if t.id in old and (t.day_offset, t.start_time) != (old[t.id].day_offset, old[t.id].start_time)
    ]


# ---------------------------------------------------------------------------
# Write tools
# ---------------------------------------------------------------------------


@mcp.tool()
def add_task(
    name: str,
    duration: int = 0,
    day_offset: int = 0,
    start_time: str = "09:00",
    cutoff: bool = False,
    depends_on: str | None = None,
    dependency_type: str = "IMMEDIATE",
    dependency_delay: int = 0,
    requires_working_hours: bool = False,
    timeline: str | None = None,
) -> str:
    """Add a task to a timeline.

    Args:
        name: Task name
        duration: Duration in minutes (ignored for cutoffs)
        day_offset: Day relative to settlement day D
        start_time: Start time (HH:MM, 24-hour)
        cutoff: True for a point-in-time cutoff
        depends_on: Parent task ID (e.g. "T-2")
        dependency_type: IMMEDIATE, TIME_LAG or NO_RELATION
        dependency_delay: Lag in minutes for TIME_LAG
        requires_working_hours: True if the task must start within office hours
        timeline: "current" or "target" (default: active)
    """
    try:
        store, config, timelines, tl = _load(timeline)
    except (SnapshotError, ValueError) as e:
        return f"Error: {e}"
    tasks = timelines[tl]
    if not is_valid_time(start_time):
        return f"Error: invalid start time {start_time!r} (expected HH:MM)."
    if duration < 0:
        return "Error: duration must be non-negative."
    if depends_on is not None and _find(tasks, depends_on) is None:
        return f"Error: dependency {depends_on} not found."
    try:
        dep_type = DependencyType(dependency_type.upper())
    except ValueError:
        return f"Error: invalid dependency_type {dependency_type!r}."

    tid = store.generate_id(tasks)
    tasks.append(
        Task(
            id=tid,
            name=name,
            day_offset=day_offset,
            start_time=format_time(parse_time(start_time)),
            duration=0 if cutoff else duration,
            kind=TaskKind.CUTOFF if cutoff else TaskKind.PROCESS,
            requires_working_hours=requires_working_hours,
            sequence_order=len(tasks),
        )
    )
    if depends_on is not None:
        tasks = scheduler.set_dependency(
            tid, depends_on, tasks, _window(config),
            dependency_type=dep_type, dependency_delay=dependency_delay,
        )
    timelines[tl] = tasks
    store.save(config, timelines)
    return f"Added '{name}' as {tid} ({tl.value})"


@mcp.tool()
def move_task(task_id: str, day_offset: int, start_time: str, timeline: str | None = None) -> str:
    """Move a task; everything depending on it follows.

    Args:
        task_id: Task to move
        day_offset: New day relative to D
        start_time: New start time (HH:MM)
        timeline: "current" or "target" (default: active)
    """
    try:
        store, config, timelines, tl = _load(timeline)
    except (SnapshotError, ValueError) as e:
        return f"Error: {e}"
    before = timelines[tl]
    if _find(before, task_id) is None:
        return f"Error: task {task_id} not found."
    if not is_valid_time(start_time):
        return f"Error: invalid start time {start_time!r} (expected HH:MM)."

    timelines[tl] = scheduler.move_task(task_id, day_offset, start_time, before, _window(config))
    store.save(config, timelines)
    return json.dumps({"task": _task_to_dict(_find(timelines[tl], task_id)), "moved": _moved(before, timelines[tl])}, indent=2)


@mcp.tool()
def resize_task(task_id: str, duration: int, timeline: str | None = None) -> str:
    """Change a task's duration in minutes; dependents follow its new end."""
    try:
        store, config, timelines, tl = _load(timeline)
    except (SnapshotError, ValueError) as e:
        return f"Error: {e}"
    before = timelines[tl]
    if _find(before, task_id) is None:
        return f"Error: task {task_id} not found."
    if duration < 0:
        return "Error: duration must be non-negative."

    timelines[tl] = scheduler.resize_task_duration(task_id, duration, before, _window(config))
    store.save(config, timelines)
    return json.dumps({"task": _task_to_dict(_find(timelines[tl], task_id)), "moved": _moved(before, timelines[tl])}, indent=2)


@mcp.tool()
def set_dependency(
    task_id: str,
    parent_id: str | None = None,
    dependency_type: str = "IMMEDIATE",
    dependency_delay: int = 0,
    timeline: str | None = None,
) -> str:
    """Set (or with parent_id omitted, clear) the parent of a task.

    Args:
        task_id: The dependent task
        parent_id: The task it depends on; None removes the dependency
        dependency_type: IMMEDIATE, TIME_LAG or NO_RELATION
        dependency_delay: Lag in minutes for TIME_LAG
        timeline: "current" or "target" (default: active)
    """
    try:
        store, config, timelines, tl = _load(timeline)
    except (SnapshotError, ValueError) as e:
        return f"Error: {e}"
    before = timelines[tl]
    if _find(before, task_id) is None:
        return f"Error: task {task_id} not found."
    if parent_id is not None:
        if _find(before, parent_id) is None:
            return f"Error: task {parent_id} not found."
        if parent_id == task_id:
            return "Error: a task cannot depend on itself."
    try:
        dep_type = DependencyType(dependency_type.upper())
    except ValueError:
        return f"Error: invalid dependency_type {dependency_type!r}."

    updated = scheduler.set_dependency(
        task_id, parent_id, before, _window(config),
        dependency_type=dep_type, dependency_delay=dependency_delay,
    )
    try:
        scheduler.validate_dependencies(updated)
    except ValidationError as e:
        return f"Error: {e}"

    timelines[tl] = updated
    store.save(config, timelines)
    return json.dumps({"task": _task_to_dict(_find(updated, task_id)), "moved": _moved(before, updated)}, indent=2)


@mcp.tool()
def remove_task(task_id: str, timeline: str | None = None) -> str:
    """Delete a task. Tasks depending on it lose their parent."""
    try:
        store, config, timelines, tl = _load(timeline)
    except (SnapshotError, ValueError) as e:
        return f"Error: {e}"
    if _find(timelines[tl], task_id) is None:
        return f"Error: task {task_id} not found."
    timelines[tl] = scheduler.remove_task(task_id, timelines[tl])
    store.save(config, timelines)
    return f"Deleted {task_id}."


@mcp.tool()
def propagate(task_id: str, timeline: str | None = None) -> str:
    """Re-apply dependency timing to everything below a task."""
    try:
        store, config, timelines, tl = _load(timeline)
    except (SnapshotError, ValueError) as e:
        return f"Error: {e}"
    before = timelines[tl]
    if _find(before, task_id) is None:
        return f"Error: task {task_id} not found."
    timelines[tl] = scheduler.propagate(task_id, before, _window(config))
    store.save(config, timelines)
    return json.dumps({"moved": _moved(before, timelines[tl])}, indent=2)


# ---------------------------------------------------------------------------
# Read tools
# ---------------------------------------------------------------------------


@mcp.tool()
def get_task(task_id: str, timeline: str | None = None) -> str:
    """Get full details for a single task, including what depends on it."""
    try:
        _, _, timelines, tl = _load(timeline)
    except (SnapshotError, ValueError) as e:
        return f"Error: {e}"
    tasks = timelines[tl]
    task = _find(tasks, task_id)
    if task is None:
        return f"Error: task {task_id} not found."
    d = _task_to_dict(task)
    d["downstream"] = scheduler.downstream_tasks(task_id, tasks)
    return json.dumps(d, indent=2)


@mcp.tool()
def list_tasks(timeline: str | None = None, search: str | None = None) -> str:
    """List the tasks of a timeline in sequence order.

    Args:
        timeline: "current" or "target" (default: active)
        search: Case-insensitive substring filter on name or ID
    """
    try:
        _, _, timelines, tl = _load(timeline)
    except (SnapshotError, ValueError) as e:
        return f"Error: {e}"
    tasks = sorted(timelines[tl], key=lambda t: t.sequence_order)
    if search:
        q = search.lower()
        tasks = [t for t in tasks if q in t.name.lower() or q in t.id.lower()]
    return json.dumps({"timeline": tl.value, "tasks": [_task_to_dict(t) for t in tasks]}, indent=2)


@mcp.tool()
def compare() -> str:
    """Compare the span and idle time of the current and target timelines."""
    try:
        _, _, timelines, _ = _load(None)
    except (SnapshotError, ValueError) as e:
        return f"Error: {e}"
    result = compare_timelines(timelines[TimelineMode.CURRENT], timelines[TimelineMode.TARGET])
    d = result.to_dict()
    d["current_gaps"] = len(idle_gaps(timelines[TimelineMode.CURRENT]))
    d["target_gaps"] = len(idle_gaps(timelines[TimelineMode.TARGET]))
    return json.dumps(d, indent=2)


def main():
    """Entry point for the MCP server."""
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
