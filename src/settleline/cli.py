"""Typer CLI for settleline."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table

from settleline.exceptions import SnapshotError, ValidationError
from settleline.logger import setup_logger
from settleline.metrics import compare_timelines, idle_gaps, timeline_bounds
from settleline.models import (
    DependencyType,
    SimulationConfig,
    Task,
    TaskKind,
    TimelineMode,
    WorkingHours,
)
from settleline.persistence import Store, load_template
from settleline.scheduler import (
    absolute_end,
    absolute_start,
    build_dag,
    change_task_kind,
    downstream_tasks,
    move_task,
    precedence_violations,
    propagate,
    remove_task,
    resize_task_duration,
    set_dependency,
    validate_dependencies,
)
from settleline.timeline import format_position, format_time, from_absolute_minutes, is_valid_time, parse_time

app = typer.Typer(
    name="settleline",
    help="Task timing and dependency propagation for fund operational timelines.",
    no_args_is_help=True,
)
console = Console()

ListOption = Annotated[
    Optional[str],
    typer.Option("--list", "-l", help="Timeline to edit: current or target (default: active mode)"),
]


def _get_store() -> Store:
    return Store()


def _complete_task_id(incomplete: str) -> list[str]:
    """Shell completion for task IDs. Matches against both ID and name."""
    try:
        _, timelines = Store().load()
    except SnapshotError:
        return []

    results: list[str] = []
    q = incomplete.lower()
    for tasks in timelines.values():
        for task in tasks:
            if q in task.id.lower() or q in task.name.lower():
                # Name first so shell prefix matching works: "NAV cutoff (T-3)"
                results.append(f"{task.name} ({task.id})")
    return results


def _parse_task_id(task_id_arg: str) -> str:
    """Extract the ID if the user used the autocompleted 'Name (ID)' format."""
    if "(" in task_id_arg and task_id_arg.endswith(")"):
        return task_id_arg.split("(")[-1].strip(")")
    return task_id_arg.strip()


def _load() -> tuple[Store, SimulationConfig | None, dict[TimelineMode, list[Task]]]:
    store = _get_store()
    try:
        config, timelines = store.load()
    except SnapshotError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)
    return store, config, timelines


def _resolve_mode(config: SimulationConfig | None, list_opt: str | None) -> TimelineMode:
    if list_opt is not None:
        try:
            return TimelineMode(list_opt.lower())
        except ValueError:
            console.print(f"[red]Invalid list '{list_opt}'. Use: current, target[/red]")
            raise typer.Exit(1)
    return config.mode if config is not None else TimelineMode.CURRENT


def _window(config: SimulationConfig | None) -> WorkingHours | None:
    return config.working_hours if config is not None else None


def _require_task(tasks: list[Task], task_id: str) -> Task:
    for task in tasks:
        if task.id == task_id:
            return task
    console.print(f"[red]Task {task_id} not found.[/red]")
    raise typer.Exit(1)


def _require_time(value: str) -> str:
    if not is_valid_time(value):
        console.print(f"[red]Invalid time '{value}'. Use HH:MM (24-hour).[/red]")
        raise typer.Exit(1)
    return format_time(parse_time(value))


def _end_label(task: Task) -> str:
    return format_position(*from_absolute_minutes(absolute_end(task)))


def _relation_label(task: Task) -> str:
    if not task.depends_on:
        return "-"
    if task.dependency_type == DependencyType.TIME_LAG:
        return f"lag {task.dependency_delay:+d}m"
    if task.dependency_type == DependencyType.NO_RELATION:
        return "none"
    return "immediate"


def _report_moves(before: list[Task], after: list[Task]) -> None:
    """Print the tasks whose position changed."""
    old = {t.id: t for t in before}
    moved = [
        t for t in after
        if t.id in old and (t.day_offset, t.start_time) != (old[t.id].day_offset, old[t.id].start_time)
    ]
    for t in moved:
        o = old[t.id]
        console.print(
            f"  {t.id} {t.name}: {format_position(o.day_offset, o.start_time)}"
            f" -> [bold]{format_position(t.day_offset, t.start_time)}[/bold]"
        )
    if not moved:
        console.print("[dim]  No positions changed.[/dim]")


@app.callback()
def main(
    verbose: Annotated[int, typer.Option("--verbose", "-v", count=True, help="Increase log verbosity (-v, -vv)")] = 0,
) -> None:
    setup_logger(verbose)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def init(
    name: Annotated[str, typer.Option(help="Simulation name")] = "Simulation",
    fund: Annotated[Optional[str], typer.Option(help="Fund the simulation belongs to")] = None,
    office_start: Annotated[str, typer.Option(help="Office hours start (HH:MM)")] = "09:00",
    office_end: Annotated[str, typer.Option(help="Office hours end (HH:MM)")] = "17:00",
) -> None:
    """Initialize (or reinitialize) the simulation settings."""
    store, _, timelines = _load()
    try:
        window = WorkingHours(start=_require_time(office_start), end=_require_time(office_end))
    except ValidationError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)
    config = SimulationConfig(name=name, fund=fund, working_hours=window)
    store.save(config, timelines)
    console.print(f"[green]Simulation '{name}' initialized. Office hours {window.start}-{window.end}[/green]")


@app.command()
def mode(mode_name: Annotated[str, typer.Argument(metavar="MODE", help="current or target")]) -> None:
    """Switch the active timeline."""
    store, config, timelines = _load()
    config = config or SimulationConfig()
    config.mode = _resolve_mode(config, mode_name)
    store.save(config, timelines)
    console.print(f"[green]Active timeline: {config.mode.value}[/green]")


@app.command()
def add(
    name: str,
    duration: Annotated[int, typer.Option("--duration", "-m", help="Duration in minutes")] = 0,
    day: Annotated[int, typer.Option("--day", "-d", help="Day offset relative to D")] = 0,
    start: Annotated[str, typer.Option("--start", "-s", help="Start time (HH:MM)")] = "09:00",
    cutoff: Annotated[bool, typer.Option("--cutoff", help="Point-in-time cutoff (duration 0)")] = False,
    depends: Annotated[Optional[str], typer.Option("--depends", help="Parent task ID")] = None,
    lag: Annotated[Optional[int], typer.Option(help="Minutes after the parent ends (may be negative)")] = None,
    no_relation: Annotated[bool, typer.Option("--no-relation", help="Record the parent without timing it")] = False,
    office_hours: Annotated[bool, typer.Option("--office-hours", help="Start must fall within office hours")] = False,
    short_name: Annotated[Optional[str], typer.Option("--short", help="Short label (max 3 chars)")] = None,
    cash: Annotated[bool, typer.Option("--cash", help="Cash confirmed")] = False,
    list_opt: ListOption = None,
) -> None:
    """Add a task to a timeline."""
    store, config, timelines = _load()
    tl = _resolve_mode(config, list_opt)
    tasks = timelines[tl]
    start = _require_time(start)

    if duration < 0:
        console.print("[red]Duration must be non-negative.[/red]")
        raise typer.Exit(1)
    if short_name is not None and len(short_name) > 3:
        console.print("[red]Short name must be at most 3 characters.[/red]")
        raise typer.Exit(1)
    if depends is not None:
        depends = _parse_task_id(depends)
        _require_task(tasks, depends)

    tid = store.generate_id(tasks)
    tasks.append(
        Task(
            id=tid,
            name=name,
            day_offset=day,
            start_time=start,
            duration=0 if cutoff else duration,
            kind=TaskKind.CUTOFF if cutoff else TaskKind.PROCESS,
            requires_working_hours=office_hours,
            sequence_order=len(tasks),
            short_name=short_name,
            is_cash_confirmed=cash,
        )
    )

    if depends is not None:
        if no_relation:
            dep_type = DependencyType.NO_RELATION
        elif lag:
            dep_type = DependencyType.TIME_LAG
        else:
            dep_type = DependencyType.IMMEDIATE
        tasks = set_dependency(
            tid, depends, tasks, _window(config),
            dependency_type=dep_type, dependency_delay=lag or 0,
        )

    timelines[tl] = tasks
    store.save(config, timelines)
    console.print(f"[green]Added '{name}' as {tid} ({tl.value})[/green]")


@app.command("list")
def list_tasks(
    search: Annotated[Optional[str], typer.Option("--search", "-q", help="Filter by name (case-insensitive substring match)")] = None,
    chrono: Annotated[bool, typer.Option("--chrono", help="Sort by start instead of sequence order")] = False,
    list_opt: ListOption = None,
) -> None:
    """List the tasks of a timeline."""
    _, config, timelines = _load()
    tl = _resolve_mode(config, list_opt)
    tasks = timelines[tl]
    if not tasks:
        console.print("No tasks found.")
        return

    filtered = list(tasks)
    if search:
        q = search.lower()
        filtered = [t for t in filtered if q in t.name.lower() or q in t.id.lower()]
    if not filtered:
        console.print("No tasks match the filter.")
        return

    if chrono:
        filtered.sort(key=absolute_start)
    else:
        filtered.sort(key=lambda t: t.sequence_order)

    late = {v.task_id for v in precedence_violations(tasks)}

    table = Table(title=f"Tasks ({tl.value})")
    table.add_column("#")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Kind")
    table.add_column("Start")
    table.add_column("End")
    table.add_column("Min")
    table.add_column("Depends On")
    table.add_column("Relation")
    table.add_column("Flags")

    for t in filtered:
        flags = []
        style = None
        if t.requires_working_hours:
            flags.append("OFFICE")
        if t.is_cash_confirmed:
            flags.append("CASH")
        if t.id in late:
            flags.append("BEFORE PARENT")
            style = "bold red"
        table.add_row(
            str(t.sequence_order),
            t.id,
            t.name,
            t.kind.value.lower(),
            format_position(t.day_offset, t.start_time),
            _end_label(t),
            str(t.duration),
            t.depends_on or "-",
            _relation_label(t),
            " | ".join(flags) or "-",
            style=style,
        )

    console.print(table)
    if search:
        console.print(f"[dim]Showing {len(filtered)} of {len(tasks)} tasks[/dim]")


@app.command()
def show(
    task_id: Annotated[str, typer.Argument(autocompletion=_complete_task_id)],
    list_opt: ListOption = None,
) -> None:
    """Show all details for a single task."""
    task_id = _parse_task_id(task_id)
    _, config, timelines = _load()
    tasks = timelines[_resolve_mode(config, list_opt)]
    t = _require_task(tasks, task_id)

    console.print(f"[bold]{t.id}[/bold]: {t.name}" + (f" [{t.short_name}]" if t.short_name else ""))
    console.print(f"  Kind:         {t.kind.value.lower()}")
    console.print(f"  Start:        {format_position(t.day_offset, t.start_time)}")
    console.print(f"  End:          {_end_label(t)}")
    console.print(f"  Duration:     {t.duration} min")
    console.print(f"  Office hours: {'required' if t.requires_working_hours else 'not required'}")
    if t.depends_on:
        console.print(f"  Depends on:   {t.depends_on} ({_relation_label(t)})")
    below = downstream_tasks(t.id, tasks)
    if below:
        console.print(f"  Downstream:   {', '.join(below)}")
    if t.is_cash_confirmed:
        console.print("  Cash confirmed")


@app.command()
def move(
    task_id: Annotated[str, typer.Argument(autocompletion=_complete_task_id)],
    start: Annotated[str, typer.Argument(help="New start time (HH:MM)")],
    day: Annotated[Optional[int], typer.Option("--day", "-d", help="New day offset (default: keep the current day)")] = None,
    list_opt: ListOption = None,
) -> None:
    """Move a task and cascade the change to everything depending on it."""
    task_id = _parse_task_id(task_id)
    store, config, timelines = _load()
    tl = _resolve_mode(config, list_opt)
    task = _require_task(timelines[tl], task_id)
    _require_time(start)
    if day is None:
        day = task.day_offset

    before = timelines[tl]
    timelines[tl] = move_task(task_id, day, start, before, _window(config))
    store.save(config, timelines)
    console.print(f"[green]Moved {task_id}.[/green]")
    _report_moves(before, timelines[tl])


@app.command()
def resize(
    task_id: Annotated[str, typer.Argument(autocompletion=_complete_task_id)],
    minutes: Annotated[int, typer.Argument(help="New duration in minutes")],
    list_opt: ListOption = None,
) -> None:
    """Change a task's duration and cascade to its dependents."""
    task_id = _parse_task_id(task_id)
    store, config, timelines = _load()
    tl = _resolve_mode(config, list_opt)
    task = _require_task(timelines[tl], task_id)
    if minutes < 0:
        console.print("[red]Duration must be non-negative.[/red]")
        raise typer.Exit(1)
    if task.kind == TaskKind.CUTOFF and minutes != 0:
        console.print(f"[yellow]{task_id} is a cutoff; giving it a duration.[/yellow]")

    before = timelines[tl]
    timelines[tl] = resize_task_duration(task_id, minutes, before, _window(config))
    store.save(config, timelines)
    console.print(f"[green]{task_id} now lasts {minutes} min.[/green]")
    _report_moves(before, timelines[tl])


@app.command()
def link(
    task_id: Annotated[str, typer.Argument(autocompletion=_complete_task_id)],
    parent: Annotated[Optional[str], typer.Argument(help="Parent task ID (omit with --none)")] = None,
    relation: Annotated[str, typer.Option("--type", "-t", help="immediate, time_lag or no_relation")] = "immediate",
    lag: Annotated[int, typer.Option(help="Lag in minutes for time_lag")] = 0,
    none: Annotated[bool, typer.Option("--none", help="Remove the parent")] = False,
    list_opt: ListOption = None,
) -> None:
    """Set or clear the parent a task depends on."""
    task_id = _parse_task_id(task_id)
    store, config, timelines = _load()
    tl = _resolve_mode(config, list_opt)
    tasks = timelines[tl]
    _require_task(tasks, task_id)

    if none:
        timelines[tl] = set_dependency(task_id, None, tasks, _window(config))
        store.save(config, timelines)
        console.print(f"[green]{task_id} no longer depends on anything.[/green]")
        return

    if parent is None:
        console.print("[red]Give a parent task ID or --none.[/red]")
        raise typer.Exit(1)
    parent = _parse_task_id(parent)
    _require_task(tasks, parent)
    if parent == task_id:
        console.print("[red]A task cannot depend on itself.[/red]")
        raise typer.Exit(1)
    try:
        dep_type = DependencyType(relation.upper())
    except ValueError:
        console.print(f"[red]Invalid type '{relation}'. Use: immediate, time_lag, no_relation[/red]")
        raise typer.Exit(1)

    updated = set_dependency(
        task_id, parent, tasks, _window(config),
        dependency_type=dep_type, dependency_delay=lag,
    )
    try:
        validate_dependencies(updated)
    except ValidationError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    timelines[tl] = updated
    store.save(config, timelines)
    console.print(f"[green]{task_id} now depends on {parent} ({_relation_label(_require_task(updated, task_id))}).[/green]")
    _report_moves(tasks, updated)


@app.command()
def kind(
    task_id: Annotated[str, typer.Argument(autocompletion=_complete_task_id)],
    kind_name: Annotated[str, typer.Argument(metavar="KIND", help="process or cutoff")],
    list_opt: ListOption = None,
) -> None:
    """Switch a task between process and cutoff."""
    task_id = _parse_task_id(task_id)
    store, config, timelines = _load()
    tl = _resolve_mode(config, list_opt)
    _require_task(timelines[tl], task_id)
    try:
        new_kind = TaskKind(kind_name.upper())
    except ValueError:
        console.print(f"[red]Invalid kind '{kind_name}'. Use: process, cutoff[/red]")
        raise typer.Exit(1)

    before = timelines[tl]
    timelines[tl] = change_task_kind(task_id, new_kind, before, _window(config))
    store.save(config, timelines)
    console.print(f"[green]{task_id} is now a {new_kind.value.lower()}.[/green]")
    _report_moves(before, timelines[tl])


@app.command()
def remove(
    task_id: Annotated[str, typer.Argument(autocompletion=_complete_task_id)],
    list_opt: ListOption = None,
) -> None:
    """Delete a task; tasks depending on it lose their parent."""
    task_id = _parse_task_id(task_id)
    store, config, timelines = _load()
    tl = _resolve_mode(config, list_opt)
    _require_task(timelines[tl], task_id)

    timelines[tl] = remove_task(task_id, timelines[tl])
    store.save(config, timelines)
    console.print(f"[green]Deleted {task_id}.[/green]")


@app.command("propagate")
def propagate_cmd(
    task_id: Annotated[str, typer.Argument(autocompletion=_complete_task_id)],
    list_opt: ListOption = None,
) -> None:
    """Re-apply dependency timing below a task."""
    task_id = _parse_task_id(task_id)
    store, config, timelines = _load()
    tl = _resolve_mode(config, list_opt)
    _require_task(timelines[tl], task_id)

    before = timelines[tl]
    timelines[tl] = propagate(task_id, before, _window(config))
    store.save(config, timelines)
    _report_moves(before, timelines[tl])


@app.command("import")
def import_tasks(
    file: Annotated[str, typer.Argument(help="JSON task list (array or {\"tasks\": [...]})")],
    list_opt: ListOption = None,
) -> None:
    """Replace a timeline with the tasks of a template file."""
    path = Path(file)
    if not path.exists():
        console.print(f"[red]File not found: {file}[/red]")
        raise typer.Exit(1)
    try:
        tasks = load_template(path)
    except SnapshotError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    store, config, timelines = _load()
    tl = _resolve_mode(config, list_opt)
    timelines[tl] = tasks
    store.save(config, timelines)
    console.print(f"[green]Imported {len(tasks)} tasks into the {tl.value} timeline.[/green]")


@app.command()
def check(list_opt: ListOption = None) -> None:
    """Validate dependencies and report children starting before their parent."""
    _, config, timelines = _load()
    tl = _resolve_mode(config, list_opt)
    tasks = timelines[tl]

    try:
        validate_dependencies(tasks)
    except ValidationError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    violations = precedence_violations(tasks)
    if not violations:
        console.print(f"[green]{len(tasks)} tasks OK.[/green]")
        return

    table = Table(title="Dependency violations")
    table.add_column("Task")
    table.add_column("Parent")
    table.add_column("Starts")
    table.add_column("Earliest")
    table.add_column("Short by (min)")
    for v in violations:
        table.add_row(
            v.task_id,
            v.parent_id,
            format_position(*from_absolute_minutes(v.actual_start)),
            format_position(*from_absolute_minutes(v.required_start)),
            str(v.shortfall),
            style="bold red",
        )
    console.print(table)
    raise typer.Exit(1)


@app.command()
def compare() -> None:
    """Compare the current and target timelines."""
    _, _, timelines = _load()
    current = timelines[TimelineMode.CURRENT]
    target = timelines[TimelineMode.TARGET]
    result = compare_timelines(current, target)

    table = Table(title="Current vs Target")
    table.add_column("")
    table.add_column("Current")
    table.add_column("Target")
    table.add_row("Tasks", str(len(current)), str(len(target)))
    bounds = [timeline_bounds(current), timeline_bounds(target)]
    for label, edge in (("Starts", 0), ("Ends", 1)):
        table.add_row(
            label,
            *(format_position(*from_absolute_minutes(b[edge])) if b else "-" for b in bounds),
        )
    table.add_row("Span", _hm(result.current_total_minutes), _hm(result.target_total_minutes))
    table.add_row("Idle", _hm(result.current_idle_minutes), _hm(result.target_idle_minutes))
    console.print(table)

    console.print(
        f"Time saved: [bold]{result.time_saved_hours}h[/bold] "
        f"({result.percentage_saved}%), idle time saved: {_hm(result.idle_time_saved_minutes)}"
    )


def _hm(minutes: int) -> str:
    sign = "-" if minutes < 0 else ""
    h, m = divmod(abs(minutes), 60)
    return f"{sign}{h}h {m:02d}m"


@app.command()
def gaps(list_opt: ListOption = None) -> None:
    """Show idle stretches between consecutive tasks."""
    _, config, timelines = _load()
    tl = _resolve_mode(config, list_opt)
    found = idle_gaps(timelines[tl])
    if not found:
        console.print("No idle time.")
        return

    table = Table(title=f"Idle time ({tl.value})")
    table.add_column("From")
    table.add_column("To")
    table.add_column("Length")
    table.add_column("Between")
    for g in found:
        table.add_row(
            format_position(*from_absolute_minutes(g.start)),
            format_position(*from_absolute_minutes(g.end)),
            _hm(g.duration),
            f"{g.after_task} -> {g.before_task}",
        )
    console.print(table)
    console.print(f"Total idle: [bold]{_hm(sum(g.duration for g in found))}[/bold]")


@app.command()
def viz(
    output: Annotated[str, typer.Option("-o", "--output", help="Output file path")] = "timeline.md",
    list_opt: ListOption = None,
) -> None:
    """Generate a Mermaid flowchart of the dependency graph."""
    _, config, timelines = _load()
    tl = _resolve_mode(config, list_opt)
    tasks = timelines[tl]
    if not tasks:
        console.print("No tasks to visualize.")
        return

    G = build_dag(tasks)
    late = {v.task_id for v in precedence_violations(tasks)}

    lines = ["```mermaid", "flowchart LR"]
    lines.append("    classDef cutoff fill:#e76f51,stroke:#f4a261,color:#fff")
    lines.append("    classDef late fill:#d62828,stroke:#6a040f,color:#fff,stroke-width:3px")
    lines.append("    classDef default fill:#457b9d,stroke:#1d3557,color:#f1faee")

    for t in tasks:
        label = t.name.replace('"', "'")
        when = format_position(t.day_offset, t.start_time)
        lines.append(f'    {_node(t.id)}["{t.id}: {label}<br/>{when}, {t.duration}m"]')

    for parent_id, child_id in G.edges:
        child = G.nodes[child_id]["task"]
        if child.dependency_type == DependencyType.NO_RELATION:
            lines.append(f"    {_node(parent_id)} -.-> {_node(child_id)}")
        elif child.dependency_type == DependencyType.TIME_LAG:
            lines.append(f"    {_node(parent_id)} -->|{child.dependency_delay:+d}m| {_node(child_id)}")
        else:
            lines.append(f"    {_node(parent_id)} --> {_node(child_id)}")

    cutoffs = [_node(t.id) for t in tasks if t.kind == TaskKind.CUTOFF and t.id not in late]
    if cutoffs:
        lines.append(f"    class {','.join(cutoffs)} cutoff")
    if late:
        lines.append(f"    class {','.join(_node(tid) for tid in late)} late")

    lines.append("```")
    Path(output).write_text("\n".join(lines) + "\n")
    console.print(f"[green]Wrote Mermaid diagram to {output}[/green]")


def _node(task_id: str) -> str:
    """Mermaid-safe node name."""
    return "n_" + "".join(c if c.isalnum() else "_" for c in task_id)
