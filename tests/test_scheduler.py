import io

import pytest

from settleline.exceptions import (
    CircularDependencyError,
    DuplicateTaskIdError,
    MissingReferenceError,
)
from settleline.logger import reset_logger, setup_logger
from settleline.models import DependencyType, Task, TaskKind, WorkingHours
from settleline.scheduler import (
    absolute_end,
    absolute_start,
    build_children_index,
    change_task_kind,
    clamp_to_working_hours,
    downstream_tasks,
    move_task,
    precedence_violations,
    propagate,
    remove_task,
    resize_task_duration,
    set_dependency,
    validate_dependencies,
)

OFFICE = WorkingHours(start="09:00", end="17:00")

IMMEDIATE = DependencyType.IMMEDIATE
TIME_LAG = DependencyType.TIME_LAG
NO_RELATION = DependencyType.NO_RELATION


def by_id(tasks: list[Task]) -> dict[str, Task]:
    return {t.id: t for t in tasks}


def pos(task: Task) -> tuple[int, str]:
    return task.day_offset, task.start_time


# ---------------------------------------------------------------------------
# Working-hours clamp
# ---------------------------------------------------------------------------


def test_clamp_snaps_early_start_to_opening():
    assert clamp_to_working_hours(0, "08:00", 60, OFFICE) == (0, "09:00")


def test_clamp_defers_task_that_would_overrun_closing():
    assert clamp_to_working_hours(0, "16:30", 60, OFFICE) == (1, "09:00")


def test_clamp_moves_after_hours_start_to_next_morning():
    assert clamp_to_working_hours(0, "17:00", 0, OFFICE) == (1, "09:00")
    assert clamp_to_working_hours(-1, "22:15", 30, OFFICE) == (0, "09:00")


def test_clamp_keeps_position_inside_window():
    assert clamp_to_working_hours(2, "10:15", 60, OFFICE) == (2, "10:15")
    # ends exactly at closing
    assert clamp_to_working_hours(0, "16:00", 60, OFFICE) == (0, "16:00")


def test_clamp_without_window_is_a_no_op():
    assert clamp_to_working_hours(0, "03:00", 600, None) == (0, "03:00")


def test_clamp_leaves_oversized_task_at_opening():
    assert clamp_to_working_hours(0, "09:00", 600, OFFICE) == (0, "09:00")
    assert clamp_to_working_hours(0, "10:00", 600, OFFICE) == (1, "09:00")


def test_clamp_is_idempotent():
    windows = [OFFICE, WorkingHours("07:30", "18:45"), WorkingHours("00:00", "23:59")]
    for window in windows:
        for minute in range(0, 1440, 13):
            start = f"{minute // 60:02d}:{minute % 60:02d}"
            for duration in (0, 1, 45, 240, 600, 1000):
                once = clamp_to_working_hours(0, start, duration, window)
                assert clamp_to_working_hours(*once, duration, window) == once


# ---------------------------------------------------------------------------
# Dependency graph
# ---------------------------------------------------------------------------


def test_build_children_index():
    tasks = [
        Task("P", "Parent"),
        Task("C1", "Child 1", depends_on="P"),
        Task("C2", "Child 2", depends_on="P"),
        Task("G", "Grandchild", depends_on="C1"),
        Task("X", "Orphan", depends_on="ghost"),
    ]
    index = build_children_index(tasks)
    assert index == {"P": [1, 2], "C1": [3], "ghost": [4]}


def test_validate_dependencies_detects_cycle():
    tasks = [
        Task("A", "A", depends_on="C"),
        Task("B", "B", depends_on="A"),
        Task("C", "C", depends_on="B"),
    ]
    with pytest.raises(CircularDependencyError):
        validate_dependencies(tasks)


def test_validate_dependencies_detects_self_reference():
    with pytest.raises(CircularDependencyError):
        validate_dependencies([Task("A", "A", depends_on="A")])


def test_validate_dependencies_detects_missing_parent():
    with pytest.raises(MissingReferenceError):
        validate_dependencies([Task("A", "A", depends_on="nope")])


def test_validate_dependencies_detects_duplicate_ids():
    with pytest.raises(DuplicateTaskIdError):
        validate_dependencies([Task("A", "A"), Task("A", "Again")])


def test_downstream_tasks():
    tasks = [
        Task("P", "P"),
        Task("C", "C", depends_on="P"),
        Task("G", "G", depends_on="C"),
        Task("Z", "Z"),
    ]
    assert downstream_tasks("P", tasks) == ["C", "G"]
    assert downstream_tasks("Z", tasks) == []
    assert downstream_tasks("missing", tasks) == []


# ---------------------------------------------------------------------------
# Propagation
# ---------------------------------------------------------------------------


def test_propagate_applies_time_lag():
    tasks = [
        Task("P", "Parent", 0, "09:00", 30),
        Task("C", "Child", 0, "12:00", 20, depends_on="P", dependency_type=TIME_LAG, dependency_delay=15),
    ]
    result = propagate("P", tasks)
    child = by_id(result)["C"]
    assert absolute_start(child) == 585
    assert pos(child) == (0, "09:45")


def test_propagate_does_not_modify_input():
    tasks = [
        Task("P", "Parent", 0, "09:00", 30),
        Task("C", "Child", 0, "12:00", 20, depends_on="P"),
    ]
    result = propagate("P", tasks)
    assert pos(tasks[1]) == (0, "12:00")
    assert pos(result[1]) == (0, "09:30")
    assert result is not tasks


def test_propagate_crosses_midnight():
    tasks = [
        Task("P", "Parent", 0, "23:30", 60),
        Task("C", "Child", 0, "09:00", 10, depends_on="P"),
    ]
    assert pos(by_id(propagate("P", tasks))["C"]) == (1, "00:30")


def test_propagate_allows_negative_lag():
    tasks = [
        Task("P", "Parent", 0, "09:00", 60),
        Task("C", "Child", 0, "13:00", 10, depends_on="P", dependency_type=TIME_LAG, dependency_delay=-15),
    ]
    assert pos(by_id(propagate("P", tasks))["C"]) == (0, "09:45")


def test_propagate_leaves_no_relation_child_alone():
    tasks = [
        Task("P", "Parent", 0, "11:00", 60),
        Task("C", "Child", 0, "09:00", 30, depends_on="P", dependency_type=NO_RELATION),
        Task("G", "Grandchild", 0, "09:30", 30, depends_on="C"),
    ]
    result = by_id(propagate("P", tasks))
    assert pos(result["C"]) == (0, "09:00")
    assert pos(result["G"]) == (0, "09:30")


def test_propagate_clamps_children_requiring_office_hours():
    tasks = [
        Task("P", "Parent", 0, "16:00", 45),
        Task("C", "Child", 0, "09:00", 30, depends_on="P", requires_working_hours=True),
        Task("G", "Grandchild", 0, "09:00", 10, depends_on="C"),
    ]
    result = by_id(propagate("P", tasks, OFFICE))
    assert pos(result["C"]) == (1, "09:00")
    assert pos(result["G"]) == (1, "09:30")


def test_propagate_ignores_window_for_unflagged_children():
    tasks = [
        Task("P", "Parent", 0, "16:00", 45),
        Task("C", "Child", 0, "09:00", 30, depends_on="P"),
    ]
    assert pos(by_id(propagate("P", tasks, OFFICE))["C"]) == (0, "16:45")


def test_propagate_diamond_updates_each_task_once():
    tasks = [
        Task("P", "Parent", 0, "09:00", 30),
        Task("C1", "Child 1", 0, "09:30", 60, depends_on="P"),
        Task("C2", "Child 2", 0, "09:30", 15, depends_on="P"),
        Task("G", "Grandchild", 0, "10:40", 20, depends_on="C1", dependency_type=TIME_LAG, dependency_delay=10),
    ]
    log = io.StringIO()
    setup_logger(1, stream=log)
    try:
        result = by_id(move_task("P", 0, "10:00", tasks))
    finally:
        reset_logger()

    assert pos(result["C1"]) == (0, "10:30")
    assert pos(result["C2"]) == (0, "10:30")
    assert absolute_start(result["G"]) == absolute_end(result["C1"]) + 10
    assert pos(result["G"]) == (0, "11:40")

    lines = log.getvalue().splitlines()
    for tid in ("C1", "C2", "G"):
        assert sum(1 for line in lines if line.startswith(f"{tid}: ")) == 1


def test_quiet_logger_hides_moves():
    tasks = [Task("P", "Parent", 0, "09:00", 30), Task("C", "Child", 0, "09:30", 10, depends_on="P")]
    log = io.StringIO()
    setup_logger(0, stream=log)
    try:
        move_task("P", 0, "10:00", tasks)
    finally:
        reset_logger()
    assert log.getvalue() == ""


def test_propagate_stops_at_consistent_subtree():
    tasks = [
        Task("P", "Parent", 0, "09:00", 30),
        Task("C", "Child", 0, "09:30", 30, depends_on="P"),
        # G is out of place, but C does not move so G is never revisited
        Task("G", "Grandchild", 0, "15:00", 30, depends_on="C"),
    ]
    result = by_id(propagate("P", tasks))
    assert pos(result["G"]) == (0, "15:00")


def test_propagate_converges_in_one_pass():
    tasks = [
        Task("P", "Parent", 0, "15:50", 45),
        Task("A", "A", 0, "09:00", 30, depends_on="P", requires_working_hours=True),
        Task("B", "B", 0, "09:00", 120, depends_on="A", dependency_type=TIME_LAG, dependency_delay=400, requires_working_hours=True),
        Task("C", "C", 0, "09:00", 0, depends_on="P", dependency_type=TIME_LAG, dependency_delay=-30),
        Task("D", "D", 0, "09:00", 10, depends_on="C", dependency_type=NO_RELATION),
    ]
    once = propagate("P", tasks, OFFICE)
    twice = propagate("P", once, OFFICE)
    assert twice == once


def test_propagate_no_orphan_invariant():
    tasks = [
        Task("P", "Parent", -1, "18:00", 120),
        Task("A", "A", -1, "09:00", 30, depends_on="P"),
        Task("B", "B", -1, "09:00", 30, depends_on="A", dependency_type=TIME_LAG, dependency_delay=45),
        Task("C", "C", -1, "09:00", 30, depends_on="B"),
    ]
    result = propagate("P", tasks)
    assert precedence_violations(result) == []
    assert pos(by_id(result)["C"]) == (-1, "21:45")


def test_propagate_terminates_on_cycle():
    tasks = [
        Task("A", "A", 0, "09:00", 30, depends_on="B"),
        Task("B", "B", 0, "12:00", 60, depends_on="A"),
    ]
    result = by_id(propagate("A", tasks))
    assert pos(result["B"]) == (0, "09:30")
    # the edge back into A is not followed
    assert pos(result["A"]) == (0, "09:00")
    assert propagate("A", list(result.values())) == list(result.values())


def test_propagate_terminates_on_self_reference():
    tasks = [Task("A", "A", 0, "09:00", 30, depends_on="A")]
    assert propagate("A", tasks) == tasks


def test_propagate_tolerates_dangling_parent():
    tasks = [
        Task("P", "Parent", 0, "09:00", 30),
        Task("X", "Orphan", 0, "13:00", 30, depends_on="gone"),
    ]
    assert propagate("P", tasks) == tasks
    assert propagate("gone", tasks) == tasks


def test_propagate_unknown_root_returns_copy():
    tasks = [Task("P", "Parent")]
    result = propagate("nope", tasks)
    assert result == tasks
    assert result is not tasks


# ---------------------------------------------------------------------------
# Move / resize
# ---------------------------------------------------------------------------


def _chain() -> list[Task]:
    return [
        Task("P", "Parent", 0, "09:00", 30),
        Task("C", "Child", 0, "09:50", 20, depends_on="P", dependency_type=TIME_LAG, dependency_delay=20),
        Task("G", "Grandchild", 0, "10:10", 15, depends_on="C"),
    ]


def test_move_before_parent_end_snaps_to_parent_end():
    result = by_id(move_task("C", 0, "09:25", _chain()))
    child = result["C"]
    assert pos(child) == (0, "09:30")
    assert child.dependency_type == IMMEDIATE
    assert child.dependency_delay == 0
    assert pos(result["G"]) == (0, "09:50")


def test_move_after_parent_end_derives_lag():
    result = by_id(move_task("C", 0, "10:00", _chain()))
    child = result["C"]
    assert pos(child) == (0, "10:00")
    assert child.dependency_type == TIME_LAG
    assert child.dependency_delay == 30
    assert pos(result["G"]) == (0, "10:20")


def test_move_to_parent_end_becomes_immediate():
    child = by_id(move_task("C", 0, "09:30", _chain()))["C"]
    assert child.dependency_type == IMMEDIATE
    assert child.dependency_delay == 0


def test_move_unparented_task_is_verbatim():
    result = by_id(move_task("P", -1, "9:15", _chain()))
    assert pos(result["P"]) == (-1, "09:15")
    assert pos(result["C"]) == (-1, "10:05")
    assert pos(result["G"]) == (-1, "10:25")


def test_move_with_dangling_parent_is_verbatim():
    tasks = [Task("X", "Orphan", 0, "13:00", 30, depends_on="gone")]
    result = move_task("X", 0, "08:00", tasks)
    assert pos(result[0]) == (0, "08:00")
    assert result[0].depends_on == "gone"


def test_move_no_relation_task_before_parent_end_snaps():
    tasks = [
        Task("P", "Parent", 0, "09:00", 60),
        Task("C", "Child", 0, "11:00", 30, depends_on="P", dependency_type=NO_RELATION),
    ]
    child = by_id(move_task("C", 0, "08:00", tasks))["C"]
    assert pos(child) == (0, "10:00")
    assert child.dependency_type == IMMEDIATE
    assert child.dependency_delay == 0


def test_move_no_relation_task_after_parent_end_derives_lag():
    tasks = [
        Task("P", "Parent", 0, "09:00", 60),
        Task("C", "Child", 0, "11:00", 30, depends_on="P", dependency_type=NO_RELATION),
    ]
    child = by_id(move_task("C", 0, "10:20", tasks))["C"]
    assert pos(child) == (0, "10:20")
    assert child.dependency_type == TIME_LAG
    assert child.dependency_delay == 20


def test_move_clamps_into_office_hours():
    tasks = [Task("A", "A", 0, "10:00", 30, requires_working_hours=True)]
    assert pos(move_task("A", 0, "07:00", tasks, OFFICE)[0]) == (0, "09:00")
    assert pos(move_task("A", 0, "16:45", tasks, OFFICE)[0]) == (1, "09:00")


def test_move_unknown_task_is_a_no_op():
    tasks = _chain()
    result = move_task("nope", 0, "10:00", tasks)
    assert result == tasks
    assert result is not tasks


def test_move_does_not_modify_input():
    tasks = _chain()
    move_task("P", 1, "09:00", tasks)
    assert [pos(t) for t in tasks] == [(0, "09:00"), (0, "09:50"), (0, "10:10")]


def test_parent_precedence_after_moves():
    tasks = [
        Task("P", "Parent", 0, "09:00", 30),
        Task("A", "A", 0, "09:30", 60, depends_on="P"),
        Task("B", "B", 0, "10:30", 30, depends_on="A", requires_working_hours=True),
        Task("C", "C", 0, "11:05", 0, kind=TaskKind.CUTOFF, depends_on="B", dependency_type=TIME_LAG, dependency_delay=5),
    ]
    moves = [("A", 0, "08:00"), ("B", 0, "06:00"), ("P", 0, "16:00"), ("C", 0, "00:00"), ("P", -1, "23:00")]
    for tid, day, start in moves:
        tasks = move_task(tid, day, start, tasks, OFFICE)
        assert precedence_violations(tasks) == []


def test_resize_moves_dependents_and_keeps_start():
    result = by_id(resize_task_duration("P", 90, _chain()))
    assert pos(result["P"]) == (0, "09:00")
    assert result["P"].duration == 90
    assert pos(result["C"]) == (0, "10:50")
    assert pos(result["G"]) == (0, "11:10")


def test_resize_unknown_task_is_a_no_op():
    tasks = _chain()
    assert resize_task_duration("nope", 10, tasks) == tasks


# ---------------------------------------------------------------------------
# Dependency editing
# ---------------------------------------------------------------------------


def test_set_dependency_places_task_after_parent():
    tasks = [
        Task("P", "Parent", 0, "09:00", 30),
        Task("C", "Child", 0, "14:00", 20),
    ]
    child = by_id(set_dependency("C", "P", tasks, dependency_type=TIME_LAG, dependency_delay=15))["C"]
    assert child.depends_on == "P"
    assert pos(child) == (0, "09:45")


def test_set_dependency_none_detaches_without_moving():
    child = by_id(set_dependency("C", None, _chain()))["C"]
    assert child.depends_on is None
    assert child.dependency_type == IMMEDIATE
    assert child.dependency_delay == 0
    assert pos(child) == (0, "09:50")


def test_set_dependency_rejects_self_and_unknown_parent():
    tasks = _chain()
    assert set_dependency("C", "C", tasks) == tasks
    assert set_dependency("C", "nope", tasks) == tasks
    assert set_dependency("nope", "P", tasks) == tasks


def test_change_kind_to_cutoff_zeroes_duration():
    result = by_id(change_task_kind("P", TaskKind.CUTOFF, _chain()))
    assert result["P"].kind == TaskKind.CUTOFF
    assert result["P"].duration == 0
    assert pos(result["C"]) == (0, "09:20")


def test_change_kind_to_process_keeps_positions():
    tasks = _chain()
    result = change_task_kind("C", TaskKind.PROCESS, tasks)
    assert result == tasks


def test_remove_task_detaches_children():
    result = remove_task("C", _chain())
    assert [t.id for t in result] == ["P", "G"]
    grandchild = result[1]
    assert grandchild.depends_on is None
    assert grandchild.sequence_order == 1
    assert pos(grandchild) == (0, "10:10")


def test_remove_unknown_task_is_a_no_op():
    tasks = _chain()
    assert remove_task("nope", tasks) == tasks
