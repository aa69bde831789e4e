"""Timeline span, idle gaps and current-vs-target comparison."""

from __future__ import annotations

from dataclasses import dataclass

from settleline.models import Task
from settleline.scheduler import absolute_end, absolute_start


@dataclass(frozen=True)
class IdleGap:
    """Unoccupied stretch between two consecutive tasks."""

    start: int
    end: int
    after_task: str
    before_task: str

    @property
    def duration(self) -> int:
        return self.end - self.start


@dataclass(frozen=True)
class TimelineComparison:
    current_total_minutes: int
    target_total_minutes: int
    current_idle_minutes: int
    target_idle_minutes: int

    @property
    def time_saved_minutes(self) -> int:
        return self.current_total_minutes - self.target_total_minutes

    @property
    def time_saved_hours(self) -> float:
        return round(self.time_saved_minutes / 60, 1)

    @property
    def percentage_saved(self) -> int:
        if self.current_total_minutes <= 0:
            return 0
        return round(self.time_saved_minutes / self.current_total_minutes * 100)

    @property
    def idle_time_saved_minutes(self) -> int:
        return self.current_idle_minutes - self.target_idle_minutes

    def to_dict(self) -> dict:
        return {
            "current_total_minutes": self.current_total_minutes,
            "target_total_minutes": self.target_total_minutes,
            "time_saved_minutes": self.time_saved_minutes,
            "time_saved_hours": self.time_saved_hours,
            "percentage_saved": self.percentage_saved,
            "current_idle_minutes": self.current_idle_minutes,
            "target_idle_minutes": self.target_idle_minutes,
            "idle_time_saved_minutes": self.idle_time_saved_minutes,
        }


def timeline_bounds(tasks: list[Task]) -> tuple[int, int] | None:
    """(earliest start, latest end) in absolute minutes, or None if empty."""
    if not tasks:
        return None
    return (
        min(absolute_start(t) for t in tasks),
        max(absolute_end(t) for t in tasks),
    )


def timeline_span(tasks: list[Task]) -> int:
    """Minutes from the earliest start to the latest end."""
    bounds = timeline_bounds(tasks)
    if bounds is None:
        return 0
    return bounds[1] - bounds[0]


def idle_gaps(tasks: list[Task]) -> list[IdleGap]:
    """Gaps between each task and the next one to start.

    Tasks are ordered by start; a gap is reported when a task starts after
    every earlier task has ended.  Time covered by an overlapping task is
    never idle.
    """
    ordered = sorted(tasks, key=absolute_start)
    gaps: list[IdleGap] = []
    if not ordered:
        return gaps

    latest = ordered[0]
    for nxt in ordered[1:]:
        latest_end = absolute_end(latest)
        next_start = absolute_start(nxt)
        if next_start > latest_end:
            gaps.append(IdleGap(start=latest_end, end=next_start, after_task=latest.id, before_task=nxt.id))
        if absolute_end(nxt) > latest_end:
            latest = nxt
    return gaps


def compare_timelines(current: list[Task], target: list[Task]) -> TimelineComparison:
    return TimelineComparison(
        current_total_minutes=timeline_span(current),
        target_total_minutes=timeline_span(target),
        current_idle_minutes=sum(g.duration for g in idle_gaps(current)),
        target_idle_minutes=sum(g.duration for g in idle_gaps(target)),
    )
