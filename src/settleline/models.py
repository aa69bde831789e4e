"""Task model, dependency modes and simulation settings."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

from settleline.exceptions import InvalidWorkingHoursError
from settleline.timeline import parse_time


class TaskKind(enum.StrEnum):
    PROCESS = "PROCESS"
    CUTOFF = "CUTOFF"


class DependencyType(enum.StrEnum):
    IMMEDIATE = "IMMEDIATE"
    TIME_LAG = "TIME_LAG"
    NO_RELATION = "NO_RELATION"


class TimelineMode(enum.StrEnum):
    CURRENT = "current"
    TARGET = "target"


@dataclass(frozen=True)
class WorkingHours:
    """A single daily office window, reused for every day on the timeline."""

    start: str = "09:00"
    end: str = "17:00"

    def __post_init__(self) -> None:
        if parse_time(self.end) <= parse_time(self.start):
            raise InvalidWorkingHoursError(
                f"Working hours must end after they start ({self.start}-{self.end})"
            )

    @property
    def start_minutes(self) -> int:
        return parse_time(self.start)

    @property
    def end_minutes(self) -> int:
        return parse_time(self.end)

    @property
    def length(self) -> int:
        return self.end_minutes - self.start_minutes

    def to_dict(self) -> dict:
        return {"start": self.start, "end": self.end}

    @classmethod
    def from_dict(cls, d: dict) -> WorkingHours:
        return cls(start=d.get("start", "09:00"), end=d.get("end", "17:00"))


@dataclass
class SimulationConfig:
    """Snapshot-level settings stored alongside the two task lists."""

    name: str = "Simulation"
    fund: str | None = None
    working_hours: WorkingHours = field(default_factory=WorkingHours)
    mode: TimelineMode = TimelineMode.CURRENT

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "fund": self.fund,
            "working_hours": self.working_hours.to_dict(),
            "mode": self.mode.value,
        }

    @classmethod
    def from_dict(cls, d: dict) -> SimulationConfig:
        return cls(
            name=d.get("name", "Simulation"),
            fund=d.get("fund"),
            working_hours=WorkingHours.from_dict(d.get("working_hours", {})),
            mode=TimelineMode(d.get("mode", "current")),
        )


@dataclass
class Task:
    """A single task positioned on the multi-day clock."""

    id: str
    name: str
    day_offset: int = 0
    start_time: str = "09:00"
    duration: int = 0  # minutes; 0 marks an instant (cutoff)
    kind: TaskKind = TaskKind.PROCESS
    depends_on: str | None = None
    dependency_type: DependencyType = DependencyType.IMMEDIATE
    dependency_delay: int = 0  # only read under TIME_LAG; may be negative
    requires_working_hours: bool = False
    sequence_order: int = 0
    short_name: str | None = None
    is_cash_confirmed: bool = False

    @property
    def required_lag(self) -> int:
        """Minutes between the parent's end and this task's start."""
        if self.dependency_type == DependencyType.TIME_LAG:
            return self.dependency_delay
        return 0

    def to_dict(self) -> dict:
        d = {
            "id": self.id,
            "name": self.name,
            "day_offset": self.day_offset,
            "start_time": self.start_time,
            "duration": self.duration,
            "kind": self.kind.value,
            "depends_on": self.depends_on,
            "dependency_type": self.dependency_type.value,
            "dependency_delay": self.dependency_delay,
            "requires_working_hours": self.requires_working_hours,
            "sequence_order": self.sequence_order,
            "is_cash_confirmed": self.is_cash_confirmed,
        }
        if self.short_name is not None:
            d["short_name"] = self.short_name
        return d

    @classmethod
    def from_dict(cls, d: dict) -> Task:
        """Build a task from a stored dict.

        Accepts both the snake_case keys written by :meth:`to_dict` and the
        camelCase keys of older simulation snapshots, where the parent was
        referenced either by ``dependsOnTempId`` or by a numeric
        ``dependsOnId``.
        """
        if "tempId" in d or "dayOffset" in d:
            return cls._from_legacy_dict(d)
        parent = d.get("depends_on")
        return cls(
            id=str(d["id"]),
            name=d["name"],
            day_offset=int(d.get("day_offset", 0)),
            start_time=d.get("start_time", "09:00"),
            duration=int(d.get("duration", 0)),
            kind=TaskKind(d.get("kind", "PROCESS")),
            depends_on=str(parent) if parent is not None else None,
            dependency_type=DependencyType(d.get("dependency_type", "IMMEDIATE")),
            dependency_delay=int(d.get("dependency_delay", 0)),
            requires_working_hours=d.get("requires_working_hours", False),
            sequence_order=int(d.get("sequence_order", 0)),
            short_name=d.get("short_name"),
            is_cash_confirmed=d.get("is_cash_confirmed", False),
        )

    @classmethod
    def _from_legacy_dict(cls, d: dict) -> Task:
        parent = d.get("dependsOnTempId") or d.get("dependsOnId")
        return cls(
            id=str(d.get("tempId", d.get("id"))),
            name=d["name"],
            day_offset=int(d.get("dayOffset", 0)),
            start_time=d.get("startTime") or "09:00",
            duration=int(d.get("duration") or 0),
            kind=TaskKind(d.get("type") or "PROCESS"),
            depends_on=str(parent) if parent else None,
            dependency_type=DependencyType(d.get("dependencyType") or "IMMEDIATE"),
            dependency_delay=int(d.get("dependencyDelay") or 0),
            requires_working_hours=bool(d.get("requiresWorkingHours", False)),
            sequence_order=int(d.get("sequenceOrder") or 0),
            short_name=d.get("shortName"),
            is_cash_confirmed=bool(d.get("isCashConfirmed", False)),
        )
