"""Conversions between (day offset, "HH:MM") pairs and absolute minutes.

The timeline is a single integer axis measured in minutes from midnight of
the reference day "D".  Day offsets are signed, so a task at ``(-1, "18:00")``
sits at ``-360``.
"""

from __future__ import annotations

import re

from settleline.exceptions import InvalidTimeError

MINUTES_PER_HOUR = 60
MINUTES_PER_DAY = 24 * MINUTES_PER_HOUR

TIME_PATTERN = re.compile(r"^([0-1]?[0-9]|2[0-3]):([0-5][0-9])$")


def parse_time(time_str: str) -> int:
    """Return the minutes since midnight for a 24-hour ``HH:MM`` string."""
    m = TIME_PATTERN.match(time_str.strip()) if isinstance(time_str, str) else None
    if m is None:
        raise InvalidTimeError(f"Invalid time format {time_str!r} (expected HH:MM)")
    return int(m.group(1)) * MINUTES_PER_HOUR + int(m.group(2))


def format_time(minutes: int) -> str:
    """Format minutes since midnight as zero-padded ``HH:MM``."""
    hours, mins = divmod(minutes, MINUTES_PER_HOUR)
    return f"{hours:02d}:{mins:02d}"


def is_valid_time(time_str: str) -> bool:
    try:
        parse_time(time_str)
    except InvalidTimeError:
        return False
    return True


def to_absolute_minutes(day_offset: int, time_str: str = "00:00") -> int:
    """``day_offset * 1440 + hours * 60 + minutes``."""
    return day_offset * MINUTES_PER_DAY + parse_time(time_str)


def from_absolute_minutes(total: int) -> tuple[int, str]:
    """Inverse of :func:`to_absolute_minutes`.

    Uses floor division, so negative totals land on earlier days with a
    non-negative time of day: ``-30`` is ``(-1, "23:30")``.
    """
    day_offset, remainder = divmod(total, MINUTES_PER_DAY)
    return day_offset, format_time(remainder)


def format_position(day_offset: int, time_str: str) -> str:
    """Human label for a timeline position, e.g. ``D-1 18:00`` or ``D 09:00``."""
    if day_offset == 0:
        day = "D"
    else:
        day = f"D{day_offset:+d}"
    return f"{day} {time_str}"
