import re
from datetime import date

MINUTES_PER_DAY = 24 * 60

_HHMM = re.compile(r"^(\d{1,2}):(\d{2})$")


def parse_hhmm(value: str) -> int:
    """Convert a wall-clock "HH:MM" string to minutes since midnight."""
    m = _HHMM.match(value or "")
    if not m:
        raise ValueError(f"time must be HH:MM, got {value!r}")
    hours, minutes = int(m.group(1)), int(m.group(2))
    if hours > 23 or minutes > 59:
        raise ValueError(f"time out of range: {value!r}")
    return hours * 60 + minutes


def format_minutes(minutes: int) -> str:
    hours, mins = divmod(minutes, 60)
    return f"{hours:02d}:{mins:02d}"


def sunday_weekday(d: date) -> int:
    """Weekday index with 0 = Sunday ... 6 = Saturday."""
    return (d.weekday() + 1) % 7


def months_between(start: date, end: date) -> int:
    return (end.year - start.year) * 12 + (end.month - start.month)


def is_overlap(a_start: int, a_end: int, b_start: int, b_end: int) -> bool:
    """Half-open interval overlap; touching intervals do not overlap."""
    return max(a_start, b_start) < min(a_end, b_end)
