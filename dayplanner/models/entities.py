from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple

from dayplanner.utils.timeutil import parse_hhmm


class SchedulingType(str, Enum):
    FIXED = "fixed"
    FLEXIBLE = "flexible"


class TimeWindow(str, Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"
    ANYTIME = "anytime"


# (start, end) in minutes of day
TIME_WINDOWS: Dict[TimeWindow, Tuple[int, int]] = {
    TimeWindow.MORNING: (6 * 60, 12 * 60),
    TimeWindow.AFTERNOON: (12 * 60, 18 * 60),
    TimeWindow.EVENING: (18 * 60, 23 * 60),
    TimeWindow.ANYTIME: (6 * 60, 23 * 60),
}


def classify_time_window(start_minutes: int) -> TimeWindow:
    """Window a block belongs to, judged by its start only."""
    for window in (TimeWindow.MORNING, TimeWindow.AFTERNOON, TimeWindow.EVENING):
        lo, hi = TIME_WINDOWS[window]
        if lo <= start_minutes < hi:
            return window
    return TimeWindow.ANYTIME


class Frequency(str, Enum):
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"
    CUSTOM = "custom"


class CustomPattern(str, Enum):
    WEEKDAYS = "weekdays"
    WEEKENDS = "weekends"
    NTH_WEEKDAY = "nthWeekday"
    LAST_WEEKDAY = "lastWeekday"


class InstanceStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    POSTPONED = "postponed"


class ConflictKind(str, Enum):
    TIME_OVERLAP = "time_overlap"
    DEPENDENCY_VIOLATION = "dependency_violation"
    MISSING_DEPENDENCY = "missing_dependency"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


SEVERITY_WEIGHTS: Dict[Severity, int] = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
}


@dataclass(frozen=True)
class RecurrenceRule:
    frequency: Frequency = Frequency.NONE
    interval: int = 1
    days_of_week: FrozenSet[int] = frozenset()  # 0 = Sunday ... 6 = Saturday
    day_of_month: Optional[int] = None  # -1 = last day of month
    end_date: Optional[date] = None
    end_after_occurrences: Optional[int] = None
    custom_pattern: Optional[CustomPattern] = None

    def __post_init__(self):
        # accept any iterable for days_of_week, keep the record hashable
        if not isinstance(self.days_of_week, frozenset):
            object.__setattr__(self, "days_of_week", frozenset(self.days_of_week))


@dataclass(frozen=True)
class RecurrenceIssue:
    """A reason a recurrence rule cannot be evaluated as intended."""
    field: str
    message: str


@dataclass(frozen=True)
class TaskDefinition:
    id: str
    duration_minutes: int
    scheduling_type: SchedulingType = SchedulingType.FLEXIBLE
    name: str = ""
    min_duration_minutes: Optional[int] = None
    fixed_time: Optional[str] = None  # HH:MM, fixed tasks only
    time_window: TimeWindow = TimeWindow.ANYTIME
    priority: int = 3
    is_mandatory: bool = False
    depends_on: Optional[str] = None  # template id of the prerequisite
    recurrence: RecurrenceRule = field(default_factory=RecurrenceRule)
    start_date: Optional[date] = None
    is_active: bool = True

    def __post_init__(self):
        if self.duration_minutes < 1:
            raise ValueError(f"{self.id}: duration_minutes must be positive")
        if self.min_duration_minutes is None:
            object.__setattr__(self, "min_duration_minutes", self.duration_minutes)
        if not 1 <= self.min_duration_minutes <= self.duration_minutes:
            raise ValueError(f"{self.id}: min_duration_minutes must be in [1, duration_minutes]")
        if not 1 <= self.priority <= 5:
            raise ValueError(f"{self.id}: priority must be between 1 and 5")
        if self.scheduling_type == SchedulingType.FIXED:
            if not self.fixed_time:
                raise ValueError(f"{self.id}: fixed tasks require fixed_time")
            parse_hhmm(self.fixed_time)

    @property
    def is_fixed(self) -> bool:
        return self.scheduling_type == SchedulingType.FIXED


@dataclass(frozen=True)
class TaskInstance:
    id: str
    template_id: str
    date: date
    status: InstanceStatus = InstanceStatus.PENDING
    scheduled_time_override: Optional[str] = None  # HH:MM

    def __post_init__(self):
        if self.scheduled_time_override is not None:
            parse_hhmm(self.scheduled_time_override)


@dataclass(frozen=True)
class DayTask:
    """One instance joined with the definition it was materialized from."""
    instance: TaskInstance
    definition: TaskDefinition

    @property
    def id(self) -> str:
        return self.instance.id

    @property
    def template_id(self) -> str:
        return self.instance.template_id

    @property
    def depends_on(self) -> Optional[str]:
        return self.definition.depends_on

    @property
    def priority(self) -> int:
        return self.definition.priority

    @property
    def is_mandatory(self) -> bool:
        return self.definition.is_mandatory

    @property
    def is_fixed(self) -> bool:
        return self.definition.is_fixed

    @property
    def duration_minutes(self) -> int:
        return self.definition.duration_minutes

    @property
    def min_duration_minutes(self) -> int:
        return self.definition.min_duration_minutes

    @property
    def time_window(self) -> TimeWindow:
        return self.definition.time_window

    @property
    def pinned_start(self) -> Optional[int]:
        """Start forced by the user override or the fixed time, if any."""
        if self.instance.scheduled_time_override:
            return parse_hhmm(self.instance.scheduled_time_override)
        if self.is_fixed:
            return parse_hhmm(self.definition.fixed_time)
        return None


@dataclass(frozen=True)
class ConflictFlag:
    kind: ConflictKind
    severity: Severity
    related_block_ids: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ScheduledBlock:
    instance_id: str
    template_id: str
    start_minutes_of_day: int
    end_minutes_of_day: int
    time_window: TimeWindow
    is_mandatory: bool = False
    is_anchor: bool = False
    is_crunched: bool = False
    conflicts: Tuple[ConflictFlag, ...] = ()

    @property
    def duration_minutes(self) -> int:
        return self.end_minutes_of_day - self.start_minutes_of_day


@dataclass(frozen=True)
class DayConflict:
    kind: ConflictKind
    severity: Severity
    instance_ids: Tuple[str, ...]


@dataclass(frozen=True)
class SleepSchedule:
    wake_time: str = "06:00"
    sleep_time: str = "22:00"

    def __post_init__(self):
        parse_hhmm(self.wake_time)
        parse_hhmm(self.sleep_time)

    @property
    def waking_minutes(self) -> int:
        wake = parse_hhmm(self.wake_time)
        sleep = parse_hhmm(self.sleep_time)
        if sleep <= wake:
            sleep += 24 * 60
        return sleep - wake


@dataclass(frozen=True)
class ImpossibilityReport:
    required_minutes: int
    available_minutes: int
    mandatory_count: int
    message: str
    suggestions: Tuple[str, ...] = ()


@dataclass(frozen=True)
class DaySchedule:
    date: date
    blocks: Tuple[ScheduledBlock, ...]
    conflicts: Tuple[DayConflict, ...] = ()
    cycles: Tuple[Tuple[str, ...], ...] = ()
    impossible_day: bool = False
    impossibility: Optional[ImpossibilityReport] = None
    score: float = 0.0

    def block_for(self, instance_id: str) -> Optional[ScheduledBlock]:
        for b in self.blocks:
            if b.instance_id == instance_id:
                return b
        return None
