from datetime import date

import pytest

from dayplanner.engine.dependency_resolver import DependencyResolver
from dayplanner.engine.recurrence import RecurrenceEngine
from dayplanner.engine.scheduler import SchedulingEngine
from dayplanner.models.entities import (
    DayTask,
    Frequency,
    InstanceStatus,
    RecurrenceRule,
    SchedulingType,
    TaskDefinition,
    TaskInstance,
    TimeWindow,
)

DAY = date(2024, 3, 4)  # a Monday


def make_task(template_id, day=DAY, status=InstanceStatus.PENDING, override=None, **kwargs):
    """DayTask for one definition on one day."""
    definition = TaskDefinition(id=template_id, **kwargs)
    instance = TaskInstance(
        id=f"{template_id}@{day.isoformat()}",
        template_id=template_id,
        date=day,
        status=status,
        scheduled_time_override=override,
    )
    return DayTask(instance, definition)


def daily(template_id, start_date=DAY, **kwargs):
    """Definition that recurs every day from ``start_date``."""
    return TaskDefinition(
        id=template_id,
        recurrence=RecurrenceRule(frequency=Frequency.DAILY),
        start_date=start_date,
        **kwargs,
    )


class FakeCache:
    """In-memory stand-in for ScheduleCache."""

    def __init__(self):
        self.store = {}

    def get(self, day, input_hash):
        return self.store.get((day, input_hash))

    def set(self, day, input_hash, schedule):
        self.store[(day, input_hash)] = schedule

    def invalidate_day(self, day):
        keys = [k for k in self.store if k[0] == day]
        for k in keys:
            del self.store[k]
        return len(keys)

    def health_check(self):
        return True


@pytest.fixture
def recurrence_engine():
    return RecurrenceEngine()


@pytest.fixture
def resolver():
    return DependencyResolver(buffer_minutes=5)


@pytest.fixture
def engine(resolver, recurrence_engine):
    return SchedulingEngine(resolver, recurrence_engine, slot_step_minutes=5)


@pytest.fixture
def morning_anchors():
    """Two mandatory fixed blocks leaving a 10-minute gap at 09:50."""
    return [
        daily("work-prep", scheduling_type=SchedulingType.FIXED, fixed_time="06:00",
              duration_minutes=230, is_mandatory=True),
        daily("standup", scheduling_type=SchedulingType.FIXED, fixed_time="10:00",
              duration_minutes=120, is_mandatory=True),
    ]


@pytest.fixture
def routine():
    """A realistic day: fixed meeting, a dependent chain and some flexible errands."""
    return [
        daily("meeting", scheduling_type=SchedulingType.FIXED, fixed_time="09:00",
              duration_minutes=30, is_mandatory=True),
        daily("notes", time_window=TimeWindow.MORNING, duration_minutes=20, depends_on="meeting"),
        daily("gym", time_window=TimeWindow.EVENING, duration_minutes=60, min_duration_minutes=30, priority=2),
        daily("groceries", time_window=TimeWindow.AFTERNOON, duration_minutes=45, priority=4),
        daily("reading", duration_minutes=30, priority=1),
    ]
