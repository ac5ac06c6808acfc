"""
Example: Planning a single day with the engine directly

This example builds a small routine, schedules one day without the HTTP
layer, and prints the blocks and any conflicts.
"""

from datetime import date

from dayplanner.engine.dependency_resolver import DependencyResolver
from dayplanner.engine.recurrence import RecurrenceEngine
from dayplanner.engine.scheduler import SchedulingEngine, find_overdue_blocks
from dayplanner.models.entities import (
    CustomPattern,
    Frequency,
    RecurrenceRule,
    SchedulingType,
    SleepSchedule,
    TaskDefinition,
    TimeWindow,
)
from dayplanner.utils.timeutil import format_minutes


START = date(2024, 3, 4)

# 1. Describe the routine
weekdays = RecurrenceRule(frequency=Frequency.CUSTOM, custom_pattern=CustomPattern.WEEKDAYS)
definitions = [
    TaskDefinition(id="standup", name="Team standup", scheduling_type=SchedulingType.FIXED,
                   fixed_time="09:30", duration_minutes=15, is_mandatory=True,
                   recurrence=weekdays, start_date=START),
    TaskDefinition(id="follow-ups", name="Send follow-ups", time_window=TimeWindow.MORNING,
                   duration_minutes=30, depends_on="standup", recurrence=weekdays, start_date=START),
    TaskDefinition(id="workout", name="Workout", time_window=TimeWindow.EVENING,
                   duration_minutes=60, min_duration_minutes=20, priority=2,
                   recurrence=RecurrenceRule(frequency=Frequency.WEEKLY, days_of_week={1, 3, 5}),
                   start_date=START),
    TaskDefinition(id="rent", name="Pay rent", duration_minutes=10, priority=5, is_mandatory=True,
                   recurrence=RecurrenceRule(frequency=Frequency.MONTHLY, day_of_month=-1),
                   start_date=START),
]

# 2. Wire the engine
engine = SchedulingEngine(DependencyResolver(buffer_minutes=5), RecurrenceEngine())


if __name__ == "__main__":
    day = date(2024, 3, 29)
    schedule = engine.schedule_day(day, definitions, sleep=SleepSchedule("07:00", "23:00"))

    print(f"Schedule for {day} (score {schedule.score:.1f})")
    for block in schedule.blocks:
        flags = ", ".join(f"{c.kind.value}/{c.severity.value}" for c in block.conflicts)
        print(f"  {format_minutes(block.start_minutes_of_day)}-{format_minutes(block.end_minutes_of_day)}"
              f"  {block.template_id:<12} {block.time_window.value:<9} {flags}")

    # 3. Ask what is already late at 10:00
    for block, minutes in find_overdue_blocks(schedule, now_minutes=600):
        print(f"  overdue: {block.template_id} by {minutes} min")
