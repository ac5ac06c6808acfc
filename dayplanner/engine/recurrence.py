"""
Recurrence Engine

Decides which calendar dates a task definition occurs on.

Every public method is a pure function of its arguments: the engine holds no
state between calls, so asking twice about the same (definition, date) pair
always gives the same answer. "Today" is never read from the system clock.

Pattern rules (anchored at ``definition.start_date``):
- none:    only the start date
- daily:   every ``interval`` days
- weekly:  weekday in ``days_of_week`` and (days since start // 7) % interval == 0
- monthly: ``day_of_month`` (default: start day, -1: last day), clamped to the
           month's last day, every ``interval`` months
- yearly:  start month/day every ``interval`` years; Feb 29 rolls to Feb 28
- custom:  weekdays, weekends, nth weekday or last weekday of the month

Terminal conditions (``end_date``, ``end_after_occurrences``) are applied after
the pattern. Occurrences are counted from the start date.

Month and year arithmetic uses ``dateutil.relativedelta``, which clamps to the
last valid day instead of skipping (Jan 31 + 1 month = Feb 28/29). Custom
patterns are ``dateutil.rrule`` rules anchored at the start date; a month with
no fifth weekday simply has no nthWeekday occurrence.
"""

import logging
from datetime import date, datetime, time, timedelta
from typing import Iterator, List, Optional

from dateutil.relativedelta import relativedelta
from dateutil.rrule import FR, MO, MONTHLY, SA, SU, TH, TU, WE, WEEKLY, rrule

from dayplanner.models.entities import (
    CustomPattern,
    Frequency,
    RecurrenceIssue,
    RecurrenceRule,
    TaskDefinition,
)
from dayplanner.utils.timeutil import months_between, sunday_weekday

logger = logging.getLogger(__name__)

# indexed by date.weekday() (0 = Monday)
_RRULE_WEEKDAYS = (MO, TU, WE, TH, FR, SA, SU)

# the Gregorian calendar repeats exactly every 400 years
CALENDAR_CYCLE_YEARS = 400


def _as_datetime(d: date) -> datetime:
    return datetime.combine(d, time())


def custom_rrule(rule: RecurrenceRule, start: date, until: date) -> Optional[rrule]:
    """The rrule behind a custom pattern, or None for an unknown pattern."""
    pattern = rule.custom_pattern
    kwargs = dict(dtstart=_as_datetime(start), until=_as_datetime(until))
    if pattern == CustomPattern.WEEKDAYS:
        return rrule(WEEKLY, byweekday=(MO, TU, WE, TH, FR), **kwargs)
    if pattern == CustomPattern.WEEKENDS:
        return rrule(WEEKLY, byweekday=(SA, SU), **kwargs)

    weekday = _RRULE_WEEKDAYS[start.weekday()]
    if pattern == CustomPattern.NTH_WEEKDAY:
        return rrule(MONTHLY, interval=rule.interval, byweekday=weekday((start.day - 1) // 7 + 1), **kwargs)
    if pattern == CustomPattern.LAST_WEEKDAY:
        return rrule(MONTHLY, interval=rule.interval, byweekday=weekday(-1), **kwargs)
    return None


def _day_in_month(any_day: date, day_of_month: int) -> date:
    """The ``day_of_month``-th of ``any_day``'s month, clamped to its last day."""
    target = 31 if day_of_month == -1 else day_of_month
    return any_day.replace(day=1) + relativedelta(day=target)


class OccurrenceRange:
    """
    Lazy, finite sequence of the dates a definition occurs on in [start, end].

    Iterating again restarts from ``start``; nothing is computed until iterated.
    """

    def __init__(self, engine: "RecurrenceEngine", definition: TaskDefinition, start: date, end: date):
        self._engine = engine
        self._definition = definition
        self.start = start
        self.end = end

    def __iter__(self) -> Iterator[date]:
        return self._engine._iter_occurrences(self._definition, self.start, self.end)

    def __repr__(self) -> str:
        return f"OccurrenceRange({self._definition.id!r}, {self.start}, {self.end})"


class RecurrenceEngine:
    """Stateless evaluator of recurrence rules."""

    def validate_rule(self, rule: RecurrenceRule, start_date: Optional[date] = None) -> List[RecurrenceIssue]:
        """
        Report everything that makes a rule malformed.

        ``should_occur_on_date`` assumes a valid rule and answers ``False`` for
        a rule with issues; callers that need the reason ask here.
        """
        issues: List[RecurrenceIssue] = []
        if rule.interval < 1:
            issues.append(RecurrenceIssue("interval", "interval must be at least 1"))
        if any(d < 0 or d > 6 for d in rule.days_of_week):
            issues.append(RecurrenceIssue("days_of_week", "days must be in 0..6 (0 = Sunday)"))
        if rule.frequency == Frequency.WEEKLY and not rule.days_of_week:
            issues.append(RecurrenceIssue("days_of_week", "weekly rules need at least one weekday"))
        if rule.day_of_month is not None and not (rule.day_of_month == -1 or 1 <= rule.day_of_month <= 31):
            issues.append(RecurrenceIssue("day_of_month", "day_of_month must be 1..31 or -1 for the last day"))
        if rule.frequency == Frequency.CUSTOM and rule.custom_pattern is None:
            issues.append(RecurrenceIssue("custom_pattern", "custom rules need a pattern"))
        if rule.end_after_occurrences is not None and rule.end_after_occurrences < 1:
            issues.append(RecurrenceIssue("end_after_occurrences", "occurrence limit must be at least 1"))
        if start_date is not None and rule.end_date is not None and rule.end_date < start_date:
            issues.append(RecurrenceIssue("end_date", "end_date is before the start date"))
        return issues

    def validate_definition(self, definition: TaskDefinition) -> List[RecurrenceIssue]:
        issues = self.validate_rule(definition.recurrence, definition.start_date)
        if definition.start_date is None:
            issues.insert(0, RecurrenceIssue("start_date", "a start date is required to anchor recurrence"))
        return issues

    def should_occur_on_date(self, definition: TaskDefinition, day: date) -> bool:
        start = definition.start_date
        rule = definition.recurrence
        if start is None or day < start:
            return False
        if self.validate_rule(rule):
            return False
        if not self._matches_pattern(rule, start, day):
            return False
        if rule.end_date is not None and day > rule.end_date:
            return False
        if rule.end_after_occurrences is not None:
            seen = sum(1 for _ in self._iter_pattern(rule, start, start, day))
            if seen > rule.end_after_occurrences:
                return False
        return True

    def next_occurrence_on_or_after(self, definition: TaskDefinition, from_date: date) -> Optional[date]:
        """First occurrence on or after ``from_date``, or None if the rule has run out."""
        if definition.start_date is None:
            return None
        horizon = self._search_horizon(definition.recurrence, max(from_date, definition.start_date))
        return next(self._iter_occurrences(definition, from_date, horizon), None)

    @staticmethod
    def _search_horizon(rule: RecurrenceRule, base: date) -> date:
        """
        Last date worth scanning for the next hit after ``base``.

        Fixed-stride rules hit again within ``interval + 1`` years. Weekday
        patterns only repeat with the calendar, every 400 * ``interval`` years.
        """
        interval = max(rule.interval, 1)
        years = interval + 1
        if rule.frequency == Frequency.CUSTOM:
            years = CALENDAR_CYCLE_YEARS * interval
        if base.year + years > date.max.year:
            return date.max
        return base + relativedelta(years=years)

    def occurrences_in_range(self, definition: TaskDefinition, start: date, end: date) -> OccurrenceRange:
        return OccurrenceRange(self, definition, start, end)

    def _iter_occurrences(self, definition: TaskDefinition, lo: date, hi: date) -> Iterator[date]:
        start = definition.start_date
        rule = definition.recurrence
        if start is None or self.validate_rule(rule):
            return
        if rule.end_date is not None:
            hi = min(hi, rule.end_date)
        limit = rule.end_after_occurrences
        scan_from = start if limit is not None else lo
        count = 0
        for d in self._iter_pattern(rule, start, scan_from, hi):
            count += 1
            if limit is not None and count > limit:
                return
            if d >= lo:
                yield d

    def _matches_pattern(self, rule: RecurrenceRule, start: date, day: date) -> bool:
        delta_days = (day - start).days
        freq = rule.frequency

        if freq == Frequency.NONE:
            return day == start
        if freq == Frequency.DAILY:
            return delta_days % rule.interval == 0
        if freq == Frequency.WEEKLY:
            return sunday_weekday(day) in rule.days_of_week and (delta_days // 7) % rule.interval == 0
        if freq == Frequency.MONTHLY:
            if months_between(start, day) % rule.interval:
                return False
            return day == _day_in_month(day, rule.day_of_month or start.day)
        if freq == Frequency.YEARLY:
            years = day.year - start.year
            if years % rule.interval:
                return False
            return day == start + relativedelta(years=years)
        if freq == Frequency.CUSTOM:
            return self._matches_custom(rule, start, day)

        logger.warning(f"Unknown recurrence frequency: {freq}")
        return False

    @staticmethod
    def _matches_custom(rule: RecurrenceRule, start: date, day: date) -> bool:
        pattern_rule = custom_rrule(rule, start, until=day)
        if pattern_rule is None:
            return False
        return _as_datetime(day) in pattern_rule

    def _iter_pattern(self, rule: RecurrenceRule, start: date, lo: date, hi: date) -> Iterator[date]:
        """
        Pattern dates in [lo, hi], ignoring terminal conditions.

        Daily, monthly and yearly rules stride directly between hits, custom
        rules walk their rrule, and weekly rules are scanned day by day.
        """
        lo = max(lo, start)
        if lo > hi:
            return
        freq = rule.frequency
        step = rule.interval

        if freq == Frequency.NONE:
            if lo <= start <= hi:
                yield start
            return

        if freq == Frequency.DAILY:
            offset = (lo - start).days
            current = lo + timedelta(days=(-offset) % step)
            while current <= hi:
                yield current
                current += timedelta(days=step)
            return

        if freq == Frequency.MONTHLY:
            months = months_between(start, lo)
            k = months + (-months) % step
            dom = rule.day_of_month or start.day
            while True:
                candidate = _day_in_month(start.replace(day=1) + relativedelta(months=k), dom)
                if candidate > hi:
                    return
                if candidate >= lo:
                    yield candidate
                k += step

        if freq == Frequency.YEARLY:
            years = lo.year - start.year
            k = years + (-years) % step
            while True:
                candidate = start + relativedelta(years=k)
                if candidate > hi:
                    return
                if candidate >= lo:
                    yield candidate
                k += step

        if freq == Frequency.CUSTOM:
            pattern_rule = custom_rrule(rule, start, until=hi)
            if pattern_rule is None:
                return
            for hit in pattern_rule.xafter(_as_datetime(lo), inc=True):
                yield hit.date()
            return

        current = lo
        while current <= hi:
            if self._matches_pattern(rule, start, current):
                yield current
            current += timedelta(days=1)
