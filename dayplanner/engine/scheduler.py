"""
Scheduling Engine

Turns one day's task instances into time-stamped blocks.

Algorithm (one call, no state kept between calls):
0. Impossibility pre-check: mandatory minutes vs. waking minutes
1. Place anchors: fixed tasks at their fixed time, overrides at the override;
   overlapping anchors are flagged, never moved
2. Resolve dependencies (ordering, cycles, missing prerequisites)
3. Slot flexible tasks in dependency order, priority first, into the earliest
   gap inside their time window that starts after their prerequisite ends;
   skippable tasks fall back to their minimum duration; a task with no gap is
   still placed where it overlaps least and flagged
4. Crunch time: while a span between two anchors overflows, shrink the
   lowest-priority skippable task in it and slot again; mandatory tasks are
   never shrunk
5. Final pass: flag every overlapping pair and every violated dependency

The engine always returns a schedule. Every problem is reported as a conflict
flag on the blocks (and in ``DaySchedule.conflicts``), never raised.

Complexity: O(k * n * (w / s) * n) where n = tasks that day, w = window
length, s = slot step, k <= n + 1 crunch passes. Days hold tens to low
hundreds of tasks.
"""

import logging
from collections import defaultdict
from dataclasses import replace
from datetime import date
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple

from dayplanner.engine.dependency_resolver import DependencyResolution, DependencyResolver
from dayplanner.engine.materialize import InstanceMaterializer
from dayplanner.engine.recurrence import RecurrenceEngine
from dayplanner.graph.conflict_graph import build_conflict_graph, severity_for
from dayplanner.models.entities import (
    SEVERITY_WEIGHTS,
    TIME_WINDOWS,
    ConflictFlag,
    ConflictKind,
    DayConflict,
    DaySchedule,
    DayTask,
    ImpossibilityReport,
    InstanceStatus,
    ScheduledBlock,
    SleepSchedule,
    TaskDefinition,
    TaskInstance,
    TimeWindow,
    classify_time_window,
)
from dayplanner.utils.scoring import score_schedule
from dayplanner.utils.timeutil import MINUTES_PER_DAY, is_overlap

logger = logging.getLogger(__name__)

IMPOSSIBLE_DAY_SUGGESTIONS = (
    "Wake up earlier or go to sleep later on this day",
    "Make some tasks skippable instead of mandatory",
    "Reduce the duration of mandatory tasks",
    "Postpone some tasks to another day",
)


def overlap_minutes(start: int, end: int, blocks: Iterable[ScheduledBlock]) -> int:
    return sum(
        max(0, min(end, b.end_minutes_of_day) - max(start, b.start_minutes_of_day))
        for b in blocks
    )


class SchedulingEngine:
    def __init__(
        self,
        dependency_resolver: DependencyResolver,
        recurrence_engine: RecurrenceEngine,
        slot_step_minutes: int = 5,
    ):
        if slot_step_minutes < 1:
            raise ValueError("slot_step_minutes must be positive")
        self.dependency_resolver = dependency_resolver
        self.recurrence_engine = recurrence_engine
        self.materializer = InstanceMaterializer(recurrence_engine)
        self.slot_step_minutes = slot_step_minutes

    def schedule_day(
        self,
        day: date,
        definitions: Iterable[TaskDefinition],
        instances: Optional[Iterable[TaskInstance]] = None,
        sleep: Optional[SleepSchedule] = None,
    ) -> DaySchedule:
        """
        Compute the schedule for one day.

        Args:
            day: Calendar day being planned
            definitions: Task definitions referenced by the instances
            instances: That day's instances; materialized from the definitions
                when None
            sleep: Wake/sleep times for the day, used only for the
                impossibility check

        Returns:
            DaySchedule with one block per pending instance
        """
        definitions = list(definitions)
        if instances is None:
            instances = self.materializer.materialize(day, definitions)
        sleep = sleep or SleepSchedule()

        tasks, satisfied = self.active_tasks(day, definitions, instances)
        by_id = {t.id: t for t in tasks}
        logger.info(f"Scheduling {len(tasks)} tasks for {day}")

        impossibility = self.check_impossibility(tasks, sleep)
        flags: Dict[str, List[ConflictFlag]] = defaultdict(list)

        pinned = self.place_anchors(tasks)
        self._flag_overlaps(pinned, by_id, flags)

        resolution = self.dependency_resolver.resolve(tasks, satisfied)
        for instance_id, found in resolution.flags.items():
            for flag in found:
                _add_flag(flags, instance_id, flag)

        ordered = self.flexible_order(resolution, pinned)
        placed, unplaced = self.slot_flexible_tasks(ordered, pinned, resolution)

        blocks = self.detect_conflicts(placed, by_id, resolution, flags, unplaced)
        conflicts = _collect_conflicts(flags)
        if conflicts:
            logger.info(f"{len(conflicts)} conflicts on {day}")

        return DaySchedule(
            date=day,
            blocks=tuple(blocks),
            conflicts=tuple(conflicts),
            cycles=tuple(resolution.cycles),
            impossible_day=impossibility is not None,
            impossibility=impossibility,
            score=score_schedule(blocks, by_id),
        )

    def active_tasks(
        self,
        day: date,
        definitions: Iterable[TaskDefinition],
        instances: Iterable[TaskInstance],
    ) -> Tuple[List[DayTask], FrozenSet[str]]:
        """
        Join pending instances with their definitions.

        Returns the tasks to place and the template ids completed today, which
        satisfy any dependency on them.
        """
        definitions_by_id = {d.id: d for d in definitions}
        tasks: List[DayTask] = []
        completed: Set[str] = set()
        for instance in instances:
            if instance.date != day:
                logger.debug(f"Ignoring instance {instance.id} dated {instance.date}")
                continue
            definition = definitions_by_id.get(instance.template_id)
            if definition is None:
                logger.warning(f"Instance {instance.id} references unknown template {instance.template_id}")
                continue
            if instance.status == InstanceStatus.COMPLETED:
                completed.add(instance.template_id)
            elif instance.status == InstanceStatus.PENDING:
                tasks.append(DayTask(instance, definition))
        return tasks, frozenset(completed)

    def check_impossibility(self, tasks: Sequence[DayTask], sleep: SleepSchedule) -> Optional[ImpossibilityReport]:
        mandatory = [t for t in tasks if t.is_mandatory]
        required = sum(t.duration_minutes for t in mandatory)
        available = sleep.waking_minutes
        if required <= available:
            return None

        message = (
            f"{len(mandatory)} mandatory tasks require {required / 60:.1f} hours, "
            f"but only {available / 60:.1f} waking hours are available."
        )
        logger.warning(f"Impossible day: {message}")
        return ImpossibilityReport(
            required_minutes=required,
            available_minutes=available,
            mandatory_count=len(mandatory),
            message=message,
            suggestions=IMPOSSIBLE_DAY_SUGGESTIONS,
        )

    def place_anchors(self, tasks: Iterable[DayTask]) -> Dict[str, ScheduledBlock]:
        """Step 1: blocks for every task with a fixed time or a user override, exactly as given."""
        pinned: Dict[str, ScheduledBlock] = {}
        for task in sorted(tasks, key=lambda t: t.id):
            start = task.pinned_start
            if start is None:
                continue
            pinned[task.id] = self._block(
                task, start, task.duration_minutes,
                anchor=task.is_fixed and task.is_mandatory,
            )
        logger.debug(f"Placed {len(pinned)} pinned tasks")
        return pinned

    def flexible_order(self, resolution: DependencyResolution, pinned: Dict[str, ScheduledBlock]) -> List[DayTask]:
        """
        Step 3 ordering: dependency depth, then priority (desc), then window start.

        Sorting by depth first keeps every prerequisite ahead of its dependents.
        """
        flexible = [t for t in resolution.order if t.id not in pinned]
        return sorted(
            flexible,
            key=lambda t: (
                resolution.levels.get(t.id, 0),
                -t.priority,
                TIME_WINDOWS[t.time_window][0],
                t.template_id,
                t.id,
            ),
        )

    def slot_flexible_tasks(
        self,
        ordered: Sequence[DayTask],
        pinned: Dict[str, ScheduledBlock],
        resolution: DependencyResolution,
    ) -> Tuple[Dict[str, ScheduledBlock], List[str]]:
        """
        Steps 3 and 4: slot every flexible task, shrinking skippable tasks in
        overflowing spans one at a time until the fewest tasks are left
        overlapping.

        Returns the blocks and the ids that got no free slot.
        """
        shrunk: Set[str] = set()
        best_placed, best_unplaced = self._slot_pass(ordered, pinned, resolution, shrunk)
        best_key = (len(best_unplaced), 0)

        placed, unplaced = best_placed, best_unplaced
        while unplaced:
            candidates = self.crunch_candidates(placed, pinned, unplaced, {t.id: t for t in ordered}, shrunk)
            if not candidates:
                break
            victim = candidates[0]
            shrunk.add(victim.id)
            logger.info(f"Crunch time: shrinking {victim.id} to {victim.min_duration_minutes} minutes")
            placed, unplaced = self._slot_pass(ordered, pinned, resolution, shrunk)
            key = (len(unplaced), len(shrunk))
            if key < best_key:
                best_placed, best_unplaced, best_key = placed, unplaced, key

        for instance_id in best_unplaced:
            logger.warning(f"No free slot for {instance_id}, placed with overlap")
        return best_placed, best_unplaced

    def crunch_candidates(
        self,
        placed: Dict[str, ScheduledBlock],
        pinned: Dict[str, ScheduledBlock],
        unplaced: Sequence[str],
        flexible: Dict[str, DayTask],
        shrunk: Set[str],
    ) -> List[DayTask]:
        """
        Skippable tasks that may still shrink inside a span that overflows.

        A span is the gap between two consecutive anchors (or the day edges);
        it overflows when a task placed in it could not get a free slot.
        Lowest priority shrinks first, then template id.
        """
        day_start, day_end = TIME_WINDOWS[TimeWindow.ANYTIME]
        anchors = sorted((b for b in pinned.values() if b.is_anchor), key=lambda b: b.start_minutes_of_day)
        edges = [day_start] + [x for b in anchors for x in (b.start_minutes_of_day, b.end_minutes_of_day)] + [day_end]
        spans = [(edges[i], edges[i + 1]) for i in range(0, len(edges), 2)]

        def span_of(block: ScheduledBlock) -> Optional[Tuple[int, int]]:
            best, best_overlap = None, 0
            for lo, hi in spans:
                overlap = min(hi, block.end_minutes_of_day) - max(lo, block.start_minutes_of_day)
                if overlap > best_overlap:
                    best, best_overlap = (lo, hi), overlap
            return best

        crunched = {span_of(placed[i]) for i in unplaced if i in placed}
        crunched.discard(None)
        candidates = []
        for instance_id, task in flexible.items():
            block = placed.get(instance_id)
            if block is None or span_of(block) not in crunched:
                continue
            if task.is_mandatory or instance_id in shrunk or block.is_crunched:
                continue
            if task.min_duration_minutes < task.duration_minutes:
                candidates.append(task)
        return sorted(candidates, key=lambda t: (t.priority, t.template_id, t.id))

    def find_slot(self, task: DayTask, duration: int, earliest: int, busy: Sequence[ScheduledBlock]) -> Optional[int]:
        """Earliest start in the task's window, not before ``earliest``, free of ``busy``."""
        lo, hi = TIME_WINDOWS[task.time_window]
        start = max(lo, earliest)
        while start + duration <= hi:
            if not any(is_overlap(start, start + duration, b.start_minutes_of_day, b.end_minutes_of_day)
                       for b in busy):
                return start
            start += self.slot_step_minutes
        return None

    def best_effort_slot(self, task: DayTask, duration: int, earliest: int, busy: Sequence[ScheduledBlock]) -> int:
        """
        Start with the least overlap when no free slot exists.

        Stays inside the window when the prerequisite allows it, otherwise
        moves past the window (and past midnight if need be) rather than
        before the prerequisite ends.
        """
        lo, hi = TIME_WINDOWS[task.time_window]
        first = max(lo, earliest)
        last = hi - duration
        if first > last:
            # past the window; past midnight too when the prerequisite ends late
            last = max(first, MINUTES_PER_DAY - duration)

        best_start, best_overlap = first, None
        start = first
        while start <= last:
            overlap = overlap_minutes(start, start + duration, busy)
            if best_overlap is None or overlap < best_overlap:
                best_start, best_overlap = start, overlap
            start += self.slot_step_minutes
        return best_start

    def detect_conflicts(
        self,
        placed: Dict[str, ScheduledBlock],
        tasks: Dict[str, DayTask],
        resolution: DependencyResolution,
        flags: Dict[str, List[ConflictFlag]],
        unplaced: Sequence[str] = (),
    ) -> List[ScheduledBlock]:
        """
        Step 5: flag overlaps and violated dependencies, attach flags to fresh blocks.

        Every id in ``unplaced`` ends up with a ``time_overlap`` flag, even one
        that overlaps nothing because it was pushed out of its window.
        """
        self._flag_overlaps(placed, tasks, flags)
        for instance_id in unplaced:
            if not any(f.kind == ConflictKind.TIME_OVERLAP for f in flags.get(instance_id, ())):
                severity = severity_for(tasks[instance_id].is_mandatory)
                _add_flag(flags, instance_id, ConflictFlag(ConflictKind.TIME_OVERLAP, severity))

        for prereq_id, dependent_id in resolution.graph.edges():
            if resolution.prerequisite_of(dependent_id) != prereq_id:
                continue  # cyclic edge, already reported
            prereq, dependent = placed.get(prereq_id), placed.get(dependent_id)
            if prereq is None or dependent is None:
                continue
            if dependent.start_minutes_of_day < prereq.end_minutes_of_day:
                severity = severity_for(tasks[prereq_id].is_mandatory, tasks[dependent_id].is_mandatory)
                _add_flag(flags, dependent_id, ConflictFlag(ConflictKind.DEPENDENCY_VIOLATION, severity, (prereq_id,)))

        blocks = [replace(b, conflicts=tuple(flags.get(i, ()))) for i, b in placed.items()]
        return sorted(blocks, key=lambda b: (b.start_minutes_of_day, b.instance_id))

    def _slot_pass(
        self,
        ordered: Sequence[DayTask],
        pinned: Dict[str, ScheduledBlock],
        resolution: DependencyResolution,
        shrunk: Set[str],
    ) -> Tuple[Dict[str, ScheduledBlock], List[str]]:
        placed = dict(pinned)
        unplaced: List[str] = []
        for task in ordered:
            prereq_id = resolution.prerequisite_of(task.id)
            earliest = self.dependency_resolver.earliest_start(task, placed.get(prereq_id) if prereq_id else None)

            durations = [task.duration_minutes]
            if not task.is_mandatory and task.min_duration_minutes < task.duration_minutes:
                durations = [task.min_duration_minutes] if task.id in shrunk else [task.duration_minutes, task.min_duration_minutes]

            busy = list(placed.values())
            start, duration = None, durations[-1]
            for candidate in durations:
                start = self.find_slot(task, candidate, earliest, busy)
                if start is not None:
                    duration = candidate
                    break
            if start is None:
                start = self.best_effort_slot(task, duration, earliest, busy)
                unplaced.append(task.id)
            placed[task.id] = self._block(task, start, duration)
        return placed, unplaced

    def _flag_overlaps(
        self,
        blocks: Dict[str, ScheduledBlock],
        tasks: Dict[str, DayTask],
        flags: Dict[str, List[ConflictFlag]],
    ) -> None:
        graph = build_conflict_graph(list(blocks.values()))
        for instance_id, neighbours in graph.items():
            for other in sorted(neighbours):
                severity = severity_for(tasks[instance_id].is_mandatory, tasks[other].is_mandatory)
                _add_flag(flags, instance_id, ConflictFlag(ConflictKind.TIME_OVERLAP, severity, (other,)))

    @staticmethod
    def _block(task: DayTask, start: int, duration: int, anchor: bool = False) -> ScheduledBlock:
        return ScheduledBlock(
            instance_id=task.id,
            template_id=task.template_id,
            start_minutes_of_day=start,
            end_minutes_of_day=start + duration,
            time_window=classify_time_window(start),
            is_mandatory=task.is_mandatory,
            is_anchor=anchor,
            is_crunched=duration < task.duration_minutes,
        )


def _add_flag(flags: Dict[str, List[ConflictFlag]], instance_id: str, flag: ConflictFlag) -> None:
    if flag not in flags[instance_id]:
        flags[instance_id].append(flag)


def _collect_conflicts(flags: Dict[str, List[ConflictFlag]]) -> List[DayConflict]:
    seen: Dict[Tuple, DayConflict] = {}
    for instance_id, found in flags.items():
        for flag in found:
            ids = tuple(sorted({instance_id, *flag.related_block_ids}))
            key = (flag.kind, ids)
            if key not in seen:
                seen[key] = DayConflict(flag.kind, flag.severity, ids)
    return sorted(seen.values(), key=lambda c: (-SEVERITY_WEIGHTS[c.severity], c.kind.value, c.instance_ids))


def find_overdue_blocks(schedule: DaySchedule, now_minutes: int) -> List[Tuple[ScheduledBlock, int]]:
    """Blocks that ended before ``now_minutes``, with how many minutes ago."""
    return [
        (b, now_minutes - b.end_minutes_of_day)
        for b in schedule.blocks
        if now_minutes > b.end_minutes_of_day
    ]


def resolve_sleep_schedule(default: SleepSchedule, override: Optional[SleepSchedule] = None) -> SleepSchedule:
    """The per-day override when one exists, else the user's default."""
    return override if override is not None else default
