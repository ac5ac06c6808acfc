from typing import Dict, Iterable

from dayplanner.models.entities import SEVERITY_WEIGHTS, DayTask, ScheduledBlock, TimeWindow


def window_penalty(task: DayTask, block: ScheduledBlock) -> float:
    if task.is_fixed or task.time_window == TimeWindow.ANYTIME:
        return 0.0
    return 0.0 if block.time_window == task.time_window else 1.0


def conflict_penalty(block: ScheduledBlock) -> float:
    return float(sum(SEVERITY_WEIGHTS[c.severity] for c in block.conflicts))


def score_schedule(blocks: Iterable[ScheduledBlock], tasks: Dict[str, DayTask]) -> float:
    """Lower is better; 0.0 is a day with every task in its window and no conflicts."""
    return sum(window_penalty(tasks[b.instance_id], b) + conflict_penalty(b) for b in blocks)
