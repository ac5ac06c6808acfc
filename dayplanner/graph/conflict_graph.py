from collections import defaultdict
from typing import Dict, Sequence, Set

from dayplanner.models.entities import ScheduledBlock, Severity
from dayplanner.utils.timeutil import is_overlap


def build_conflict_graph(blocks: Sequence[ScheduledBlock]) -> Dict[str, Set[str]]:
    """Undirected graph with an edge between every pair of blocks whose intervals overlap."""
    graph: Dict[str, Set[str]] = defaultdict(set)
    ordered = sorted(blocks, key=lambda b: (b.start_minutes_of_day, b.instance_id))
    for i, b1 in enumerate(ordered):
        for b2 in ordered[i + 1 :]:
            if b2.start_minutes_of_day >= b1.end_minutes_of_day:
                break
            if is_overlap(b1.start_minutes_of_day, b1.end_minutes_of_day,
                          b2.start_minutes_of_day, b2.end_minutes_of_day):
                graph[b1.instance_id].add(b2.instance_id)
                graph[b2.instance_id].add(b1.instance_id)
    return graph


def severity_for(*mandatory: bool) -> Severity:
    """All involved mandatory -> high, some -> medium, none -> low."""
    if len(mandatory) > 1 and all(mandatory):
        return Severity.HIGH
    if any(mandatory):
        return Severity.MEDIUM
    return Severity.LOW
