from dataclasses import dataclass, field
from typing import Dict, Iterator, Set, Tuple

from dayplanner.models.entities import DayTask


@dataclass
class DependencyGraph:
    """
    Directed graph over one day's tasks, keyed by instance id.

    Edges run prerequisite -> dependent. ``missing`` records dependents whose
    prerequisite template has no usable instance that day; those dependents
    have no incoming edge.
    """

    nodes: Dict[str, DayTask] = field(default_factory=dict)
    dependents: Dict[str, Set[str]] = field(default_factory=dict)
    prerequisite: Dict[str, str] = field(default_factory=dict)
    missing: Dict[str, str] = field(default_factory=dict)

    def add_node(self, task: DayTask) -> None:
        self.nodes[task.id] = task
        self.dependents.setdefault(task.id, set())

    def add_edge(self, prerequisite_id: str, dependent_id: str) -> None:
        self.dependents[prerequisite_id].add(dependent_id)
        self.prerequisite[dependent_id] = prerequisite_id

    def edges(self) -> Iterator[Tuple[str, str]]:
        for prereq, deps in self.dependents.items():
            for dep in sorted(deps):
                yield prereq, dep

    def __len__(self) -> int:
        return len(self.nodes)
