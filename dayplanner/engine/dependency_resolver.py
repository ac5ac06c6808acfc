"""
Dependency Resolver

Orders one day's tasks so that every prerequisite comes before the tasks that
depend on it, and tells the scheduler how early a dependent may start.

Resolution is total: it never raises on malformed input.
- A prerequisite with no usable instance that day is reported as
  ``missing_dependency`` and the dependent is treated as unconstrained.
- Edges that form a cycle are dropped from the ordering graph and every task
  on the cycle is reported as ``dependency_violation``.

Time Complexity: O(V + E) for cycle detection, O((V + E) log V) for ordering,
where V = tasks that day, E = dependency edges (E <= V, one prerequisite each).

Key Techniques:
- Iterative depth-first search with white/gray/black coloring; a back edge
  to a gray node closes a cycle, reconstructed from the DFS path
- Kahn's algorithm with a heap, ties broken by priority (desc) then template id
"""

import heapq
import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from dayplanner.graph.conflict_graph import severity_for
from dayplanner.graph.dependency_graph import DependencyGraph
from dayplanner.models.entities import ConflictFlag, ConflictKind, DayTask, ScheduledBlock

logger = logging.getLogger(__name__)

WHITE, GRAY, BLACK = 0, 1, 2


@dataclass
class DependencyResolution:
    graph: DependencyGraph
    order: List[DayTask]
    levels: Dict[str, int]
    cycles: List[Tuple[str, ...]]
    flags: Dict[str, List[ConflictFlag]] = field(default_factory=dict)

    def prerequisite_of(self, instance_id: str) -> Optional[str]:
        """Prerequisite instance id, or None when unconstrained (including cyclic edges)."""
        prereq = self.graph.prerequisite.get(instance_id)
        if prereq is None:
            return None
        for cycle in self.cycles:
            if instance_id in cycle and prereq in cycle:
                return None
        return prereq


class DependencyResolver:
    def __init__(self, buffer_minutes: int = 5):
        self.buffer_minutes = buffer_minutes

    def build_graph(
        self,
        tasks: Iterable[DayTask],
        satisfied_template_ids: FrozenSet[str] = frozenset(),
    ) -> DependencyGraph:
        """
        Build the prerequisite -> dependent graph for one day.

        Args:
            tasks: Tasks taking part in today's schedule
            satisfied_template_ids: Templates whose instance is already
                completed today; depending on them constrains nothing

        Returns:
            DependencyGraph with one node per task and one edge per resolvable
            ``depends_on`` reference

        Complexity: O(V)
        """
        graph = DependencyGraph()
        by_template: Dict[str, str] = {}
        for task in tasks:
            graph.add_node(task)
            if task.template_id in by_template:
                logger.warning(f"Duplicate instance {task.id} for template {task.template_id}, "
                               f"dependencies resolve to {by_template[task.template_id]}")
                continue
            by_template[task.template_id] = task.id

        for task in graph.nodes.values():
            target = task.depends_on
            if not target:
                continue
            if target in by_template:
                # a task depending on itself becomes a one-node cycle
                graph.add_edge(by_template[target], task.id)
            elif target in satisfied_template_ids:
                continue
            else:
                graph.missing[task.id] = target
                logger.warning(f"Dependency {target} not scheduled today for instance {task.id}")
        return graph

    def detect_cycles(self, graph: DependencyGraph) -> List[Tuple[str, ...]]:
        """
        Find every cycle reachable in the graph.

        Each cycle is returned as the instance ids along it, in
        prerequisite -> dependent order, starting from the node the back
        edge points to.

        Complexity: O(V + E)
        """
        color = {node_id: WHITE for node_id in graph.nodes}
        cycles: List[Tuple[str, ...]] = []

        for root in graph.nodes:
            if color[root] != WHITE:
                continue
            color[root] = GRAY
            path = [root]
            stack = [iter(sorted(graph.dependents[root]))]
            while stack:
                child = next(stack[-1], None)
                if child is None:
                    color[path.pop()] = BLACK
                    stack.pop()
                    continue
                if color[child] == GRAY:
                    cycles.append(tuple(path[path.index(child):]))
                elif color[child] == WHITE:
                    color[child] = GRAY
                    path.append(child)
                    stack.append(iter(sorted(graph.dependents[child])))

        if cycles:
            logger.warning(f"Circular dependencies detected: {cycles}")
        return cycles

    def topological_order(
        self,
        graph: DependencyGraph,
        cycles: Optional[List[Tuple[str, ...]]] = None,
    ) -> List[DayTask]:
        """
        Order tasks so prerequisites precede dependents (Kahn's algorithm).

        Args:
            graph: Dependency graph from ``build_graph``
            cycles: Cycles to break; detected here when not supplied

        Returns:
            Every task exactly once. Among tasks that are ready at the same
            time, higher priority comes first, then lower template id.

        Complexity: O((V + E) log V)
        """
        order, _ = self._kahn(graph, self._cycle_edges(self.detect_cycles(graph) if cycles is None else cycles))
        return order

    def earliest_start(
        self,
        dependent: DayTask,
        prerequisite_block: Optional[ScheduledBlock],
        buffer_minutes: Optional[int] = None,
    ) -> int:
        """Minutes of day the dependent may start at: prerequisite end + buffer, else 0."""
        if prerequisite_block is None:
            return 0
        buffer = self.buffer_minutes if buffer_minutes is None else buffer_minutes
        return prerequisite_block.end_minutes_of_day + buffer

    def resolve(
        self,
        tasks: Iterable[DayTask],
        satisfied_template_ids: FrozenSet[str] = frozenset(),
    ) -> DependencyResolution:
        """Build, check and order in one pass; problems come back as flags."""
        graph = self.build_graph(tasks, satisfied_template_ids)
        cycles = self.detect_cycles(graph)
        order, levels = self._kahn(graph, self._cycle_edges(cycles))

        flags: Dict[str, List[ConflictFlag]] = {}
        for dependent_id in graph.missing:
            task = graph.nodes[dependent_id]
            flags.setdefault(dependent_id, []).append(
                ConflictFlag(ConflictKind.MISSING_DEPENDENCY, severity_for(task.is_mandatory))
            )
        for cycle in cycles:
            severity = severity_for(*(graph.nodes[i].is_mandatory for i in cycle))
            for member in cycle:
                related = tuple(sorted(i for i in cycle if i != member))
                flag = ConflictFlag(ConflictKind.DEPENDENCY_VIOLATION, severity, related)
                if flag not in flags.get(member, []):
                    flags.setdefault(member, []).append(flag)

        logger.debug(f"Resolved {len(order)} tasks: {len(cycles)} cycles, {len(graph.missing)} missing")
        return DependencyResolution(graph=graph, order=order, levels=levels, cycles=cycles, flags=flags)

    @staticmethod
    def _cycle_edges(cycles: List[Tuple[str, ...]]) -> Set[Tuple[str, str]]:
        edges: Set[Tuple[str, str]] = set()
        for cycle in cycles:
            for i, node in enumerate(cycle):
                edges.add((node, cycle[(i + 1) % len(cycle)]))
        return edges

    @staticmethod
    def _kahn(graph: DependencyGraph, excluded: Set[Tuple[str, str]]) -> Tuple[List[DayTask], Dict[str, int]]:
        indegree = {node_id: 0 for node_id in graph.nodes}
        for prereq, dep in graph.edges():
            if (prereq, dep) not in excluded:
                indegree[dep] += 1

        def key(node_id: str):
            task = graph.nodes[node_id]
            return (-task.priority, task.template_id, node_id)

        ready = [key(n) for n, d in indegree.items() if d == 0]
        heapq.heapify(ready)
        levels = {n: 0 for n in graph.nodes}
        order: List[DayTask] = []

        while ready:
            node_id = heapq.heappop(ready)[2]
            order.append(graph.nodes[node_id])
            for dep in sorted(graph.dependents[node_id]):
                if (node_id, dep) in excluded:
                    continue
                levels[dep] = max(levels[dep], levels[node_id] + 1)
                indegree[dep] -= 1
                if indegree[dep] == 0:
                    heapq.heappush(ready, key(dep))

        if len(order) < len(graph.nodes):
            # only reachable if a cycle slipped past the excluded edges
            placed = {t.id for t in order}
            leftover = sorted((n for n in graph.nodes if n not in placed), key=key)
            logger.warning(f"Ordering left {len(leftover)} tasks unresolved, appending by priority")
            order.extend(graph.nodes[n] for n in leftover)
        return order, levels
