from conftest import make_task

from dayplanner.models.entities import ConflictFlag, ConflictKind, ScheduledBlock, Severity, TimeWindow


def ids(tasks):
    return [t.template_id for t in tasks]


class TestOrdering:
    """Topological order with priority tie-breaks."""

    def test_chain_orders_prerequisites_first(self, resolver):
        tasks = [
            make_task("c", duration_minutes=10, depends_on="b"),
            make_task("b", duration_minutes=10, depends_on="a"),
            make_task("a", duration_minutes=10),
        ]
        resolution = resolver.resolve(tasks)
        assert resolution.cycles == []
        assert ids(resolution.order) == ["a", "b", "c"]
        assert [resolution.levels[t.id] for t in resolution.order] == [0, 1, 2]

    def test_ties_by_priority_then_template(self, resolver):
        """Among ready tasks, higher priority first, then lower template id."""
        tasks = [
            make_task("low", duration_minutes=10, priority=1),
            make_task("high", duration_minutes=10, priority=5),
            make_task("mid-b", duration_minutes=10, priority=3),
            make_task("mid-a", duration_minutes=10, priority=3),
        ]
        assert ids(resolver.topological_order(resolver.build_graph(tasks))) == ["high", "mid-a", "mid-b", "low"]

    def test_every_task_exactly_once(self, resolver):
        tasks = [make_task(f"t{i}", duration_minutes=10, depends_on=f"t{i - 1}" if i else None) for i in range(6)]
        order = resolver.topological_order(resolver.build_graph(reversed(tasks)))
        assert sorted(ids(order)) == sorted(t.template_id for t in tasks)
        assert ids(order) == [f"t{i}" for i in range(6)]


class TestCycles:
    """Circular dependencies are contained, not raised."""

    def test_two_task_cycle(self, resolver):
        tasks = [
            make_task("a", duration_minutes=10, depends_on="b"),
            make_task("b", duration_minutes=10, depends_on="a"),
        ]
        resolution = resolver.resolve(tasks)
        assert len(resolution.cycles) == 1
        assert set(resolution.cycles[0]) == {t.id for t in tasks}
        assert sorted(ids(resolution.order)) == ["a", "b"]
        for task in tasks:
            kinds = [f.kind for f in resolution.flags[task.id]]
            assert kinds == [ConflictKind.DEPENDENCY_VIOLATION]
            assert resolution.prerequisite_of(task.id) is None

    def test_self_dependency_is_a_cycle(self, resolver):
        """A task that depends on itself is reported, not rejected."""
        task = make_task("a", duration_minutes=10, depends_on="a")
        resolution = resolver.resolve([task])
        assert resolution.cycles == [(task.id,)]
        assert ids(resolution.order) == ["a"]
        assert resolution.flags[task.id] == [
            ConflictFlag(ConflictKind.DEPENDENCY_VIOLATION, Severity.LOW, ()),
        ]
        assert resolution.prerequisite_of(task.id) is None

    def test_cycle_severity_follows_mandatory(self, resolver):
        tasks = [
            make_task("a", duration_minutes=10, depends_on="b", is_mandatory=True),
            make_task("b", duration_minutes=10, depends_on="a", is_mandatory=True),
        ]
        resolution = resolver.resolve(tasks)
        assert all(f.severity == Severity.HIGH for found in resolution.flags.values() for f in found)

    def test_tasks_outside_cycle_still_ordered(self, resolver):
        tasks = [
            make_task("a", duration_minutes=10, depends_on="b"),
            make_task("b", duration_minutes=10, depends_on="a"),
            make_task("c", duration_minutes=10, depends_on="a"),
        ]
        resolution = resolver.resolve(tasks)
        order = ids(resolution.order)
        assert order.index("a") < order.index("c")
        assert "c@2024-03-04" not in resolution.flags
        assert resolution.prerequisite_of("c@2024-03-04") == "a@2024-03-04"

    def test_acyclic_graph_reports_no_cycles(self, resolver):
        tasks = [
            make_task("a", duration_minutes=10),
            make_task("b", duration_minutes=10, depends_on="a"),
            make_task("c", duration_minutes=10, depends_on="a"),
        ]
        assert resolver.detect_cycles(resolver.build_graph(tasks)) == []


class TestMissingDependencies:
    """Prerequisites that do not take part in the day."""

    def test_missing_prerequisite_flagged(self, resolver):
        task = make_task("b", duration_minutes=10, depends_on="ghost")
        resolution = resolver.resolve([task])
        assert resolution.flags[task.id][0].kind == ConflictKind.MISSING_DEPENDENCY
        assert resolution.flags[task.id][0].severity == Severity.LOW
        assert resolution.prerequisite_of(task.id) is None

    def test_missing_prerequisite_of_mandatory_task(self, resolver):
        task = make_task("b", duration_minutes=10, depends_on="ghost", is_mandatory=True)
        assert resolver.resolve([task]).flags[task.id][0].severity == Severity.MEDIUM

    def test_completed_prerequisite_is_satisfied(self, resolver):
        task = make_task("b", duration_minutes=10, depends_on="a")
        resolution = resolver.resolve([task], satisfied_template_ids=frozenset({"a"}))
        assert resolution.flags == {}


class TestEarliestStart:
    """Dependents start after the prerequisite plus the buffer."""

    def test_after_prerequisite_with_buffer(self, resolver):
        task = make_task("b", duration_minutes=10, depends_on="a")
        block = ScheduledBlock("a@2024-03-04", "a", 540, 570, TimeWindow.MORNING)
        assert resolver.earliest_start(task, block) == 575
        assert resolver.earliest_start(task, block, buffer_minutes=0) == 570

    def test_unconstrained(self, resolver):
        assert resolver.earliest_start(make_task("b", duration_minutes=10), None) == 0
