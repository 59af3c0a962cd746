"""Unit tests for the dependency graph."""

import pytest

from planloom.errors import StepNotFoundError
from planloom.graph import (
    build_dependency_graph,
    compute_execution_order,
    find_critical_path,
    find_cycles,
    get_blocked_steps,
    get_dependency_chain,
    get_ready_steps,
    longest_chain_length,
    validate_dependencies,
)
from planloom.models import TaskStatus

from conftest import build_plan

CYCLIC_DEPENDENCIES = {1: [3], 2: [1, 3], 3: [2]}


class TestBuildDependencyGraph:
    """Test cases for graph construction."""

    def test_roots_and_leaves(self, five_step_plan):
        """Test roots, leaves and reverse edges of the five-step plan."""
        graph = build_dependency_graph(five_step_plan)

        assert graph.roots == [1]
        assert graph.leaves == [5]
        assert not graph.has_circular
        assert graph.dependencies[2].blocked_by == [3, 4]
        assert graph.dependencies[5].depends_on == [3, 4]

    def test_dependency_map_override(self, five_step_plan):
        """Test building from an explicit dependency map."""
        graph = build_dependency_graph(five_step_plan, {2: [1]})

        assert graph.roots == [1, 3, 4, 5]
        assert graph.depends_on(3) == []

    def test_dangling_reference_is_kept(self):
        """Test that edges to missing steps stay in depends_on only."""
        plan = build_plan({1: [], 2: [1, 99]})
        graph = build_dependency_graph(plan)

        assert graph.depends_on(2) == [1, 99]
        assert graph.resolved_depends_on(2) == [1]
        assert 99 not in graph

    def test_cyclic_plan(self):
        """Test that a cycle is flagged with a chain covering its steps."""
        graph = build_dependency_graph(build_plan(CYCLIC_DEPENDENCIES))

        assert graph.has_circular
        assert any(set(chain) == {1, 2, 3} for chain in graph.circular_chains)

    def test_to_dict(self, five_step_plan):
        """Test the serialized form."""
        data = build_dependency_graph(five_step_plan).to_dict()

        assert data["roots"] == [1]
        assert data["dependencies"]["3"]["depends_on"] == [1, 2]


class TestFindCycles:
    """Test cases for cycle detection."""

    def test_acyclic(self):
        """Test a graph without cycles."""
        assert find_cycles({1: [], 2: [1], 3: [2]}) == []

    def test_cycles_are_normalized(self):
        """Test that chains start at their smallest step and are reported once."""
        assert find_cycles(CYCLIC_DEPENDENCIES) == [[1, 3, 2], [2, 3]]

    def test_self_dependency(self):
        """Test a step that depends on itself."""
        assert find_cycles({1: [1], 2: [1]}) == [[1]]

    def test_every_chain_is_a_real_cycle(self):
        """Test that each reported chain follows existing edges back to its start."""
        edges = {1: [2], 2: [3], 3: [1, 4], 4: [5], 5: [4]}
        chains = find_cycles(edges)

        assert chains
        for chain in chains:
            for current, following in zip(chain, chain[1:] + chain[:1]):
                assert following in edges[current]

    def test_missing_targets_are_ignored(self):
        """Test that edges to unknown nodes are not followed."""
        assert find_cycles({1: [42]}) == []


class TestExecutionOrder:
    """Test cases for level grouping."""

    def test_levels(self, five_step_plan):
        """Test the five-step plan's levels."""
        result = compute_execution_order(build_dependency_graph(five_step_plan))

        assert result.levels == [[1], [2], [3, 4], [5]]
        assert result.order == [1, 2, 3, 4, 5]

    def test_order_respects_dependencies(self, five_step_plan):
        """Test that every dependency precedes its dependent."""
        order = compute_execution_order(build_dependency_graph(five_step_plan)).order
        position = {n: i for i, n in enumerate(order)}

        for step in five_step_plan.steps:
            for dependency in step.dependencies:
                assert position[dependency] < position[step.number]

    def test_dangling_edges_are_ignored(self):
        """Test that a missing dependency does not hold a step back."""
        graph = build_dependency_graph(build_plan({1: [], 2: [1, 99]}))
        assert compute_execution_order(graph).levels == [[1], [2]]

    def test_cyclic_graph_has_no_order(self):
        """Test that a cyclic plan yields an empty order."""
        result = compute_execution_order(build_dependency_graph(build_plan(CYCLIC_DEPENDENCIES)))

        assert result.order == []
        assert result.levels == []

    def test_longest_chain_length(self, five_step_plan):
        """Test the chain length of the five-step plan."""
        assert longest_chain_length(build_dependency_graph(five_step_plan)) == 4


class TestCriticalPath:
    """Test cases for the longest chain."""

    def test_five_step_plan(self, five_step_plan):
        """Test the critical path of the five-step plan."""
        result = find_critical_path(build_dependency_graph(five_step_plan))

        assert result.path == [1, 2, 3, 5]
        assert result.length == 4

    def test_independent_steps(self):
        """Test that a tie picks the first step in execution order."""
        result = find_critical_path(build_dependency_graph(build_plan({1: [], 2: [], 3: []})))

        assert result.path == [1]
        assert result.length == 1

    def test_cyclic_graph(self):
        """Test that a cyclic plan has no critical path."""
        result = find_critical_path(build_dependency_graph(build_plan(CYCLIC_DEPENDENCIES)))

        assert result.path == []
        assert result.length == 0


class TestValidateDependencies:
    """Test cases for graph validation."""

    def test_valid_plan(self, five_step_plan):
        """Test a plan without problems."""
        result = validate_dependencies(five_step_plan)

        assert result.valid
        assert result.errors == []
        assert result.warnings == []

    def test_missing_step(self):
        """Test a reference to a step that does not exist."""
        result = validate_dependencies(build_plan({1: [], 2: [1, 99]}))

        assert not result.valid
        assert len(result.errors) == 1
        error = result.errors[0]
        assert error.kind == "invalid-step"
        assert error.step_number == 2
        assert error.related_steps == [99]
        assert error.message == "Step 2 depends on non-existent Step 99"

    def test_cycle(self):
        """Test that each cycle is reported with a closed chain message."""
        result = validate_dependencies(build_plan(CYCLIC_DEPENDENCIES))

        assert not result.valid
        circular = [error for error in result.errors if error.kind == "circular"]
        assert len(circular) == 2
        assert circular[0].message == "Circular dependency detected: Step 1 → Step 3 → Step 2 → Step 1"
        assert circular[0].to_dict()["type"] == "circular"

    def test_long_chain_warning(self):
        """Test that a chain of more than five steps is a warning."""
        plan = build_plan({n: ([n - 1] if n > 1 else []) for n in range(1, 7)})
        result = validate_dependencies(plan)

        assert result.valid
        assert [warning.kind for warning in result.warnings] == ["long-chain"]
        assert "6 steps" in result.warnings[0].message

    def test_bottleneck_warning(self):
        """Test that a step with more than three dependents is a warning."""
        plan = build_plan({1: [], 2: [1], 3: [1], 4: [1], 5: [1]})
        result = validate_dependencies(plan)

        assert result.valid
        assert len(result.warnings) == 1
        warning = result.warnings[0]
        assert warning.kind == "bottleneck"
        assert warning.step_number == 1
        assert warning.related_steps == [2, 3, 4, 5]

    def test_three_dependents_is_not_a_bottleneck(self):
        """Test the bottleneck threshold boundary."""
        plan = build_plan({1: [], 2: [1], 3: [1], 4: [1]})
        assert validate_dependencies(plan).warnings == []


class TestReadySteps:
    """Test cases for ready step selection."""

    def test_progression(self, five_step_plan):
        """Test the ready set as steps complete."""
        assert [s.number for s in get_ready_steps(five_step_plan)] == [1]

        five_step_plan.get_step(1).status = TaskStatus.COMPLETED
        assert [s.number for s in get_ready_steps(five_step_plan)] == [2]

        five_step_plan.get_step(2).status = TaskStatus.COMPLETED
        assert [s.number for s in get_ready_steps(five_step_plan)] == [3, 4]

    def test_skipped_dependency_is_satisfied(self, five_step_plan):
        """Test that a skipped dependency unblocks its dependents."""
        five_step_plan.get_step(1).status = TaskStatus.SKIPPED
        assert [s.number for s in get_ready_steps(five_step_plan)] == [2]

    def test_only_pending_steps(self, five_step_plan):
        """Test that started steps are no longer ready."""
        five_step_plan.get_step(1).status = TaskStatus.IN_PROGRESS
        assert get_ready_steps(five_step_plan) == []

    def test_missing_dependency_is_never_satisfied(self):
        """Test that a dangling dependency keeps the step waiting."""
        plan = build_plan({1: [], 2: [1, 99]}, statuses={1: TaskStatus.COMPLETED})
        assert get_ready_steps(plan) == []

    def test_ready_set_only_grows_with_completion(self, five_step_plan):
        """Test that completing a ready step never removes another ready step."""
        before = {s.number for s in get_ready_steps(five_step_plan)}
        while before:
            first = min(before)
            five_step_plan.get_step(first).status = TaskStatus.COMPLETED
            after = {s.number for s in get_ready_steps(five_step_plan)}
            assert before - {first} <= after
            before = after


class TestDependencyChains:
    """Test cases for transitive dependency queries."""

    def test_chain(self, five_step_plan):
        """Test every transitive dependency of the final step."""
        assert get_dependency_chain(five_step_plan, 5) == [1, 2, 3, 4]
        assert get_dependency_chain(five_step_plan, 1) == []

    def test_chain_in_cycle_excludes_start(self):
        """Test that a cyclic chain terminates and leaves out the step itself."""
        assert get_dependency_chain(build_plan(CYCLIC_DEPENDENCIES), 1) == [2, 3]

    def test_unknown_step(self, five_step_plan):
        """Test that an unknown step raises."""
        with pytest.raises(StepNotFoundError):
            get_dependency_chain(five_step_plan, 42)

    def test_blocked_steps(self, five_step_plan):
        """Test the direct dependents of a step."""
        assert [s.number for s in get_blocked_steps(five_step_plan, 2)] == [3, 4]
        assert get_blocked_steps(five_step_plan, 5) == []
        assert get_blocked_steps(five_step_plan, 42) == []
