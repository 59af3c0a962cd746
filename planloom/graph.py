"""Dependency graph construction, validation and ordering.

The graph is keyed by step number and edges are plain integers, so a cyclic
or dangling declaration is just data that the validator can report on. Every
query rebuilds what it needs from the current step statuses; nothing here is
cached.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set

from .errors import StepNotFoundError
from .models import DONE_STATUSES, Plan, Step, TaskStatus

LONG_CHAIN_THRESHOLD = 5
BOTTLENECK_THRESHOLD = 3

_WHITE, _GRAY, _BLACK = 0, 1, 2


@dataclass(slots=True)
class StepDependency:
    step_number: int
    depends_on: List[int] = field(default_factory=list)
    blocked_by: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_number": self.step_number,
            "depends_on": list(self.depends_on),
            "blocked_by": list(self.blocked_by),
        }


@dataclass(slots=True)
class DependencyGraph:
    """Forward and reverse dependency edges for every step of a plan."""

    dependencies: Dict[int, StepDependency] = field(default_factory=dict)
    roots: List[int] = field(default_factory=list)
    leaves: List[int] = field(default_factory=list)
    has_circular: bool = False
    circular_chains: List[List[int]] = field(default_factory=list)

    def __contains__(self, step_number: int) -> bool:
        return step_number in self.dependencies

    def depends_on(self, step_number: int) -> List[int]:
        entry = self.dependencies.get(step_number)
        return list(entry.depends_on) if entry else []

    def resolved_depends_on(self, step_number: int) -> List[int]:
        """Dependencies of ``step_number`` that are steps of the plan."""
        return [d for d in self.depends_on(step_number) if d in self.dependencies]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dependencies": {str(n): dep.to_dict() for n, dep in self.dependencies.items()},
            "roots": list(self.roots),
            "leaves": list(self.leaves),
            "has_circular": self.has_circular,
            "circular_chains": [list(chain) for chain in self.circular_chains],
        }


@dataclass(slots=True)
class DependencyIssue:
    """A validation error or warning about the dependency graph."""

    kind: str
    step_number: int
    message: str
    related_steps: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind,
            "step_number": self.step_number,
            "related_steps": list(self.related_steps),
            "message": self.message,
        }


@dataclass(slots=True)
class ValidationResult:
    valid: bool
    errors: List[DependencyIssue] = field(default_factory=list)
    warnings: List[DependencyIssue] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": [error.to_dict() for error in self.errors],
            "warnings": [warning.to_dict() for warning in self.warnings],
        }


@dataclass(slots=True)
class ExecutionOrder:
    order: List[int] = field(default_factory=list)
    levels: List[List[int]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"order": list(self.order), "levels": [list(level) for level in self.levels]}


@dataclass(slots=True)
class CriticalPath:
    path: List[int] = field(default_factory=list)
    length: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"path": list(self.path), "length": self.length}


def build_dependency_graph(plan: Plan, dependency_map: Optional[Mapping[int, Sequence[int]]] = None) -> DependencyGraph:
    """Build the graph for ``plan``.

    ``dependency_map`` defaults to the dependencies recorded on each step. A
    step missing from the map has no dependencies. References to steps that
    do not exist are kept in ``depends_on`` as declared.
    """
    if dependency_map is None:
        dependency_map = plan.dependency_map()

    numbers = sorted(plan.step_numbers())
    dependencies = {
        n: StepDependency(step_number=n, depends_on=sorted(set(dependency_map.get(n, ()))))
        for n in numbers
    }

    for n in numbers:
        for target in dependencies[n].depends_on:
            if target in dependencies:
                dependencies[target].blocked_by.append(n)

    chains = find_cycles({n: dep.depends_on for n, dep in dependencies.items()})

    return DependencyGraph(
        dependencies=dependencies,
        roots=[n for n in numbers if not dependencies[n].depends_on],
        leaves=[n for n in numbers if not dependencies[n].blocked_by],
        has_circular=bool(chains),
        circular_chains=chains,
    )


def _normalize_cycle(chain: List[int]) -> List[int]:
    start = chain.index(min(chain))
    return chain[start:] + chain[:start]


def find_cycles(edges: Mapping[int, Sequence[int]]) -> List[List[int]]:
    """Find the distinct cycles reachable by a three-colour depth-first search.

    Nodes are visited in ascending order. Each cycle is reported once,
    rotated to start at its smallest step number; the start is not repeated
    at the end. A self-dependency is the one-node cycle ``[n]``.
    """
    color = {node: _WHITE for node in edges}
    chains: List[List[int]] = []
    seen: Set[tuple] = set()

    for start in sorted(edges):
        if color[start] != _WHITE:
            continue

        path = [start]
        stack = [iter(edges[start])]
        color[start] = _GRAY

        while stack:
            target = next(stack[-1], None)
            if target is None:
                color[path.pop()] = _BLACK
                stack.pop()
                continue
            if target not in color:
                continue
            if color[target] == _GRAY:
                chain = _normalize_cycle(path[path.index(target):])
                key = tuple(chain)
                if key not in seen:
                    seen.add(key)
                    chains.append(chain)
            elif color[target] == _WHITE:
                color[target] = _GRAY
                path.append(target)
                stack.append(iter(edges[target]))

    return chains


def compute_execution_order(graph: DependencyGraph) -> ExecutionOrder:
    """Group steps into levels that may run side by side.

    A step's level is one more than the deepest of its dependencies; edges
    to missing steps are ignored. A cyclic graph has no order.
    """
    if graph.has_circular:
        return ExecutionOrder()

    in_degree = {n: len(set(graph.resolved_depends_on(n))) for n in graph.dependencies}
    current = sorted(n for n, degree in in_degree.items() if degree == 0)
    levels: List[List[int]] = []

    while current:
        levels.append(current)
        following: List[int] = []
        for node in current:
            for dependent in graph.dependencies[node].blocked_by:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    following.append(dependent)
        current = sorted(following)

    order = [n for level in levels for n in level]
    return ExecutionOrder(order=order, levels=levels)


def find_critical_path(graph: DependencyGraph) -> CriticalPath:
    """Return a longest dependency chain; ``length`` counts its steps.

    When several chains share the maximum length, the one ending at the
    first such step in execution order is returned.
    """
    order = compute_execution_order(graph).order
    if not order:
        return CriticalPath()

    longest = {n: 1 for n in order}
    previous: Dict[int, Optional[int]] = {n: None for n in order}

    for node in order:
        for dependent in graph.dependencies[node].blocked_by:
            if longest[node] + 1 > longest[dependent]:
                longest[dependent] = longest[node] + 1
                previous[dependent] = node

    end = order[0]
    for node in order:
        if longest[node] > longest[end]:
            end = node

    path: List[int] = []
    current: Optional[int] = end
    while current is not None:
        path.append(current)
        current = previous[current]
    path.reverse()

    return CriticalPath(path=path, length=longest[end])


def longest_chain_length(graph: DependencyGraph) -> int:
    """Number of levels in the execution order (0 for a cyclic graph)."""
    return len(compute_execution_order(graph).levels)


def _chain_message(chain: List[int]) -> str:
    closed = chain + chain[:1]
    return "Circular dependency detected: " + " → ".join(f"Step {n}" for n in closed)


def validate_dependencies(plan: Plan, graph: Optional[DependencyGraph] = None) -> ValidationResult:
    """Report cycles and references to missing steps as errors.

    Long chains and bottleneck steps are reported as warnings and do not
    affect ``valid``.
    """
    if graph is None:
        graph = build_dependency_graph(plan)

    errors: List[DependencyIssue] = []
    warnings: List[DependencyIssue] = []

    for chain in graph.circular_chains:
        errors.append(DependencyIssue(
            kind="circular",
            step_number=chain[0],
            related_steps=list(chain),
            message=_chain_message(chain),
        ))

    for n, entry in graph.dependencies.items():
        for target in entry.depends_on:
            if target not in graph.dependencies:
                errors.append(DependencyIssue(
                    kind="invalid-step",
                    step_number=n,
                    related_steps=[target],
                    message=f"Step {n} depends on non-existent Step {target}",
                ))

    chain_length = longest_chain_length(graph)
    if chain_length > LONG_CHAIN_THRESHOLD:
        warnings.append(DependencyIssue(
            kind="long-chain",
            step_number=graph.roots[0] if graph.roots else 1,
            message=f"Plan has a long dependency chain ({chain_length} steps). Consider parallelizing work.",
        ))

    for n, entry in graph.dependencies.items():
        if len(entry.blocked_by) > BOTTLENECK_THRESHOLD:
            warnings.append(DependencyIssue(
                kind="bottleneck",
                step_number=n,
                related_steps=list(entry.blocked_by),
                message=f"Step {n} is a bottleneck ({len(entry.blocked_by)} steps depend on it)",
            ))

    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)


def get_ready_steps(plan: Plan, graph: Optional[DependencyGraph] = None) -> List[Step]:
    """Pending steps whose every dependency is completed or skipped.

    A dependency on a step that does not exist is never satisfied.
    """
    statuses = {step.number: step.status for step in plan.steps}
    ready = []
    for step in sorted(plan.steps, key=lambda s: s.number):
        if step.status != TaskStatus.PENDING:
            continue
        depends_on = graph.depends_on(step.number) if graph is not None else step.dependencies
        if all(statuses.get(d) in DONE_STATUSES for d in depends_on):
            ready.append(step)
    return ready


def get_dependency_chain(plan: Plan, step_number: int, graph: Optional[DependencyGraph] = None) -> List[int]:
    """All transitive dependencies of a step, sorted ascending."""
    if plan.get_step(step_number) is None:
        raise StepNotFoundError(step_number)
    if graph is None:
        graph = build_dependency_graph(plan)

    found: Set[int] = set()
    pending = list(graph.depends_on(step_number))
    while pending:
        n = pending.pop()
        if n in found:
            continue
        found.add(n)
        pending.extend(graph.depends_on(n))

    found.discard(step_number)
    return sorted(found)


def get_blocked_steps(plan: Plan, step_number: int, graph: Optional[DependencyGraph] = None) -> List[Step]:
    """Steps that directly depend on ``step_number``."""
    if graph is None:
        graph = build_dependency_graph(plan)
    entry = graph.dependencies.get(step_number)
    if entry is None:
        return []
    dependents = set(entry.blocked_by)
    return [step for step in sorted(plan.steps, key=lambda s: s.number) if step.number in dependents]
