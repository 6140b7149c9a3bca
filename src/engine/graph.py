"""Dependency resolution for setup operations.

Builds a directed graph over the requested operations and their declared
dependencies and computes a deterministic execution order: dependencies
first, ties broken by phase, then priority, then id.
"""

import heapq
import logging
from dataclasses import dataclass, field
from typing import Iterable, Iterator

from manifest import Operation, OperationRegistry

logger = logging.getLogger(__name__)

# DFS colors for cycle search
_WHITE, _GRAY, _BLACK = 0, 1, 2


class CycleDetected(Exception):
    """Dependency cycle among the requested operations.

    Attributes:
        cycle: Operation ids along the cycle; first and last are the same id
    """

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}")


@dataclass
class ExecutionPlan:
    """Dependency-ordered sequence of operations for one run.

    Attributes:
        operations: Operations in execution order
        requested: Operation ids explicitly asked for (before expansion)
    """
    operations: list[Operation]
    requested: frozenset[str] = field(default_factory=frozenset)

    @property
    def ids(self) -> list[str]:
        return [op.id for op in self.operations]

    def position(self, op_id: str) -> int:
        """Index of an operation in the plan.

        Raises:
            ValueError: If the operation is not part of the plan
        """
        return self.ids.index(op_id)

    def __contains__(self, op_id: object) -> bool:
        return any(op.id == op_id for op in self.operations)

    def __iter__(self) -> Iterator[Operation]:
        return iter(self.operations)

    def __len__(self) -> int:
        return len(self.operations)

    def __repr__(self) -> str:
        return f"ExecutionPlan({' -> '.join(self.ids)})"


class DependencyResolver:
    """Computes execution plans from an OperationRegistry."""

    def __init__(self, registry: OperationRegistry):
        self.registry = registry

    def closure(self, requested: Iterable[str]) -> dict[str, Operation]:
        """Requested operations plus every transitive dependency.

        Raises:
            OperationNotFound: If a requested id is not registered
        """
        found: dict[str, Operation] = {}
        stack = sorted(set(requested), reverse=True)
        while stack:
            op_id = stack.pop()
            if op_id in found:
                continue
            op = self.registry.lookup(op_id)
            found[op_id] = op
            stack.extend(dep for dep in op.depends if dep not in found)
        return found

    def resolve(self, requested: Iterable[str], include_dependencies: bool = True) -> ExecutionPlan:
        """Compute a valid execution order for the requested operations.

        Args:
            requested: Operation ids to run
            include_dependencies: Expand to the transitive closure. When
                False the plan holds exactly the requested operations and
                missing dependencies are left for pre-flight validation.

        Raises:
            OperationNotFound: If a requested id is not registered
            CycleDetected: If the operations form a dependency cycle
        """
        requested = frozenset(requested)
        if include_dependencies:
            nodes = self.closure(requested)
        else:
            nodes = {op_id: self.registry.lookup(op_id) for op_id in sorted(requested)}

        # Edges only between operations present in the plan
        deps = {
            op_id: sorted(d for d in op.depends if d in nodes)
            for op_id, op in nodes.items()
        }

        self._check_cycles(deps)
        ordered = self._topological_order(nodes, deps)

        plan = ExecutionPlan(operations=ordered, requested=requested)
        logger.debug(f"Resolved plan: {plan}")
        return plan

    def _check_cycles(self, deps: dict[str, list[str]]) -> None:
        """Depth-first search for a back edge; raises on the first cycle."""
        color = dict.fromkeys(deps, _WHITE)
        path: list[str] = []

        def visit(op_id: str) -> None:
            color[op_id] = _GRAY
            path.append(op_id)
            for dep in deps[op_id]:
                if color[dep] == _GRAY:
                    start = path.index(dep)
                    raise CycleDetected(path[start:] + [dep])
                if color[dep] == _WHITE:
                    visit(dep)
            path.pop()
            color[op_id] = _BLACK

        for op_id in sorted(deps):
            if color[op_id] == _WHITE:
                visit(op_id)

    def _topological_order(
        self,
        nodes: dict[str, Operation],
        deps: dict[str, list[str]],
    ) -> list[Operation]:
        """Kahn's algorithm with a heap keyed on (phase, priority, id)."""
        remaining = {op_id: len(d) for op_id, d in deps.items()}
        dependents: dict[str, list[str]] = {op_id: [] for op_id in nodes}
        for op_id, d in deps.items():
            for dep in d:
                dependents[dep].append(op_id)

        ready = [nodes[op_id].sort_key for op_id, count in remaining.items() if count == 0]
        heapq.heapify(ready)

        ordered: list[Operation] = []
        while ready:
            _, _, op_id = heapq.heappop(ready)
            ordered.append(nodes[op_id])
            for child in dependents[op_id]:
                remaining[child] -= 1
                if remaining[child] == 0:
                    heapq.heappush(ready, nodes[child].sort_key)

        if len(ordered) != len(nodes):
            # Every operation must be placed
            stuck = sorted(set(nodes) - {op.id for op in ordered})
            raise CycleDetected(stuck + stuck[:1])
        return ordered


def resolve_plan(
    registry: OperationRegistry,
    selectors: Iterable[str],
    include_dependencies: bool = True,
) -> ExecutionPlan:
    """Expand selectors and resolve them into an execution plan."""
    requested = registry.select(selectors)
    return DependencyResolver(registry).resolve(requested, include_dependencies=include_dependencies)
