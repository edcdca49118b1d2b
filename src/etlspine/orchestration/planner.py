"""
Dependency Resolver - turns a step list into a level-ordered ExecutionPlan.

This is the correctness core of the transformation orchestrator:
1. Validate step ids are unique
2. Validate dependencies reference existing steps
3. Depth-first placement: a step goes to ``1 + max(level of its deps)``
4. Fail closed on cycles (never drop a step silently)

Design Principles:
- Pure functions (testable, deterministic)
- No I/O, no execution (that's for TransformationOrchestrator)
- Ties inside a level keep input order
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass

from etlspine.core.logging import get_logger
from etlspine.orchestration.exceptions import (
    CycleDetectedError,
    DependencyError,
    InvalidPipelineError,
)
from etlspine.orchestration.models import TransformationStep

logger = get_logger(__name__)


@dataclass(frozen=True)
class ExecutionPlan:
    """
    Ordered execution levels.

    Every step appears in exactly one level, strictly after the levels of
    all of its dependencies.  Steps inside one level have no dependency
    among themselves and may run concurrently.
    """

    levels: tuple[tuple[str, ...], ...]

    def __len__(self) -> int:
        return len(self.levels)

    def __iter__(self) -> Iterator[tuple[str, ...]]:
        return iter(self.levels)

    @property
    def step_ids(self) -> list[str]:
        """All step ids, level by level."""
        return [step_id for level in self.levels for step_id in level]

    def level_of(self, step_id: str) -> int:
        for index, level in enumerate(self.levels):
            if step_id in level:
                return index
        raise KeyError(step_id)

    def to_list(self) -> list[list[str]]:
        return [list(level) for level in self.levels]


class DependencyResolver:
    """
    Resolves transformation steps into an ExecutionPlan.

    Thread-safe: No mutable state, each resolve() call is independent.

    Example:
        plan = DependencyResolver().resolve(pipeline.steps)
        for level in plan:
            run_concurrently(level)
    """

    def resolve(self, steps: Sequence[TransformationStep]) -> ExecutionPlan:
        """
        Compute the execution levels of *steps*.

        Raises:
            InvalidPipelineError: If two steps share an id
            DependencyError: If a step depends on an unknown step
            CycleDetectedError: If dependencies contain a cycle
        """
        self._validate_unique(steps)
        self._validate_dependencies(steps)

        graph = {s.id: list(s.dependencies) for s in steps}
        order = {s.id: index for index, s in enumerate(steps)}
        placed = self._place(steps, graph)

        depth = max(placed.values(), default=-1) + 1
        levels: list[list[str]] = [[] for _ in range(depth)]
        for step_id in sorted(placed, key=order.__getitem__):
            levels[placed[step_id]].append(step_id)

        plan = ExecutionPlan(levels=tuple(tuple(level) for level in levels))

        logger.debug(
            "planner.resolved",
            step_count=len(steps),
            level_count=len(plan),
        )
        return plan

    def _validate_unique(self, steps: Sequence[TransformationStep]) -> None:
        ids = [s.id for s in steps]
        if len(ids) != len(set(ids)):
            duplicates = sorted({i for i in ids if ids.count(i) > 1})
            raise InvalidPipelineError(f"Duplicate step ids: {duplicates}", field="steps")

    def _validate_dependencies(self, steps: Sequence[TransformationStep]) -> None:
        """Validate all dependencies reference existing steps."""
        step_ids = {s.id for s in steps}

        for step in steps:
            missing = [dep for dep in step.dependencies if dep not in step_ids]
            if missing:
                raise DependencyError(step.id, missing)

    def _place(
        self,
        steps: Sequence[TransformationStep],
        graph: dict[str, list[str]],
    ) -> dict[str, int]:
        """
        Assign a level to every step.

        Depth-first visit with three states:
        - unvisited: not in ``visiting`` and not in ``placed``
        - visiting: on the current path
        - visited: in ``placed`` with its final level

        Meeting a ``visiting`` step again means the path closed a cycle.
        An explicit stack replaces recursion so long chains are safe.
        """
        placed: dict[str, int] = {}
        visiting: set[str] = set()
        path: list[str] = []

        for root in steps:
            if root.id in placed:
                continue

            visiting.add(root.id)
            path.append(root.id)
            stack: list[tuple[str, Iterator[str]]] = [(root.id, iter(graph[root.id]))]

            while stack:
                node, deps = stack[-1]
                descended = False

                for dep in deps:
                    if dep in placed:
                        continue
                    if dep in visiting:
                        cycle_start = path.index(dep)
                        raise CycleDetectedError(path[cycle_start:] + [dep])
                    visiting.add(dep)
                    path.append(dep)
                    stack.append((dep, iter(graph[dep])))
                    descended = True
                    break

                if descended:
                    continue

                stack.pop()
                visiting.discard(node)
                path.pop()
                placed[node] = 1 + max((placed[d] for d in graph[node]), default=-1)

        return placed


def build_execution_plan(steps: Sequence[TransformationStep]) -> ExecutionPlan:
    """Resolve *steps* with a fresh :class:`DependencyResolver`."""
    return DependencyResolver().resolve(steps)


def transitive_dependents(steps: Sequence[TransformationStep], step_id: str) -> set[str]:
    """Return every step that directly or indirectly depends on *step_id*."""
    dependents: dict[str, list[str]] = {s.id: [] for s in steps}
    for step in steps:
        for dep in step.dependencies:
            dependents.setdefault(dep, []).append(step.id)

    found: set[str] = set()
    frontier = list(dependents.get(step_id, []))
    while frontier:
        current = frontier.pop()
        if current in found:
            continue
        found.add(current)
        frontier.extend(dependents.get(current, []))
    return found


# =============================================================================
# Utility Functions
# =============================================================================


def validate_steps(steps: Sequence[TransformationStep]) -> list[str]:
    """
    Validate a step list without raising.

    Returns list of error messages (empty if valid).
    Useful for CLI validation before a pipeline is scheduled.
    """
    errors = []

    ids = [s.id for s in steps]
    if len(ids) != len(set(ids)):
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        errors.append(f"Duplicate step ids: {duplicates}")

    for step in steps:
        missing = [dep for dep in step.dependencies if dep not in ids]
        if missing:
            errors.append(f"Step '{step.id}' depends on unknown steps: {missing}")

    if errors:
        return errors

    try:
        plan = build_execution_plan(steps)
    except CycleDetectedError as e:
        return [str(e)]

    by_id = {s.id: s for s in steps}
    for level in plan:
        writers: dict[str, str] = {}
        for step_id in level:
            table = by_id[step_id].output_table
            if table in writers:
                errors.append(
                    f"Steps '{writers[table]}' and '{step_id}' "
                    f"write {table} concurrently"
                )
            else:
                writers[table] = step_id

    return errors
