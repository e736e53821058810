"""DAG validation helpers."""

from __future__ import annotations

import heapq

from taskdag.config.schema import DagSpec
from taskdag.dag.build import ValidatedGraph, build_adjacency
from taskdag.util.errors import CycleDetectedError, DuplicateTaskIdError, UnknownDependencyError


def topological_order(
    dependents: list[list[int]], in_degree: list[int]
) -> tuple[list[int], set[int]]:
    """Kahn's algorithm with lowest-index tie-break.

    Returns the ordered indices and the indices that could not be ordered.
    """
    degrees = list(in_degree)
    heap = [node for node, degree in enumerate(degrees) if degree == 0]
    heapq.heapify(heap)
    order: list[int] = []

    while heap:
        current = heapq.heappop(heap)
        order.append(current)
        for nxt in dependents[current]:
            degrees[nxt] -= 1
            if degrees[nxt] == 0:
                heapq.heappush(heap, nxt)

    leftover = set(range(len(degrees))) - set(order)
    return order, leftover


def validate(spec: DagSpec) -> ValidatedGraph:
    """Validate ids, dependency references and acyclicity of ``spec``."""
    index: dict[str, int] = {}
    for position, task in enumerate(spec.tasks):
        if task.id in index:
            raise DuplicateTaskIdError(task.id)
        index[task.id] = position

    for task in spec.tasks:
        for dep in sorted(task.dependencies):
            if dep not in index:
                raise UnknownDependencyError(task.id, dep)

    dependencies, dependents, in_degree = build_adjacency(spec, index)
    order, leftover = topological_order(dependents, in_degree)
    if leftover:
        raise CycleDetectedError(frozenset(spec.tasks[node].id for node in leftover))

    return ValidatedGraph(
        task_ids=tuple(task.id for task in spec.tasks),
        index=index,
        dependencies=tuple(tuple(deps) for deps in dependencies),
        dependents=tuple(tuple(children) for children in dependents),
        order=tuple(order),
    )
