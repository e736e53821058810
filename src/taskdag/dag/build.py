"""Build index-based graph structures from a DAG spec."""

from __future__ import annotations

from dataclasses import dataclass

from taskdag.config.schema import DagSpec


@dataclass(frozen=True, slots=True)
class ValidatedGraph:
    """Adjacency of a validated DAG keyed by spec-order indices."""

    task_ids: tuple[str, ...]
    index: dict[str, int]
    dependencies: tuple[tuple[int, ...], ...]
    dependents: tuple[tuple[int, ...], ...]
    order: tuple[int, ...]

    def __len__(self) -> int:
        return len(self.task_ids)

    def dependencies_of(self, task_id: str) -> list[str]:
        return [self.task_ids[i] for i in self.dependencies[self.index[task_id]]]

    def dependents_of(self, task_id: str) -> list[str]:
        return [self.task_ids[i] for i in self.dependents[self.index[task_id]]]

    def topological_order(self) -> list[str]:
        return [self.task_ids[i] for i in self.order]


def build_adjacency(
    spec: DagSpec, index: dict[str, int]
) -> tuple[list[list[int]], list[list[int]], list[int]]:
    """Return dependencies, dependents and in-degree by task index.

    Every dependency must already resolve through ``index``. Dependency
    lists are sorted by index so traversal follows spec order.
    """
    size = len(spec.tasks)
    dependencies: list[list[int]] = [[] for _ in range(size)]
    dependents: list[list[int]] = [[] for _ in range(size)]
    in_degree = [0] * size

    for task in spec.tasks:
        node = index[task.id]
        deps = sorted(index[dep] for dep in task.dependencies)
        dependencies[node] = deps
        in_degree[node] = len(deps)
        for dep in deps:
            dependents[dep].append(node)

    return dependencies, dependents, in_degree
