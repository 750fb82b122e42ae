"""Topological scheduler for prompt-relay scripts.

Turns a script's projects and edges into a run order with Kahn's
algorithm. Ties between ready projects are broken by the caller-supplied
``created_at`` (then ``project_id``) so the same graph always yields the
same order. Pure functions only: no DB access, no logging side effects.
"""

import heapq
from collections.abc import Iterable, Mapping
from typing import Any


class GraphError(Exception):
    """Raised when the project graph is malformed (unknown endpoints, self loops)."""


class CycleError(GraphError):
    """Raised when the project graph contains a cycle."""

    def __init__(self, unresolved: list[str]) -> None:
        self.unresolved = unresolved
        super().__init__(f"cycle detected among projects: {', '.join(unresolved)}")


def _build_graph(
    projects: Iterable[Mapping[str, Any]], edges: Iterable[Mapping[str, Any]]
) -> tuple[dict[str, tuple[str, str]], dict[str, list[str]], dict[str, int]]:
    sort_keys: dict[str, tuple[str, str]] = {}
    for project in projects:
        project_id = project["project_id"]
        if project_id in sort_keys:
            raise GraphError(f"duplicate project '{project_id}'")
        sort_keys[project_id] = (str(project.get("created_at") or ""), project_id)

    successors: dict[str, list[str]] = {pid: [] for pid in sort_keys}
    in_degree: dict[str, int] = {pid: 0 for pid in sort_keys}
    seen: set[tuple[str, str]] = set()

    for edge in edges:
        source, target = edge["source"], edge["target"]
        if source not in sort_keys or target not in sort_keys:
            missing = source if source not in sort_keys else target
            raise GraphError(f"edge {source} -> {target} references unknown project '{missing}'")
        if source == target:
            raise GraphError(f"self loop on project '{source}'")
        # Parallel edges add nothing to the ordering constraint
        if (source, target) in seen:
            continue
        seen.add((source, target))
        successors[source].append(target)
        in_degree[target] += 1

    return sort_keys, successors, in_degree


def resolve_order(
    projects: Iterable[Mapping[str, Any]], edges: Iterable[Mapping[str, Any]]
) -> list[str]:
    """Return project ids in an order that respects every edge.

    Args:
        projects: Mappings with ``project_id`` and ``created_at``.
        edges: Mappings with ``source`` and ``target`` project ids.

    Returns:
        Project ids, sources always before their targets.

    Raises:
        GraphError: If an edge references an unknown project or is a self loop.
        CycleError: If no zero in-degree project remains while some are unordered.
    """
    sort_keys, successors, in_degree = _build_graph(projects, edges)

    ready = [sort_keys[pid] for pid, degree in in_degree.items() if degree == 0]
    heapq.heapify(ready)

    order: list[str] = []
    while ready:
        _, current = heapq.heappop(ready)
        order.append(current)
        for neighbor in successors[current]:
            in_degree[neighbor] -= 1
            if in_degree[neighbor] == 0:
                heapq.heappush(ready, sort_keys[neighbor])

    if len(order) != len(sort_keys):
        unresolved = sorted(
            (pid for pid, degree in in_degree.items() if degree > 0),
            key=lambda pid: sort_keys[pid],
        )
        raise CycleError(unresolved)

    return order


def predecessors(edges: Iterable[Mapping[str, Any]]) -> dict[str, list[str]]:
    """Map each target project id to its distinct source project ids, in edge order."""
    result: dict[str, list[str]] = {}
    for edge in edges:
        sources = result.setdefault(edge["target"], [])
        if edge["source"] not in sources:
            sources.append(edge["source"])
    return result


def merge_points(edges: Iterable[Mapping[str, Any]]) -> dict[str, list[str]]:
    """Return targets with more than one predecessor (the merge points)."""
    return {
        target: sources
        for target, sources in predecessors(edges).items()
        if len(sources) > 1
    }
