"""Tests for runner/scheduler.py: topological project ordering."""

import pytest

from runner.scheduler import (
    CycleError,
    GraphError,
    merge_points,
    predecessors,
    resolve_order,
)


def _project(pid: str, created_at: str) -> dict:
    return {"project_id": pid, "created_at": created_at}


def _edge(source: str, target: str) -> dict:
    return {"source": source, "target": target}


T1 = "2024-01-01T00:00:01+00:00"
T2 = "2024-01-01T00:00:02+00:00"
T3 = "2024-01-01T00:00:03+00:00"
T4 = "2024-01-01T00:00:04+00:00"


class TestResolveOrder:
    def test_linear_chain(self) -> None:
        projects = [_project("C", T1), _project("A", T2), _project("B", T3)]
        edges = [_edge("A", "B"), _edge("B", "C")]
        assert resolve_order(projects, edges) == ["A", "B", "C"]

    def test_diamond(self) -> None:
        projects = [
            _project("A", T1),
            _project("B", T2),
            _project("C", T3),
            _project("D", T4),
        ]
        edges = [_edge("A", "B"), _edge("A", "C"), _edge("B", "D"), _edge("C", "D")]
        order = resolve_order(projects, edges)
        assert order[0] == "A"
        assert order[-1] == "D"
        assert set(order[1:3]) == {"B", "C"}

    def test_ready_projects_ordered_by_created_at(self) -> None:
        projects = [_project("late", T3), _project("early", T1), _project("mid", T2)]
        assert resolve_order(projects, []) == ["early", "mid", "late"]

    def test_equal_timestamps_fall_back_to_project_id(self) -> None:
        projects = [_project("b", T1), _project("a", T1), _project("c", T1)]
        assert resolve_order(projects, []) == ["a", "b", "c"]

    def test_every_edge_respected(self) -> None:
        projects = [_project(p, t) for p, t in [("E", T1), ("D", T2), ("C", T3), ("B", T4)]]
        projects.append(_project("A", "2024-01-01T00:00:05+00:00"))
        edges = [_edge("A", "B"), _edge("A", "C"), _edge("C", "D"), _edge("B", "E"), _edge("D", "E")]
        order = resolve_order(projects, edges)
        position = {pid: i for i, pid in enumerate(order)}
        for edge in edges:
            assert position[edge["source"]] < position[edge["target"]]

    def test_deterministic(self) -> None:
        projects = [_project(p, T1) for p in "fedcba"]
        edges = [_edge("a", "d"), _edge("b", "d"), _edge("c", "e")]
        first = resolve_order(projects, edges)
        for _ in range(5):
            assert resolve_order(list(reversed(projects)), list(reversed(edges))) == first

    def test_parallel_edges_ignored(self) -> None:
        projects = [_project("A", T1), _project("B", T2)]
        edges = [_edge("A", "B"), _edge("A", "B")]
        assert resolve_order(projects, edges) == ["A", "B"]

    def test_empty(self) -> None:
        assert resolve_order([], []) == []


class TestCycles:
    def test_two_node_cycle(self) -> None:
        projects = [_project("A", T1), _project("B", T2)]
        with pytest.raises(CycleError) as exc_info:
            resolve_order(projects, [_edge("A", "B"), _edge("B", "A")])
        assert exc_info.value.unresolved == ["A", "B"]

    def test_cycle_downstream_of_valid_prefix(self) -> None:
        projects = [_project("A", T1), _project("B", T2), _project("C", T3)]
        edges = [_edge("A", "B"), _edge("B", "C"), _edge("C", "B")]
        with pytest.raises(CycleError) as exc_info:
            resolve_order(projects, edges)
        assert "A" not in exc_info.value.unresolved
        assert "cycle detected" in str(exc_info.value)

    def test_cycle_error_is_graph_error(self) -> None:
        assert issubclass(CycleError, GraphError)


class TestMalformedGraphs:
    def test_unknown_endpoint(self) -> None:
        with pytest.raises(GraphError, match="unknown project 'ghost'"):
            resolve_order([_project("A", T1)], [_edge("A", "ghost")])

    def test_self_loop(self) -> None:
        with pytest.raises(GraphError, match="self loop"):
            resolve_order([_project("A", T1)], [_edge("A", "A")])

    def test_duplicate_project(self) -> None:
        with pytest.raises(GraphError, match="duplicate"):
            resolve_order([_project("A", T1), _project("A", T2)], [])


class TestMergePoints:
    def test_predecessors_in_edge_order(self) -> None:
        edges = [_edge("B", "D"), _edge("C", "D"), _edge("A", "B"), _edge("B", "D")]
        assert predecessors(edges) == {"D": ["B", "C"], "B": ["A"]}

    def test_only_multi_parent_targets(self) -> None:
        edges = [_edge("A", "B"), _edge("A", "C"), _edge("B", "D"), _edge("C", "D")]
        assert merge_points(edges) == {"D": ["B", "C"]}
