from __future__ import annotations

import allure
import pytest
from conftest import spec

from specrun.scheduler.graph import (
    CircularDependencyError,
    DependencyGraph,
    UnresolvedDependencyError,
)

pytestmark = [
    allure.epic("Spec Scheduling"),
    allure.feature("Dependency Graph"),
]


def test_diamond_dependencies_form_three_levels() -> None:
    graph = DependencyGraph.build(
        [
            spec("c", "a"),
            spec("a"),
            spec("b", "a"),
            spec("d", "b", "c"),
        ],
    )

    assert graph.topo_sort() == [["a"], ["b", "c"], ["d"]]


def test_independent_specs_share_one_sorted_level() -> None:
    graph = DependencyGraph.build([spec("z"), spec("m"), spec("a")])

    assert graph.topo_sort() == [["a", "m", "z"]]


def test_every_dependency_sits_in_an_earlier_level() -> None:
    nodes = [
        spec("01"),
        spec("02", "01"),
        spec("03", "01"),
        spec("04", "02"),
        spec("05", "03", "04"),
        spec("06"),
        spec("07", "06", "05"),
    ]
    levels = DependencyGraph.build(nodes).topo_sort()

    level_of = {name: index for index, level in enumerate(levels) for name in level}
    assert sorted(level_of) == sorted(node.name for node in nodes)
    for node in nodes:
        for dependency in node.depends_on:
            assert level_of[dependency] < level_of[node.name]
    for level in levels:
        assert level == sorted(level)


def test_missing_dependency_reports_all_pairs() -> None:
    with pytest.raises(UnresolvedDependencyError) as excinfo:
        DependencyGraph.build(
            [
                spec("a", "ghost"),
                spec("b", "phantom", "a"),
            ],
        )

    assert excinfo.value.missing == [("a", "ghost"), ("b", "phantom")]
    message = str(excinfo.value)
    assert 'a depends on "ghost" which is not in the spec batch' in message
    assert 'b depends on "phantom" which is not in the spec batch' in message


def test_satisfied_names_resolve_external_dependencies() -> None:
    graph = DependencyGraph.build([spec("b", "a"), spec("c", "b")], satisfied=["a"])

    assert graph.satisfied == frozenset({"a"})
    assert graph.dependencies_of("b") == []
    assert graph.topo_sort() == [["b"], ["c"]]


def test_satisfied_names_inside_batch_are_ignored() -> None:
    graph = DependencyGraph.build([spec("a"), spec("b", "a")], satisfied=["a"])

    assert graph.satisfied == frozenset()
    assert graph.topo_sort() == [["a"], ["b"]]


def test_three_node_cycle_is_reported_in_order() -> None:
    graph = DependencyGraph.build([spec("a", "b"), spec("b", "c"), spec("c", "a")])

    assert graph.detect_cycle() == ["a", "b", "c", "a"]
    with pytest.raises(CircularDependencyError, match="a → b → c → a") as excinfo:
        graph.topo_sort()
    assert excinfo.value.cycle == ["a", "b", "c", "a"]


def test_self_dependency_is_a_cycle() -> None:
    graph = DependencyGraph.build([spec("a", "a")])

    assert graph.detect_cycle() == ["a", "a"]
    with pytest.raises(CircularDependencyError):
        graph.topo_sort()


def test_cycle_behind_acyclic_prefix() -> None:
    graph = DependencyGraph.build(
        [spec("a"), spec("b", "a", "d"), spec("c", "b"), spec("d", "c")],
    )

    assert graph.detect_cycle() == ["b", "d", "c", "b"]


def test_acyclic_graph_has_no_cycle() -> None:
    graph = DependencyGraph.build([spec("a"), spec("b", "a"), spec("c", "a", "b")])

    assert graph.detect_cycle() is None


def test_unvalidated_graph_raises_unresolved_on_sort() -> None:
    graph = DependencyGraph([spec("a", "missing")], validate=False)

    assert graph.missing_dependencies() == [("a", "missing")]
    with pytest.raises(UnresolvedDependencyError):
        graph.topo_sort()


def test_duplicate_names_are_rejected() -> None:
    with pytest.raises(ValueError, match="Duplicate spec name"):
        DependencyGraph.build([spec("a"), spec("a")])


def test_empty_graph_has_no_levels() -> None:
    graph = DependencyGraph.build([])

    assert len(graph) == 0
    assert graph.topo_sort() == []


def test_graph_accessors() -> None:
    graph = DependencyGraph.build([spec("b", "a"), spec("a")])

    assert graph.names == ["a", "b"]
    assert "a" in graph
    assert "x" not in graph
    assert graph.node("b").depends_on == frozenset({"a"})
    assert [node.name for node in graph.nodes()] == ["a", "b"]
