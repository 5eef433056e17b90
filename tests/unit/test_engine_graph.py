from __future__ import annotations

import pytest

from stackform.core.expressions import Const, ListExpr, Ref, Template
from stackform.engine.graph import DependencyGraph, ResourceGraph, ResourceNode
from stackform.errors import DependencyCycleError


def test_topological_order_deterministic() -> None:
    graph = DependencyGraph(nodes=["c", "a", "b"], dependencies={"b": ["a"], "c": ["a"]})
    assert graph.topological_order() == ["a", "b", "c"]


def test_topological_order_ignores_external_deps() -> None:
    graph = DependencyGraph(nodes=["a", "b"], dependencies={"b": ["external"]})
    assert graph.topological_order() == ["a", "b"]


def test_dependencies_come_before_lexical_order() -> None:
    graph = DependencyGraph(nodes=["a", "z"], dependencies={"a": ["z"]})
    assert graph.topological_order() == ["z", "a"]
    assert graph.reverse_topological_order() == ["a", "z"]


def test_cycle_detection_reports_path() -> None:
    graph = DependencyGraph(
        nodes=["a", "b", "c"], dependencies={"a": ["b"], "b": ["c"], "c": ["a"]}
    )
    with pytest.raises(DependencyCycleError) as exc_info:
        graph.topological_order()
    path = exc_info.value.addresses
    assert path[0] == path[-1]
    assert set(path) == {"a", "b", "c"}
    assert "a -> b -> c -> a" in str(exc_info.value)


def test_self_dependency_is_a_cycle() -> None:
    graph = DependencyGraph(nodes=["a"], dependencies={"a": ["a"]})
    assert graph.find_cycle() == ["a", "a"]


def test_acyclic_graph_has_no_cycle() -> None:
    graph = DependencyGraph(nodes=["a", "b"], dependencies={"b": ["a"]})
    assert graph.find_cycle() is None
    graph.validate()


def test_deep_chain_does_not_recurse() -> None:
    nodes = [f"n{i:05d}" for i in range(5000)]
    deps = {nodes[i]: [nodes[i - 1]] for i in range(1, len(nodes))}
    graph = DependencyGraph(nodes=nodes, dependencies=deps)
    assert graph.find_cycle() is None
    assert graph.topological_order() == nodes


def test_transitive_dependents() -> None:
    graph = DependencyGraph(
        nodes=["vpc", "eks", "sg", "db", "ecr"],
        dependencies={"eks": ["vpc"], "sg": ["eks"], "db": ["sg"]},
    )
    assert graph.transitive_dependents("vpc") == {"eks", "sg", "db"}
    assert graph.transitive_dependents("ecr") == set()


def test_resource_graph_edges_from_references_and_depends_on() -> None:
    graph = ResourceGraph(
        nodes={
            "aws_vpc.main": ResourceNode(
                address="aws_vpc.main", resource_type="aws_vpc", name="main"
            ),
            "aws_subnet.a": ResourceNode(
                address="aws_subnet.a",
                resource_type="aws_subnet",
                name="a",
                attributes={
                    "vpc_id": Ref(address="aws_vpc.main", path=["id"]),
                    "name": Template(parts=[Const(value="subnet-"), Ref(address="aws_vpc.main", path=["name"])]),
                },
            ),
            "aws_instance.web": ResourceNode(
                address="aws_instance.web",
                resource_type="aws_instance",
                name="web",
                attributes={"subnets": ListExpr(items=[Ref(address="aws_subnet.a", path=["id"])])},
                depends_on=["aws_vpc.main"],
            ),
        }
    )

    assert graph.dependency_map() == {
        "aws_vpc.main": [],
        "aws_subnet.a": ["aws_vpc.main"],
        "aws_instance.web": ["aws_subnet.a", "aws_vpc.main"],
    }
    assert graph.topological_order() == ["aws_vpc.main", "aws_subnet.a", "aws_instance.web"]
