"""Tests for graph building: variables, locals, references and outputs."""

from __future__ import annotations

import pytest

from stackform.config.builder import coerce_value
from stackform.core.expressions import Const, Ref, Template
from stackform.errors import (
    ConfigError,
    DependencyCycleError,
    UnresolvedReferenceError,
)
from tests.unit.conftest import DB, DB_SG, EKS, STACK, VPC, graph_from


class TestVariables:
    def test_default_and_binding(self) -> None:
        graph = graph_from(
            'variable "name" {\n  default = "a"\n}\n'
            'variable "size" {\n  type = number\n}\n'
            'resource "x_thing" "t" {\n  name = var.name\n  size = var.size\n}\n',
            {"size": "3"},
        )
        attrs = graph.nodes["x_thing.t"].attributes
        assert attrs["name"] == Const(value="a")
        assert attrs["size"] == Const(value=3)

    def test_missing_required_variable(self) -> None:
        with pytest.raises(ConfigError, match="required variable 'size'"):
            graph_from('variable "size" {}\n')

    def test_undeclared_binding(self) -> None:
        with pytest.raises(ConfigError, match="undeclared variable"):
            graph_from('variable "a" {\n  default = 1\n}\n', {"b": 2})

    def test_sensitive_variable_marks_constant(self) -> None:
        graph = graph_from(
            'variable "pw" {\n  sensitive = true\n}\n'
            'resource "x_db" "d" {\n  password = "${var.pw}!"\n}\n',
            {"pw": "hunter2"},
        )
        expr = graph.nodes["x_db.d"].attributes["password"]
        assert isinstance(expr, Template)
        assert expr.parts[0] == Const(value="hunter2", sensitive=True)

    def test_attribute_path_into_variable(self) -> None:
        graph = graph_from(
            'variable "net" {\n  default = { zones = ["a", "b"] }\n}\n'
            'resource "x_subnet" "s" {\n  zone = var.net.zones[1]\n}\n'
        )
        assert graph.nodes["x_subnet.s"].attributes["zone"] == Const(value="b")


class TestCoerceValue:
    @pytest.mark.parametrize(
        ("value", "type_", "expected"),
        [
            ("3", "number", 3),
            ("2.5", "number", 2.5),
            ("true", "bool", True),
            (7, "string", "7"),
            ('["a", "b"]', "list(string)", ["a", "b"]),
            ("{ a = 1 }", "map(number)", {"a": 1}),
            ([1, 2], "list(string)", ["1", "2"]),
            ({"k": "v"}, "any", {"k": "v"}),
        ],
    )
    def test_coerce(self, value: object, type_: str, expected: object) -> None:
        assert coerce_value(value, type_, "v") == expected

    @pytest.mark.parametrize(
        ("value", "type_"),
        [("abc", "number"), ("yes", "bool"), ([1], "map(string)"), ({"a": 1}, "string")],
    )
    def test_rejects(self, value: object, type_: str) -> None:
        with pytest.raises(ConfigError, match="Variable 'v' expects"):
            coerce_value(value, type_, "v")

    def test_unsupported_type(self) -> None:
        with pytest.raises(ConfigError, match="unsupported type"):
            coerce_value(1, "tuple", "v")


class TestLocals:
    def test_locals_are_inlined(self) -> None:
        graph = graph_from(
            'locals {\n  env = "prod"\n  name = "shop-${local.env}"\n}\n'
            'resource "x_thing" "t" {\n  name = local.name\n}\n'
        )
        expr = graph.nodes["x_thing.t"].attributes["name"]
        assert isinstance(expr, Template)
        assert expr.parts == [Const(value="shop-"), Const(value="prod")]

    def test_local_cycle(self) -> None:
        with pytest.raises(ConfigError, match="Cycle in root module"):
            graph_from(
                "locals {\n  a = local.b\n  b = local.a\n}\n"
                'resource "x_thing" "t" {\n  name = local.a\n}\n'
            )


class TestReferences:
    def test_stack_edges(self) -> None:
        graph = graph_from(STACK)
        deps = graph.dependency_map()
        assert deps[EKS] == [VPC]
        assert deps[DB_SG] == [EKS, VPC]
        assert deps[DB] == ["aws_db_subnet_group.db_subnet_group", DB_SG]
        assert graph.nodes[EKS].attributes["vpc_id"] == Ref(address=VPC, path=["id"])

    def test_unresolved_resource(self) -> None:
        with pytest.raises(UnresolvedReferenceError, match="aws_vpc.missing.id"):
            graph_from('resource "x_thing" "t" {\n  vpc = aws_vpc.missing.id\n}\n')

    def test_unresolved_variable_mentions_location(self) -> None:
        with pytest.raises(UnresolvedReferenceError) as exc_info:
            graph_from('resource "x_thing" "t" {\n  a = var.nope\n}\n')
        assert exc_info.value.reference == "var.nope"
        assert "x_thing.t.a" in exc_info.value.context
        assert "<string>:2:7" in exc_info.value.context

    def test_explicit_depends_on(self) -> None:
        graph = graph_from(
            'resource "x_a" "one" {}\n'
            'resource "x_b" "two" {\n  depends_on = [x_a.one]\n}\n'
        )
        assert graph.nodes["x_b.two"].dependencies() == ["x_a.one"]

    def test_depends_on_unknown_resource(self) -> None:
        with pytest.raises(UnresolvedReferenceError):
            graph_from('resource "x_b" "two" {\n  depends_on = [x_a.one]\n}\n')

    def test_cycle_between_resources(self) -> None:
        with pytest.raises(DependencyCycleError) as exc_info:
            graph_from(
                'resource "x_a" "one" {\n  peer = x_b.two.id\n}\n'
                'resource "x_b" "two" {\n  peer = x_a.one.id\n}\n'
            )
        assert set(exc_info.value.addresses) == {"x_a.one", "x_b.two"}


class TestOutputsAndProviders:
    def test_outputs(self) -> None:
        graph = graph_from(
            'variable "pw" {\n  sensitive = true\n  default = "x"\n}\n'
            'resource "x_db" "d" {}\n'
            'output "id" {\n  value = x_db.d.id\n  description = "db id"\n}\n'
            'output "pw" {\n  value = var.pw\n}\n'
        )
        assert graph.outputs["id"].expr == Ref(address="x_db.d", path=["id"])
        assert graph.outputs["id"].description == "db id"
        assert not graph.outputs["id"].sensitive
        # Sensitivity follows the value even without an explicit flag.
        assert graph.outputs["pw"].sensitive

    def test_provider_settings(self) -> None:
        graph = graph_from(
            'variable "region" {\n  default = "eu-west-1"\n}\n'
            'provider "aws" {\n  region = var.region\n}\n'
        )
        assert graph.providers == {"aws": {"region": "eu-west-1"}}

    def test_provider_settings_cannot_reference_resources(self) -> None:
        with pytest.raises(ConfigError, match="cannot reference resource"):
            graph_from(
                'resource "x_a" "one" {}\n'
                'provider "aws" {\n  role = x_a.one.arn\n}\n'
            )
