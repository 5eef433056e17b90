"""Tests for the declaration language parser."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from stackform.config.parser import load_directory, parse_declaration, parse_expression
from stackform.core.expressions import Call, Const, Index, ListExpr, MapExpr, Template, Traversal
from stackform.errors import ConfigError, DeclarationSyntaxError

if TYPE_CHECKING:
    from pathlib import Path

_FULL = """\
# Network
variable "cidr" {
  type    = string
  default = "10.0.0.0/16"
}

variable "zones" {
  type = list(string)
}

variable "password" {
  sensitive   = true
  description = "Database password"
}

locals {
  prefix = "shop"
}

provider "aws" {
  region = "eu-west-1"
}

resource "aws_vpc" "main" {
  cidr_block = var.cidr
  tags = {
    Name = "${local.prefix}-vpc"
    "kubernetes.io/role" : "shared"
  }
}

resource "aws_subnet" "a" {
  vpc_id     = aws_vpc.main.id // inline comment
  zone       = var.zones[0]
  cidr_block = cidrsubnet(var.cidr, 8, 1)
  depends_on = [aws_vpc.main]

  /* nested blocks become lists of maps */
  route {
    gateway = "igw"
  }
  route {
    gateway = "nat"
  }
}

module "cluster" {
  source = "./modules/cluster"
  vpc_id = aws_vpc.main.id
}

output "vpc_id" {
  value       = aws_vpc.main.id
  description = "VPC id"
}
"""


class TestParseDeclaration:
    def test_block_kinds(self) -> None:
        decl = parse_declaration(_FULL, source="main.sf")

        assert sorted(decl.resources) == ["aws_subnet.a", "aws_vpc.main"]
        assert sorted(decl.variables) == ["cidr", "password", "zones"]
        assert sorted(decl.modules) == ["cluster"]
        assert sorted(decl.outputs) == ["vpc_id"]
        assert sorted(decl.providers) == ["aws"]
        assert sorted(decl.locals) == ["prefix"]

    def test_variables(self) -> None:
        decl = parse_declaration(_FULL)

        assert decl.variables["cidr"].type == "string"
        assert decl.variables["cidr"].default == Const(value="10.0.0.0/16")
        assert not decl.variables["cidr"].required
        assert decl.variables["zones"].type == "list(string)"
        assert decl.variables["zones"].required
        assert decl.variables["password"].sensitive
        assert decl.variables["password"].description == "Database password"
        assert decl.variables["password"].type == "any"

    def test_resource_attributes(self) -> None:
        decl = parse_declaration(_FULL)
        vpc = decl.resources["aws_vpc.main"]

        assert vpc.resource_type == "aws_vpc"
        assert vpc.name == "main"
        cidr = vpc.attributes["cidr_block"]
        assert isinstance(cidr, Traversal)
        assert cidr.display() == "var.cidr"
        tags = vpc.attributes["tags"]
        assert isinstance(tags, MapExpr)
        assert sorted(tags.items) == ["Name", "kubernetes.io/role"]
        assert isinstance(tags.items["Name"], Template)

    def test_references_calls_and_nested_blocks(self) -> None:
        decl = parse_declaration(_FULL)
        subnet = decl.resources["aws_subnet.a"]

        vpc_id = subnet.attributes["vpc_id"]
        assert isinstance(vpc_id, Traversal)
        assert (vpc_id.root, vpc_id.steps) == ("aws_vpc", ["main", "id"])

        zone = subnet.attributes["zone"]
        assert isinstance(zone, Traversal)
        assert zone.steps == ["zones", 0]

        assert isinstance(subnet.attributes["cidr_block"], Call)
        assert [t.display() for t in subnet.depends_on] == ["aws_vpc.main"]
        assert "depends_on" not in subnet.attributes

        routes = subnet.attributes["route"]
        assert isinstance(routes, ListExpr)
        assert [r.items["gateway"] for r in routes.items] == [
            Const(value="igw"),
            Const(value="nat"),
        ]

    def test_module_block(self) -> None:
        decl = parse_declaration(_FULL)
        module = decl.modules["cluster"]
        assert module.source == "./modules/cluster"
        assert sorted(module.inputs) == ["vpc_id"]

    def test_traversal_location(self) -> None:
        decl = parse_declaration(_FULL, source="main.sf")
        expr = decl.resources["aws_vpc.main"].attributes["cidr_block"]
        assert expr.location == "main.sf:25:16"


class TestExpressions:
    def test_literals(self) -> None:
        assert parse_expression("42") == Const(value=42)
        assert parse_expression("-1.5") == Const(value=-1.5)
        assert parse_expression("1e3") == Const(value=1000.0)
        assert parse_expression("true") == Const(value=True)
        assert parse_expression("null") == Const(value=None)
        assert parse_expression('["a", 1,]') == ListExpr(items=[Const(value="a"), Const(value=1)])

    def test_string_escapes(self) -> None:
        assert parse_expression(r'"a\tb\n\"q\" é"') == Const(value='a\tb\n"q" é')

    def test_literal_dollar_brace(self) -> None:
        assert parse_expression('"$${not.interpolated}"') == Const(value="${not.interpolated}")

    def test_single_interpolation_keeps_type(self) -> None:
        expr = parse_expression('"${var.count}"')
        assert isinstance(expr, Traversal)
        assert expr.steps == ["count"]

    def test_interpolation_with_text(self) -> None:
        expr = parse_expression('"sg-${var.name}-${upper("x")}"')
        assert isinstance(expr, Template)
        assert expr.parts[0] == Const(value="sg-")
        assert isinstance(expr.parts[1], Traversal)
        assert isinstance(expr.parts[3], Call)

    def test_dynamic_index(self) -> None:
        expr = parse_expression("var.zones[var.i]")
        assert isinstance(expr, Index)

    def test_heredoc(self) -> None:
        decl = parse_declaration(
            'resource "x_file" "f" {\n'
            "  content = <<-EOT\n"
            "    line one\n"
            "      ${var.name}\n"
            "    EOT\n"
            "}\n"
        )
        content = decl.resources["x_file.f"].attributes["content"]
        assert isinstance(content, Template)
        assert content.parts[0] == Const(value="line one\n  ")

    def test_trailing_garbage(self) -> None:
        with pytest.raises(DeclarationSyntaxError, match="after expression"):
            parse_expression("1 2")


class TestSyntaxErrors:
    def test_error_carries_position(self) -> None:
        with pytest.raises(DeclarationSyntaxError) as exc_info:
            parse_declaration('resource "a" "b" {\n  x = \n}\n', source="bad.sf")
        err = exc_info.value
        assert err.source == "bad.sf"
        assert err.line == 3
        assert str(err).startswith("bad.sf:3:")

    def test_unterminated_string(self) -> None:
        with pytest.raises(DeclarationSyntaxError, match="nterminated"):
            parse_declaration('resource "a" "b" {\n  x = "oops\n}\n')

    def test_unknown_block(self) -> None:
        with pytest.raises(DeclarationSyntaxError, match="Unknown block type 'data'"):
            parse_declaration('data "a" "b" {}')

    def test_wrong_label_count(self) -> None:
        with pytest.raises(DeclarationSyntaxError, match="expects 2 label"):
            parse_declaration('resource "aws_vpc" {}')

    def test_count_rejected(self) -> None:
        with pytest.raises(DeclarationSyntaxError, match="'count' is not supported"):
            parse_declaration('resource "a" "b" {\n  count = 2\n}\n')

    def test_module_requires_source(self) -> None:
        with pytest.raises(DeclarationSyntaxError, match="missing 'source'"):
            parse_declaration('module "m" {\n  x = 1\n}\n')

    def test_duplicate_resource(self) -> None:
        with pytest.raises(DeclarationSyntaxError, match="Duplicate resource 'a.b'"):
            parse_declaration('resource "a" "b" {}\nresource "a" "b" {}\n')

    def test_duplicate_attribute(self) -> None:
        with pytest.raises(DeclarationSyntaxError, match="Duplicate attribute 'x'"):
            parse_declaration('resource "a" "b" {\n  x = 1\n  x = 2\n}\n')

    def test_variable_default_cannot_reference(self) -> None:
        with pytest.raises(DeclarationSyntaxError, match="cannot contain references"):
            parse_declaration('variable "v" {\n  default = var.other\n}\n')

    def test_syntax_error_is_config_error(self) -> None:
        with pytest.raises(ConfigError):
            parse_declaration("resource {")


class TestLoadDirectory:
    def test_merges_files_in_order(self, tmp_path: Path) -> None:
        (tmp_path / "a.sf").write_text('resource "x_a" "one" {}\n')
        (tmp_path / "b.sf").write_text('resource "x_b" "two" {}\noutput "o" {\n  value = 1\n}\n')
        (tmp_path / "notes.txt").write_text("ignored")

        decl = load_directory(tmp_path)

        assert decl.directory == tmp_path
        assert sorted(decl.resources) == ["x_a.one", "x_b.two"]
        assert list(decl.outputs) == ["o"]

    def test_duplicate_across_files(self, tmp_path: Path) -> None:
        (tmp_path / "a.sf").write_text('resource "x" "one" {}\n')
        (tmp_path / "b.sf").write_text('resource "x" "one" {}\n')
        with pytest.raises(ConfigError, match="x.one"):
            load_directory(tmp_path)

    def test_single_file(self, tmp_path: Path) -> None:
        path = tmp_path / "stack.sf"
        path.write_text('resource "x" "one" {}\n')
        decl = load_directory(path)
        assert decl.directory == tmp_path
        assert list(decl.resources) == ["x.one"]

    def test_empty_directory(self, tmp_path: Path) -> None:
        with pytest.raises(DeclarationSyntaxError, match="No \\*.sf declaration files"):
            load_directory(tmp_path)
