"""Tests for the config convenience API, run against the bundled example stack."""

from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from stackform.config import (
    build,
    drift,
    engine_from_config,
    load,
    output,
    plan,
    plan_and_apply,
    refresh,
    validate,
)
from stackform.config.schema import Config
from stackform.engine.types import Action
from stackform.errors import ConfigError, UnknownResourceTypeError

_EXAMPLE = Path(__file__).resolve().parents[2] / "examples" / "eks-stack"


@pytest.fixture
def stack(tmp_path: Path) -> Config:
    shutil.copytree(_EXAMPLE, tmp_path / "eks-stack")
    return load(tmp_path / "eks-stack" / "stackform.yaml")


class TestExampleStack:
    def test_build(self, stack: Config) -> None:
        graph = build(stack)

        assert len(graph.nodes) == 14
        assert "module.vpc.aws_nat_gateway.shared" in graph.nodes
        assert "module.eks.aws_eks_node_group.default" in graph.nodes
        assert graph.providers == {"aws": {"region": "eu-west-1"}}

    def test_plan_creates_everything(self, stack: Config) -> None:
        p = plan(stack)

        assert p.summary()["create"] == 14
        order = [c.address for c in p.changes]
        assert order.index("module.vpc.aws_vpc.this") < order.index("module.eks.aws_eks_cluster.this")
        assert order.index("aws_security_group.db") < order.index("aws_db_instance.db")
        db = p.get("aws_db_instance.db")
        assert db is not None
        assert db.sensitive == ["password"]
        # Known at plan time: the subnet group's name is not provider-computed.
        assert sorted(db.pending) == ["security_groups"]
        assert db.planned["subnet_group_name"] == "shop-staging-db"

    def test_apply_then_noop(self, stack: Config) -> None:
        result = plan_and_apply(stack)

        assert result.ok
        assert len(result.applied) == 14
        assert stack.state_file.exists()
        assert not plan(stack).has_changes()
        assert drift(stack) == []

    def test_outputs(self, stack: Config) -> None:
        plan_and_apply(stack)

        outputs = output(stack)

        assert sorted(outputs) == ["cluster_endpoint", "db_endpoint", "db_password", "repositories"]
        assert outputs["db_password"].sensitive
        assert outputs["db_password"].value == "change-me"
        assert outputs["cluster_endpoint"].value.startswith("endpoint-")
        assert not outputs["cluster_endpoint"].sensitive
        assert [r.split("-")[0] for r in outputs["repositories"].value] == ["frontend", "backend"]

    def test_variables_override(self, stack: Config) -> None:
        plan_and_apply(stack)

        p = plan(stack, variables={"environment": "prod"})

        actions = {c.address: c.action for c in p.changes}
        assert actions["aws_ecr_repository.frontend"] == Action.UPDATE
        assert p.get("aws_ecr_repository.frontend").diff["name"] == {  # type: ignore[union-attr]
            "from": "shop-staging/frontend",
            "to": "shop-prod/frontend",
        }

    def test_destroy(self, stack: Config) -> None:
        plan_and_apply(stack)

        result = plan_and_apply(stack, destroy=True)

        assert result.summary()["delete"] == 14
        assert output(stack) == {}
        assert plan(stack).summary()["create"] == 14

    def test_refresh_without_drift(self, stack: Config) -> None:
        plan_and_apply(stack)
        assert refresh(stack) == []


class TestEngineFromConfig:
    def test_engine_settings(self, stack: Config) -> None:
        engine = engine_from_config(stack, graph=build(stack))
        assert engine.store.path == stack.state_file  # type: ignore[attr-defined]
        assert engine.registry.get("aws_db_instance").force_new == frozenset({"engine"})
        assert engine.registry.get("aws_eks_cluster").computed == frozenset(
            {"id", "arn", "endpoint"}
        )
        assert engine.registry.get("aws_vpc").computed == frozenset({"id"})

    def test_types_from_state_are_registered(self, stack: Config) -> None:
        plan_and_apply(stack)
        engine = engine_from_config(stack)
        assert "aws_vpc" in engine.registry

    def test_config_providers_override_declared(self, stack: Config) -> None:
        stack.providers = {"aws": {"region": "us-east-1", "profile": "ops"}}
        engine = engine_from_config(stack, graph=build(stack))
        ctx = engine._ctx()
        assert ctx.provider_config("aws_vpc") == {"region": "us-east-1", "profile": "ops"}


class TestValidate:
    def test_valid(self, stack: Config) -> None:
        assert len(validate(stack).nodes) == 14

    def test_missing_adapter(self, stack: Config) -> None:
        stack.adapters = {}
        with pytest.raises(UnknownResourceTypeError):
            validate(stack)

    def test_missing_required_variable(self, stack: Config) -> None:
        stack.variables = {}
        with pytest.raises(ConfigError, match="environment"):
            validate(stack)
