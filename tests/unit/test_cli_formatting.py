from __future__ import annotations

import re

from stackform.cli.formatting import (
    KNOWN_AFTER_APPLY,
    REDACTED,
    format_apply_results,
    format_apply_summary,
    format_change,
    format_drift,
    format_outputs,
    format_plan,
    format_plan_summary,
    format_value,
    has_actionable_changes,
)
from stackform.core.expressions import Ref
from stackform.core.state import OutputValue
from stackform.engine.types import (
    Action,
    ActionResult,
    ActionStatus,
    ApplyResult,
    OutputChange,
    Plan,
    PlanMetadata,
    ResourceChange,
    ResourceDrift,
)

_META = PlanMetadata(
    destroy=False,
    refresh=False,
    state_lineage="lineage-1",
    state_serial=0,
    state_digest="digest",
    config_digest="cdigest",
    engine_version="0.1.0",
)


def _strip_ansi(text: str) -> str:
    return re.sub(r"\x1b\[[0-9;]*m", "", text)


class TestFormatPlanSummary:
    def test_all_zeros(self) -> None:
        result = format_plan_summary({"create": 0, "update": 0, "delete": 0}, color=False)
        assert result == "Plan: 0 to add, 0 to change, 0 to destroy."

    def test_with_counts(self) -> None:
        result = format_plan_summary({"create": 2, "update": 1, "delete": 3}, color=False)
        assert result == "Plan: 2 to add, 1 to change, 3 to destroy."

    def test_replace_counts_as_add_and_destroy(self) -> None:
        result = format_plan_summary({"replace": 1, "pending": 2}, color=False)
        assert result == "Plan: 1 to add, 2 to change, 1 to destroy."

    def test_header(self) -> None:
        result = format_plan_summary({"delete": 2}, color=False, header="Destroy")
        assert result == "Destroy: 0 to add, 0 to change, 2 to destroy."

    def test_color_mode_contains_ansi(self) -> None:
        result = format_plan_summary({"create": 1, "update": 0, "delete": 0}, color=True)
        assert "\x1b[" in result
        assert "1 to add" in _strip_ansi(result)


class TestFormatApplySummary:
    def test_all_zeros(self) -> None:
        result = format_apply_summary({"create": 0, "update": 0, "delete": 0}, color=False)
        assert result == "Apply complete! Resources: 0 added, 0 changed, 0 destroyed."

    def test_with_counts(self) -> None:
        result = format_apply_summary({"create": 1, "update": 2, "delete": 0}, color=False)
        assert "1 added" in result
        assert "2 changed" in result

    def test_color_mode_contains_ansi(self) -> None:
        result = format_apply_summary({"create": 1, "update": 0, "delete": 0}, color=True)
        assert "\x1b[" in result


class TestFormatValue:
    def test_scalars(self) -> None:
        assert format_value("x") == '"x"'
        assert format_value(None) == "null"
        assert format_value(True) == "true"
        assert format_value(3) == "3"

    def test_collections(self) -> None:
        assert format_value({"b": 1, "a": [1, 2]}) == '{"a": [1, 2], "b": 1}'

    def test_sensitive(self) -> None:
        assert format_value("hunter2", sensitive=True) == REDACTED


class TestFormatChange:
    def test_create(self) -> None:
        change = ResourceChange(
            address="aws_db_instance.db",
            resource_type="aws_db_instance",
            action=Action.CREATE,
            planned={"engine": "postgres", "password": "hunter2"},
            pending={"security_group": Ref(address="aws_security_group.db", path=["id"])},
            sensitive=["password"],
        )
        result = format_change(change, color=False)

        assert result.splitlines() == [
            "  # aws_db_instance.db will be created",
            '  + resource "aws_db_instance" "db" {',
            '      + engine         = "postgres"',
            f"      + password       = {REDACTED}",
            f"      + security_group = {KNOWN_AFTER_APPLY}",
            "    }",
        ]
        assert "hunter2" not in result

    def test_update(self) -> None:
        change = ResourceChange(
            address="aws_ecr_repository.web",
            resource_type="aws_ecr_repository",
            action=Action.UPDATE,
            diff={"name": {"from": "old", "to": "new"}},
        )
        result = format_change(change, color=False)
        assert "will be updated in-place" in result
        assert '~ name = "old" -> "new"' in result

    def test_replace_marks_forcing_attribute(self) -> None:
        change = ResourceChange(
            address="aws_vpc.main",
            resource_type="aws_vpc",
            action=Action.REPLACE,
            diff={"cidr_block": {"from": "10.0.0.0/16", "to": "10.1.0.0/16"}},
            force_new=["cidr_block"],
        )
        result = format_change(change, color=False)
        assert "must be replaced" in result
        assert '-/+ resource "aws_vpc" "main"' in result
        assert '"10.0.0.0/16" -> "10.1.0.0/16"  # forces replacement' in result

    def test_pending(self) -> None:
        change = ResourceChange(
            address="aws_eks_cluster.main",
            resource_type="aws_eks_cluster",
            action=Action.PENDING,
            pending={"vpc_id": Ref(address="aws_vpc.main", path=["id"])},
        )
        result = format_change(change, color=False)
        assert "may change once its dependencies are applied" in result
        assert f"~? vpc_id = {KNOWN_AFTER_APPLY}" in result

    def test_sensitive_diff_is_redacted(self) -> None:
        change = ResourceChange(
            address="aws_db_instance.db",
            resource_type="aws_db_instance",
            action=Action.UPDATE,
            diff={"password": {"from": "a", "to": "b"}},
            sensitive=["password"],
        )
        result = format_change(change, color=False)
        assert f"{REDACTED} -> {REDACTED}" in result

    def test_color(self) -> None:
        change = ResourceChange(
            address="aws_vpc.main", resource_type="aws_vpc", action=Action.DELETE
        )
        result = format_change(change, color=True)
        assert "\x1b[" in result
        assert "will be destroyed" in _strip_ansi(result)


class TestFormatPlan:
    def test_noop_only(self) -> None:
        plan = Plan(
            metadata=_META,
            changes=[ResourceChange(address="aws_vpc.v", resource_type="aws_vpc", action=Action.NOOP)],
        )
        assert format_plan(plan, color=False) == "No changes. Resources are up-to-date."
        assert not has_actionable_changes(plan)

    def test_noop_blocks_are_skipped(self) -> None:
        plan = Plan(
            metadata=_META,
            changes=[
                ResourceChange(address="aws_vpc.v", resource_type="aws_vpc", action=Action.NOOP),
                ResourceChange(
                    address="aws_subnet.s",
                    resource_type="aws_subnet",
                    action=Action.CREATE,
                    planned={"zone": "a"},
                ),
            ],
        )
        result = format_plan(plan, color=False)
        assert "aws_vpc.v" not in result
        assert "aws_subnet.s will be created" in result
        assert has_actionable_changes(plan)

    def test_output_changes_section(self) -> None:
        plan = Plan(
            metadata=_META,
            changes=[ResourceChange(address="aws_vpc.v", resource_type="aws_vpc", action=Action.NOOP)],
            output_changes=[
                OutputChange(name="vpc_id", action="add", value="vpc-1"),
                OutputChange(name="token", action="change", value="abc", sensitive=True),
                OutputChange(name="arn", action="add", known=False),
                OutputChange(name="old", action="remove"),
            ],
        )
        result = format_plan(plan, color=False)
        assert "No changes" not in result
        assert "aws_vpc.v" not in result
        assert result.splitlines() == [
            "Changes to Outputs:",
            '  + vpc_id = "vpc-1"',
            f"  ~ token  = {REDACTED}",
            f"  + arn    = {KNOWN_AFTER_APPLY}",
            "  - old    = null",
        ]
        assert "abc" not in result
        assert has_actionable_changes(plan)


class TestFormatApplyResults:
    def test_lines(self) -> None:
        result = ApplyResult(
            results=[
                ActionResult(address="aws_vpc.v", action=Action.CREATE, status=ActionStatus.APPLIED),
                ActionResult(address="aws_ecr_repository.r", action=Action.NOOP, status=ActionStatus.NOOP),
                ActionResult(
                    address="aws_eks_cluster.c",
                    action=Action.CREATE,
                    status=ActionStatus.FAILED,
                    reason="quota exceeded",
                ),
                ActionResult(
                    address="aws_eks_node_group.n",
                    action=Action.CREATE,
                    status=ActionStatus.BLOCKED,
                    reason="dependency aws_eks_cluster.c failed",
                ),
            ]
        )
        assert format_apply_results(result, color=False).splitlines() == [
            "  aws_vpc.v: applied (create)",
            "  aws_eks_cluster.c: failed (create): quota exceeded",
            "  aws_eks_node_group.n: blocked (create): dependency aws_eks_cluster.c failed",
        ]


class TestFormatDrift:
    def test_changed_and_deleted(self) -> None:
        drift = [
            ResourceDrift(address="aws_s3_bucket.logs", resource_type="aws_s3_bucket", status="deleted"),
            ResourceDrift(
                address="aws_db_instance.db",
                resource_type="aws_db_instance",
                status="changed",
                changes={
                    "password": {"from": "a", "to": "b"},
                    "size": {"from": 10, "to": 20},
                },
                sensitive=["password"],
            ),
        ]
        result = format_drift(drift, color=False)

        assert "  # aws_s3_bucket.logs has been deleted outside stackform" in result
        assert "  # aws_db_instance.db has changed outside stackform" in result
        assert f"      ~ password = {REDACTED} -> {REDACTED}" in result
        assert "      ~ size     = 10 -> 20" in result


class TestFormatOutputs:
    def test_sorted_and_redacted(self) -> None:
        outputs = {
            "vpc_id": OutputValue(value="vpc-1"),
            "db_password": OutputValue(value="hunter2", sensitive=True),
            "azs": OutputValue(value=["a", "b"]),
        }
        assert format_outputs(outputs).splitlines() == [
            'azs         = ["a", "b"]',
            f"db_password = {REDACTED}",
            'vpc_id      = "vpc-1"',
        ]
