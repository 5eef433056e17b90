import pytest

from stackform.engine.adapters import AttributeDiff, EngineContext, ProviderAdapter
from stackform.engine.registry import ProviderRegistry
from stackform.errors import UnknownResourceTypeError
from stackform.providers.mock import MockProvider


class BucketAdapter(ProviderAdapter):
    computed = frozenset({"id", "arn"})
    force_new = frozenset({"region"})
    compare = {"tags": "exact", "grants": "set"}  # noqa: RUF012


def test_registry_register_and_get() -> None:
    registry = ProviderRegistry()
    adapter = MockProvider()

    registry.register("aws_vpc", adapter)

    assert registry.get("aws_vpc") is adapter
    assert "aws_vpc" in registry
    assert list(registry) == ["aws_vpc"]


def test_registry_duplicate_registration() -> None:
    registry = ProviderRegistry()
    registry.register("aws_vpc", MockProvider())
    with pytest.raises(ValueError, match="already registered"):
        registry.register("aws_vpc", MockProvider())


def test_registry_rejects_empty_tag() -> None:
    with pytest.raises(ValueError):
        ProviderRegistry().register("", MockProvider())


def test_registry_unknown_type() -> None:
    with pytest.raises(UnknownResourceTypeError, match="missing"):
        ProviderRegistry().get("missing")


class TestAdapterDefaults:
    def test_validate_rejects_computed_attributes(self) -> None:
        errors = BucketAdapter().validate(EngineContext(), "acme_bucket.b", {"arn": "x", "name": "b"})
        assert errors == ["acme_bucket.b: 'arn' is computed by the provider and cannot be set"]

    def test_diff_uses_compare_strategies(self) -> None:
        prior = {"tags": {"a": "1", "b": "2"}, "grants": ["r", "w"], "region": "eu"}
        diff = BucketAdapter().diff({"tags": {"a": "1"}, "grants": ["w", "r"], "region": "eu"}, prior)

        assert diff.changes == {"tags": {"from": {"a": "1", "b": "2"}, "to": {"a": "1"}}}
        assert not diff.requires_replace

    def test_diff_flags_force_new(self) -> None:
        diff = BucketAdapter().diff({"region": "us"}, {"region": "eu", "id": "b-1"})
        assert diff.force_new == frozenset({"region"})
        assert diff.requires_replace

    def test_empty_diff(self) -> None:
        assert AttributeDiff().empty
        assert BucketAdapter().diff({}, {"id": "b-1"}).empty

    def test_crud_is_abstract(self) -> None:
        with pytest.raises(NotImplementedError):
            BucketAdapter().create(EngineContext(), "acme_bucket.b", {})

    def test_provider_config_by_prefix(self) -> None:
        ctx = EngineContext(providers={"aws": {"region": "eu-west-1"}})
        assert ctx.provider_config("aws_s3_bucket") == {"region": "eu-west-1"}
        assert ctx.provider_config("gcp_bucket") == {}
