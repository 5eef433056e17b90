"""Shared fixtures for unit tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from stackform.config import load
from stackform.config.builder import build_graph
from stackform.config.parser import parse_declaration
from stackform.core.store import InMemoryStateStore
from stackform.engine import ProviderRegistry, RetryPolicy, StackEngine
from stackform.providers.mock import MockProvider

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from stackform.config.schema import Config
    from stackform.engine.graph import ResourceGraph

_STACKFORM_ENV_VARS = (
    "STACKFORM_LOG",
    "STACKFORM_LOG_PATH",
    "STACKFORM_DECLARATIONS",
    "STACKFORM_STATE_PATH",
    "STACKFORM_PARALLELISM",
    "STACKFORM_LOCK_TIMEOUT",
    "NO_COLOR",
)

# Seven resources: vpc, eks (-> vpc), two registries, a db subnet group
# (-> vpc), a db security group (-> vpc, eks) and the db (-> sg, subnet group).
STACK = """
resource "aws_vpc" "vpc" {
  cidr_block = "10.0.0.0/16"
}

resource "aws_eks_cluster" "eks" {
  name   = "eks"
  vpc_id = aws_vpc.vpc.id
}

resource "aws_ecr_repository" "ecr_frontend" {
  name = "frontend"
}

resource "aws_ecr_repository" "ecr_backend" {
  name = "backend"
}

resource "aws_db_subnet_group" "db_subnet_group" {
  name   = "db"
  vpc_id = aws_vpc.vpc.id
}

resource "aws_security_group" "db_sg" {
  vpc_id         = aws_vpc.vpc.id
  cluster_access = aws_eks_cluster.eks.id
}

resource "aws_db_instance" "db" {
  security_group = aws_security_group.db_sg.id
  subnet_group   = aws_db_subnet_group.db_subnet_group.name
  password       = "hunter2"
}
"""

STACK_TYPES = (
    "aws_vpc",
    "aws_eks_cluster",
    "aws_ecr_repository",
    "aws_db_subnet_group",
    "aws_security_group",
    "aws_db_instance",
)

VPC = "aws_vpc.vpc"
EKS = "aws_eks_cluster.eks"
ECR_FRONTEND = "aws_ecr_repository.ecr_frontend"
ECR_BACKEND = "aws_ecr_repository.ecr_backend"
DB_SUBNET_GROUP = "aws_db_subnet_group.db_subnet_group"
DB_SG = "aws_security_group.db_sg"
DB = "aws_db_instance.db"


@pytest.fixture(autouse=True)
def _clean_stackform_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove STACKFORM_* env vars so unit tests don't leak host config."""
    for var in _STACKFORM_ENV_VARS:
        monkeypatch.delenv(var, raising=False)


def graph_from(text: str, variables: dict | None = None) -> ResourceGraph:
    return build_graph(parse_declaration(text), variables)


def make_registry(provider: MockProvider, types: tuple[str, ...] = STACK_TYPES) -> ProviderRegistry:
    registry = ProviderRegistry()
    for resource_type in types:
        registry.register(resource_type, provider)
    return registry


@pytest.fixture
def provider() -> MockProvider:
    return MockProvider()


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def engine(provider: MockProvider, store: InMemoryStateStore) -> StackEngine:
    """Engine over the mock provider with an in-memory store and instant retries."""
    return StackEngine(
        store=store,
        registry=make_registry(provider),
        parallelism=4,
        retry=RetryPolicy(max_attempts=3, base_delay=0.0, jitter=0.0, sleep=lambda _s: None),
    )


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., Config]:
    """Factory fixture: write YAML + optional .env, return loaded Config."""

    def _make(yaml_str: str, *, dotenv: str | None = None) -> Config:
        (tmp_path / "stackform.yaml").write_text(yaml_str)
        if dotenv is not None:
            (tmp_path / ".env").write_text(dotenv)
        return load(tmp_path / "stackform.yaml")

    return _make
