"""State records for tracking provisioned resources."""

import hashlib
import json
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field


def _canonical_json(obj: Any) -> str:
    # Stable encoding for hashes/digests. `default=str` keeps it robust for
    # datetimes/paths/etc while staying deterministic enough for our use.
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)


def compute_attributes_hash(attrs: Mapping[str, Any]) -> str:
    """Compute a stable hash for a resource's stored attributes."""
    payload = _canonical_json(attrs)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def new_lineage() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(UTC)


class ResourceInstance(BaseModel):
    """A tracked resource instance in the state record.

    Attributes:
        address: Unique resource address (e.g., "module.vpc.aws_vpc.this")
        resource_type: Provider type tag (e.g., "aws_vpc")
        attributes: Last-applied attribute values, as returned by the adapter
        attributes_hash: SHA256 hash for change detection
        dependencies: Addresses this resource depended on when last applied
        sensitive_attributes: Attribute names redacted in any rendering
        created_at: When the resource was created
        updated_at: When the resource was last updated
    """

    address: str
    resource_type: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    attributes_hash: str = ""
    dependencies: list[str] = Field(default_factory=list)
    sensitive_attributes: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    def set_attributes(self, attrs: Mapping[str, Any]) -> None:
        self.attributes = dict(attrs)
        self.attributes_hash = compute_attributes_hash(self.attributes)
        self.updated_at = _now()


class OutputValue(BaseModel):
    """A root output recorded after apply."""

    value: Any = None
    sensitive: bool = False


class State(BaseModel):
    """Persisted record of last-applied resources.

    Attributes:
        version: State format version
        lineage: Identifier of this state history; new only on (re)initialization
        serial: Monotonically increasing write counter
        resources: Mapping of resource addresses to instances
        outputs: Root output values from the last apply
    """

    version: int = 1
    lineage: str = Field(default_factory=new_lineage)
    serial: int = 0
    resources: dict[str, ResourceInstance] = Field(default_factory=dict)
    outputs: dict[str, OutputValue] = Field(default_factory=dict)

    def to_json(self) -> str:
        data = self.model_dump(mode="json")
        return json.dumps(data, indent=2, sort_keys=True) + "\n"


def compute_state_digest(state: State) -> str:
    """Compute a stable digest of state content (excluding timestamps).

    Used for stale-plan detection; ``created_at``/``updated_at`` are left out
    so that they never force a re-plan.
    """
    resources = []
    for address, inst in sorted(state.resources.items(), key=lambda kv: kv[0]):
        resources.append(
            {
                "address": address,
                "resource_type": inst.resource_type,
                "attributes_hash": inst.attributes_hash,
                "dependencies": sorted(inst.dependencies),
            }
        )

    digestable = {
        "version": state.version,
        "lineage": state.lineage,
        "serial": state.serial,
        "resources": resources,
    }
    payload = _canonical_json(digestable)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
