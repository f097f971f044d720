"""Resource model: declarations, references and recorded state.

Declarations are pydantic models so an already-resolved resource graph is
validated at the boundary (fail fast, fail loudly). Recorded state is a plain
dataclass owned by the State Store.
"""

from __future__ import annotations

import copy
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

# Resource identity segments: "<type>.<name>"
VALID_TYPE_PATTERN = r"^[a-z][a-z0-9_]{0,63}$"
VALID_NAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_-]{0,127}$"

# Every resource exposes its provider-assigned identifier under this key
ID_OUTPUT = "id"


class _Unknown:
    """Placeholder for a value only known after a producer has been applied."""

    _instance: _Unknown | None = None

    def __new__(cls) -> _Unknown:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "<known after apply>"

    def __deepcopy__(self, memo: dict[int, Any]) -> _Unknown:
        return self


UNKNOWN = _Unknown()


def make_id(resource_type: str, name: str) -> str:
    """Build a resource identity from type and logical name."""
    return f"{resource_type}.{name}"


# =============================================================================
# Declaration Models
# =============================================================================


class Reference(BaseModel):
    """Reference to another resource's output attribute."""

    model_config = {"frozen": True, "extra": "forbid"}

    node: Annotated[str, Field(min_length=3)]
    output: Annotated[str, Field(min_length=1)]

    def __str__(self) -> str:
        return f"{self.node}.{self.output}"


class LifecyclePolicy(BaseModel):
    """Lifecycle flags controlling replacement and destruction."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    # Create the replacement before destroying the old instance
    create_before_destroy: bool = Field(False, alias="createBeforeDestroy")

    # Refuse to plan any delete or replace of this resource
    prevent_destroy: bool = Field(False, alias="preventDestroy")


class WaitCondition(BaseModel):
    """Post-apply predicate a resource must satisfy before dependents proceed.

    Example: a DNS-validated certificate is only usable once
    ``status == "ISSUED"`` even though its create call returns immediately.
    """

    model_config = {"extra": "forbid", "populate_by_name": True}

    attribute: Annotated[str, Field(min_length=1)]
    equals: Any
    timeout_seconds: float | None = Field(None, gt=0, alias="timeoutSeconds")
    description: str | None = None

    def is_satisfied_by(self, observed: dict[str, Any] | None) -> bool:
        """Evaluate the predicate against an observed attribute set."""
        if observed is None:
            return False
        return observed.get(self.attribute) == self.equals


def _coerce_references(value: Any) -> Any:
    """Turn ``{"ref": ..., "output": ...}`` mappings into Reference values."""
    if isinstance(value, dict):
        if set(value.keys()) == {"ref", "output"}:
            return Reference(node=value["ref"], output=value["output"])
        return {key: _coerce_references(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_coerce_references(item) for item in value]
    return value


class ResourceNode(BaseModel):
    """Declared resource with desired attributes and dependencies."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    type: Annotated[str, Field(pattern=VALID_TYPE_PATTERN)]
    name: Annotated[str, Field(pattern=VALID_NAME_PATTERN)]
    attributes: dict[str, Any] = Field(default_factory=dict)

    # Computed outputs the provider reports and other nodes may reference
    outputs: list[str] = Field(default_factory=list)

    # Explicit dependencies by resource id, in addition to references
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")

    lifecycle: LifecyclePolicy = Field(default_factory=LifecyclePolicy)
    wait: WaitCondition | None = None

    @field_validator("attributes", mode="before")
    @classmethod
    def coerce_references(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return _coerce_references(v)
        return v

    @field_validator("attributes")
    @classmethod
    def validate_json_values(cls, v: dict[str, Any]) -> dict[str, Any]:
        """Attribute values must survive the JSON state file unchanged."""
        for key, value in v.items():
            _check_json_value(key, value)
        return v

    @property
    def id(self) -> str:
        """Resource identity, unique within a graph."""
        return make_id(self.type, self.name)

    def exposes(self, output: str) -> bool:
        """Check whether other nodes may reference ``output`` on this node."""
        return output == ID_OUTPUT or output in self.outputs or output in self.attributes

    def references(self) -> Iterator[tuple[str, Reference]]:
        """Yield (attribute path, reference) for every reference in the attributes."""
        for key, value in self.attributes.items():
            yield from _walk_references(key, value)


_JSON_SCALARS = (str, int, float, bool, type(None))


def _check_json_value(path: str, value: Any) -> None:
    if isinstance(value, (_JSON_SCALARS, Reference)):
        return
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, _JSON_SCALARS):
                raise ValueError(f"attribute '{path}' has a non-scalar key {key!r}")
            _check_json_value(f"{path}.{key}", item)
        return
    if isinstance(value, list):
        for index, item in enumerate(value):
            _check_json_value(f"{path}[{index}]", item)
        return
    raise ValueError(
        f"attribute '{path}' has unsupported value type {type(value).__name__} "
        "(quote dates and timestamps in YAML)"
    )


def _walk_references(path: str, value: Any) -> Iterator[tuple[str, Reference]]:
    if isinstance(value, Reference):
        yield path, value
    elif isinstance(value, dict):
        for key, item in value.items():
            yield from _walk_references(f"{path}.{key}", item)
    elif isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            yield from _walk_references(f"{path}[{index}]", item)


# =============================================================================
# Value Resolution
# =============================================================================


def resolve_value(value: Any, lookup: Callable[[Reference], Any]) -> Any:
    """Substitute references in ``value`` using ``lookup``.

    Tuples become lists so resolved values compare equal to values that went
    through a JSON round trip in the State Store.
    """
    if isinstance(value, Reference):
        return lookup(value)
    if isinstance(value, dict):
        return {str(key): resolve_value(item, lookup) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_value(item, lookup) for item in value]
    return value


def resolve_attributes(
    attributes: dict[str, Any], lookup: Callable[[Reference], Any]
) -> dict[str, Any]:
    """Resolve every attribute of a declaration."""
    return {key: resolve_value(value, lookup) for key, value in attributes.items()}


def contains_unknown(value: Any) -> bool:
    """Check whether a resolved value still depends on an unapplied producer."""
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(item) for item in value.values())
    if isinstance(value, list):
        return any(contains_unknown(item) for item in value)
    return False


# =============================================================================
# Recorded State
# =============================================================================


@dataclass
class StateRecord:
    """Last-applied snapshot of one resource.

    Attributes:
        node_id: Resource identity ("<type>.<name>").
        resource_type: Type used to find the provider, also for orphans.
        resource_id: Provider-assigned identifier of the live instance.
        attributes: Resolved desired attributes that were last applied.
        outputs: Observed values the provider reported.
        dependencies: Resource ids this instance depended on when applied.
        version: Incremented on every successful write.
        tainted: The instance exists but never converged (failed wait).
        deposed: Provider ids of replaced instances still awaiting delete.
        updated_at: Time of the last write.
    """

    node_id: str
    resource_type: str
    resource_id: str
    attributes: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    version: int = 1
    tainted: bool = False
    deposed: list[str] = field(default_factory=list)
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def output_value(self, key: str) -> Any:
        """Look up a referenceable value; outputs win over attributes."""
        if key == ID_OUTPUT:
            return self.outputs.get(ID_OUTPUT, self.resource_id)
        if key in self.outputs:
            return self.outputs[key]
        if key in self.attributes:
            return self.attributes[key]
        raise KeyError(key)

    def copy(self) -> StateRecord:
        """Deep copy, so callers cannot mutate the store's record in place."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "node_id": self.node_id,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "attributes": self.attributes,
            "outputs": self.outputs,
            "dependencies": self.dependencies,
            "version": self.version,
            "tainted": self.tainted,
            "deposed": self.deposed,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StateRecord:
        """Create from dictionary."""
        return cls(
            node_id=data["node_id"],
            resource_type=data["resource_type"],
            resource_id=data["resource_id"],
            attributes=data.get("attributes", {}),
            outputs=data.get("outputs", {}),
            dependencies=list(data.get("dependencies", [])),
            version=int(data.get("version", 1)),
            tainted=bool(data.get("tainted", False)),
            deposed=list(data.get("deposed", [])),
            updated_at=datetime.fromisoformat(data["updated_at"])
            if data.get("updated_at")
            else datetime.now(UTC),
        )
