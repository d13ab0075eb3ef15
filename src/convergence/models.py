"""Pydantic models for specs, records, schemas and wait descriptors.

These models provide:
1. Type-safe construction of desired and observed state
2. Validation at the boundary (fail fast, fail loudly)
3. Immutability for everything that must not change during one apply cycle
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from .normalization import NormalizationType

# =============================================================================
# Enumerations
# =============================================================================


class FieldType(str, Enum):
    """Value types a schema field can hold."""

    STRING = "string"
    NUMBER = "number"
    BOOL = "bool"
    LIST = "list"
    SET = "set"
    MAP = "map"


class FieldMode(str, Enum):
    """Who owns a field's value."""

    REQUIRED = "required"
    OPTIONAL = "optional"
    # Server-assigned, never compared
    COMPUTED = "computed"
    # Caller may set it; when unset the server's value is kept
    OPTIONAL_COMPUTED = "optional_computed"


class Operation(str, Enum):
    """Mutating operations the reconciler issues."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class LifecycleState(str, Enum):
    """Reconciler state machine for one identifier."""

    ABSENT = "absent"
    CREATING = "creating"
    PRESENT = "present"
    UPDATING = "updating"
    DELETING = "deleting"
    DELETED = "deleted"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[LifecycleState, frozenset[LifecycleState]] = {
    LifecycleState.ABSENT: frozenset({LifecycleState.CREATING, LifecycleState.FAILED}),
    LifecycleState.CREATING: frozenset({LifecycleState.PRESENT, LifecycleState.FAILED}),
    LifecycleState.PRESENT: frozenset({LifecycleState.UPDATING, LifecycleState.DELETING}),
    LifecycleState.UPDATING: frozenset({LifecycleState.PRESENT, LifecycleState.FAILED}),
    LifecycleState.DELETING: frozenset({LifecycleState.DELETED, LifecycleState.FAILED}),
    LifecycleState.DELETED: frozenset({LifecycleState.CREATING}),
    # A failed instance can be retried in place, cleaned up, or observed
    # healthy again by a later read
    LifecycleState.FAILED: frozenset(
        {
            LifecycleState.CREATING,
            LifecycleState.UPDATING,
            LifecycleState.DELETING,
            LifecycleState.PRESENT,
        }
    ),
}


def can_transition(current: LifecycleState, target: LifecycleState) -> bool:
    """Check whether the state machine permits ``current -> target``."""
    return target in ALLOWED_TRANSITIONS[current]


# =============================================================================
# Schema
# =============================================================================


class FieldSchema(BaseModel):
    """Declaration of one attribute of a resource type.

    Attributes:
        type: Value type. ``set`` compares order-insensitively, ``list`` does not.
        mode: Required, Optional, Computed or Optional+Computed.
        force_new: A change to this field requires replacing the resource.
        default: Desired value assumed when an Optional field is unset.
        normalize: Normalizations applied to both sides before comparing.
        elem: Nested fields of a map, or of each element of a list/set.
        subset: Maps only. Compare just the keys present in the desired value.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    type: FieldType = FieldType.STRING
    mode: FieldMode = FieldMode.OPTIONAL
    force_new: bool = False
    default: Any = None
    normalize: tuple[NormalizationType, ...] = ()
    elem: dict[str, FieldSchema] | None = None
    subset: bool = False

    @property
    def computed_only(self) -> bool:
        return self.mode == FieldMode.COMPUTED

    @model_validator(mode="after")
    def validate_shape(self) -> FieldSchema:
        if self.subset and self.type != FieldType.MAP:
            raise ValueError("subset comparison only applies to map fields")
        if self.elem is not None and self.type not in (
            FieldType.MAP,
            FieldType.LIST,
            FieldType.SET,
        ):
            raise ValueError("elem is only valid for map, list and set fields")
        if self.mode == FieldMode.REQUIRED and self.default is not None:
            raise ValueError("required fields cannot declare a default")
        return self


FieldSchema.model_rebuild()


class ResourceSchema(BaseModel):
    """Attribute declarations for one resource type."""

    model_config = {"frozen": True, "extra": "forbid"}

    type_name: str = Field(min_length=1)
    fields: dict[str, FieldSchema] = Field(default_factory=dict)

    def field(self, path: str) -> FieldSchema | None:
        """Look up a field by dotted path (``maintenance.day``).

        Returns:
            The FieldSchema, or None if the path is not declared.
        """
        parts = path.split(".")
        current: dict[str, FieldSchema] | None = self.fields
        found: FieldSchema | None = None
        for part in parts:
            if current is None or part not in current:
                return None
            found = current[part]
            current = found.elem
        return found

    def validate_attributes(self, attributes: dict[str, Any]) -> list[str]:
        """Check desired attributes against the schema.

        Only presence rules are enforced here: Required fields must be set
        and Computed fields must not be.

        Returns:
            List of human-readable problems; empty when valid.
        """
        problems: list[str] = []
        for name, spec in self.fields.items():
            value = attributes.get(name)
            if spec.mode == FieldMode.REQUIRED and value is None:
                problems.append(f"{name}: required field is missing")
            elif spec.mode == FieldMode.COMPUTED and name in attributes:
                problems.append(f"{name}: computed field cannot be set")
        return problems

    def force_new_paths(self) -> list[str]:
        """Dotted paths of every field whose change forces replacement."""
        paths: list[str] = []

        def walk(prefix: str, fields: dict[str, FieldSchema]) -> None:
            for name, spec in fields.items():
                path = f"{prefix}{name}"
                if spec.force_new:
                    paths.append(path)
                if spec.elem and spec.type == FieldType.MAP:
                    walk(f"{path}.", spec.elem)

        walk("", self.fields)
        return paths


# =============================================================================
# Desired and Observed State
# =============================================================================


class ResourceSpec(BaseModel):
    """Desired configuration for one resource instance.

    Owned by the caller and immutable for the duration of one apply cycle.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    resource_type: str = Field(min_length=1)
    attributes: dict[str, Any] = Field(default_factory=dict)


class ResourceRecord(BaseModel):
    """Last known normalized observed state of a resource instance."""

    model_config = {"frozen": True, "extra": "forbid"}

    resource_id: str = Field(min_length=1)
    resource_type: str = Field(min_length=1)
    state: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    observed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


# =============================================================================
# Wait Descriptor
# =============================================================================


class WaitSpec(BaseModel):
    """Immutable per-operation convergence descriptor.

    Attributes:
        pending: States that mean "still working".
        target: States that mean "done".
        failure: States from which no convergence is possible.
        timeout_seconds: Overall deadline for the wait.
        poll_interval_seconds: Initial delay between polls.
        max_poll_interval_seconds: Cap for the backed-off interval.
        backoff_factor: Multiplier applied to the interval after each poll.
        jitter: Fraction of the interval added as random extra delay.
        delay_seconds: Delay before the first poll.
        min_consecutive_target: Consecutive target observations required.
        max_not_found_checks: Consecutive not-found/transient reads tolerated.
        absent_is_target: Absence satisfies the wait (deletions).
    """

    model_config = {"frozen": True, "extra": "forbid"}

    pending: frozenset[str] = frozenset()
    target: frozenset[str] = frozenset()
    failure: frozenset[str] = frozenset()
    timeout_seconds: float = Field(gt=0)
    poll_interval_seconds: float = Field(5.0, gt=0)
    max_poll_interval_seconds: float | None = Field(None, gt=0)
    backoff_factor: float = Field(1.0, ge=1.0)
    jitter: float = Field(0.0, ge=0.0, le=1.0)
    delay_seconds: float = Field(0.0, ge=0.0)
    min_consecutive_target: int = Field(1, ge=1)
    max_not_found_checks: int = Field(20, ge=0)
    absent_is_target: bool = False

    @field_validator("pending", "target", "failure", mode="before")
    @classmethod
    def coerce_states(cls, v: Any) -> Any:
        if isinstance(v, str):
            return frozenset({v})
        return v

    @model_validator(mode="after")
    def validate_state_sets(self) -> WaitSpec:
        if not self.target and not self.absent_is_target:
            raise ValueError("target must not be empty unless absence is the target")
        overlap = self.target & self.failure
        if overlap:
            raise ValueError(f"states cannot be both target and failure: {sorted(overlap)}")
        overlap = self.target & self.pending
        if overlap:
            raise ValueError(f"states cannot be both target and pending: {sorted(overlap)}")
        if (
            self.max_poll_interval_seconds is not None
            and self.max_poll_interval_seconds < self.poll_interval_seconds
        ):
            raise ValueError("max_poll_interval_seconds must be >= poll_interval_seconds")
        return self
