"""Resource handler interface: the per-type capability set.

A handler is everything the engine needs to know about one resource type:

- schema: field declarations used by drift detection and validation
- expand: desired spec -> request payload
- flatten: raw response -> normalized attributes
- extract_id / extract_state: identifier and state tag from a raw response
- desired_id: identifier known before the create call, if any
- wait_states: pending/target/failure states for each operation

Per-resource differences are data, not behavior: the polling loop is
shared, only the states and timeouts change.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from .config import EngineConfig, ProviderContext
from .models import Operation, ResourceSchema, ResourceSpec, WaitSpec


@dataclass(frozen=True)
class WaitStates:
    """State sets for one operation of one resource type."""

    pending: frozenset[str]
    target: frozenset[str]
    failure: frozenset[str] = frozenset()
    absent_is_target: bool = False
    min_consecutive_target: int | None = None
    not_found_checks: int | None = None


class ResourceHandler(ABC):
    """Abstract base for resource type handlers.

    Subclasses set ``type_name`` (class or instance attribute) and implement
    the mapping methods.
    """

    type_name: str

    @property
    @abstractmethod
    def schema(self) -> ResourceSchema:
        """Field declarations for this resource type."""
        ...

    @property
    @abstractmethod
    def wait_states(self) -> dict[Operation, WaitStates]:
        """State sets for create, update and delete."""
        ...

    @abstractmethod
    def expand(self, spec: ResourceSpec, context: ProviderContext) -> dict[str, Any]:
        """Build the request payload for a create or update call."""
        ...

    @abstractmethod
    def flatten(self, raw: Any) -> dict[str, Any]:
        """Map a raw read response to normalized attributes."""
        ...

    @abstractmethod
    def extract_id(self, raw: Any) -> str:
        """Extract the identifier from a raw create response."""
        ...

    @abstractmethod
    def extract_state(self, raw: Any) -> str:
        """Extract the state tag from a raw read response."""
        ...

    def desired_id(self, payload: dict[str, Any]) -> str | None:
        """Identifier a create call with ``payload`` will produce, if known up front.

        Services that address resources by a caller-chosen identifier (ARM
        resource IDs, names) return it here so the reconciler can claim the
        identifier before issuing the call. Server-assigned identifiers
        return None.
        """
        return None

    def wait_spec(self, operation: Operation, config: EngineConfig) -> WaitSpec:
        """Build the WaitSpec for an operation from config defaults.

        Args:
            operation: Operation being awaited.
            config: Engine configuration supplying timeouts and cadence.

        Returns:
            Validated WaitSpec.
        """
        states = self.wait_states[operation]
        return WaitSpec(
            pending=states.pending,
            target=states.target,
            failure=states.failure,
            absent_is_target=states.absent_is_target,
            timeout_seconds=config.timeout_for(operation.value),
            poll_interval_seconds=config.poll_interval_seconds,
            max_poll_interval_seconds=config.max_poll_interval_seconds,
            backoff_factor=config.backoff_factor,
            jitter=config.jitter,
            min_consecutive_target=(
                states.min_consecutive_target
                if states.min_consecutive_target is not None
                else config.min_consecutive_target
            ),
            max_not_found_checks=(
                states.not_found_checks
                if states.not_found_checks is not None
                else config.not_found_checks
            ),
        )
