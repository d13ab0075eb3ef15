"""Wait profile loading with validation.

How many not-found reads to tolerate, how long to wait and how many
consecutive target observations to require are resource-specific. A
profile file lets operators tune them per resource type and operation
without code changes:

    profiles:
      Microsoft.Network/virtualNetworks:
        create:
          timeoutSeconds: 600
          minConsecutiveTarget: 2
          maxNotFoundChecks: 20
        delete:
          pollIntervalSeconds: 15

SECURITY: File reads enforce a size limit. Input is validated at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Annotated

import yaml
from pydantic import BaseModel, Field, ValidationError

from .config import MAX_PROFILE_FILE_SIZE_BYTES
from .models import Operation, WaitSpec

logger = logging.getLogger(__name__)


class ProfileLoadError(Exception):
    """Raised when profile loading or validation fails."""

    pass


class WaitOverrides(BaseModel):
    """Optional overrides for one operation of one resource type."""

    model_config = {"extra": "forbid", "populate_by_name": True, "frozen": True}

    timeout_seconds: Annotated[float | None, Field(gt=0, alias="timeoutSeconds")] = None
    poll_interval_seconds: Annotated[
        float | None, Field(gt=0, alias="pollIntervalSeconds")
    ] = None
    max_poll_interval_seconds: Annotated[
        float | None, Field(gt=0, alias="maxPollIntervalSeconds")
    ] = None
    backoff_factor: Annotated[float | None, Field(ge=1.0, alias="backoffFactor")] = None
    jitter: Annotated[float | None, Field(ge=0.0, le=1.0)] = None
    delay_seconds: Annotated[float | None, Field(ge=0.0, alias="delaySeconds")] = None
    min_consecutive_target: Annotated[
        int | None, Field(ge=1, alias="minConsecutiveTarget")
    ] = None
    max_not_found_checks: Annotated[int | None, Field(ge=0, alias="maxNotFoundChecks")] = None

    def apply(self, base: WaitSpec) -> WaitSpec:
        """Overlay the set fields on ``base`` and re-validate."""
        updates = self.model_dump(exclude_none=True)
        if not updates:
            return base
        return WaitSpec.model_validate({**base.model_dump(), **updates})


class WaitProfiles(BaseModel):
    """Overrides keyed by resource type, then operation."""

    model_config = {"extra": "forbid"}

    profiles: dict[str, dict[Operation, WaitOverrides]] = Field(default_factory=dict)

    def overrides_for(self, resource_type: str, operation: Operation) -> WaitOverrides | None:
        return self.profiles.get(resource_type, {}).get(operation)

    def apply(self, resource_type: str, operation: Operation, base: WaitSpec) -> WaitSpec:
        """Apply the matching overrides, if any, to a base WaitSpec.

        Raises:
            ProfileLoadError: If the merged WaitSpec is invalid, e.g. a poll
                interval above the resource type's maximum interval.
        """
        overrides = self.overrides_for(resource_type, operation)
        if overrides is None:
            return base
        try:
            return overrides.apply(base)
        except ValidationError as e:
            raise ProfileLoadError(
                f"Wait profile for {resource_type} {operation.value} does not fit "
                f"its defaults:\n{_format_errors(e)}"
            ) from e


def _format_errors(error: ValidationError) -> str:
    errors = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"])
        errors.append(f"  - {loc}: {item['msg']}" if loc else f"  - {item['msg']}")
    return "\n".join(errors)


def load_wait_profiles(path: Path) -> WaitProfiles:
    """Load and validate a wait profile file from YAML.

    Args:
        path: YAML file path.

    Returns:
        Validated WaitProfiles.

    Raises:
        ProfileLoadError: If the file cannot be loaded or fails validation.
    """
    if not path.exists():
        raise ProfileLoadError(f"Wait profile file not found: {path}")

    # SECURITY: Check file size before reading
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ProfileLoadError(f"Failed to stat wait profile file {path}: {e}") from e

    if file_size > MAX_PROFILE_FILE_SIZE_BYTES:
        raise ProfileLoadError(
            f"Wait profile file exceeds maximum size of {MAX_PROFILE_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ProfileLoadError(f"Failed to read wait profile file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ProfileLoadError(f"Invalid YAML in {path}: {e}") from e

    if raw_data is None:
        raw_data = {}
    if not isinstance(raw_data, dict):
        raise ProfileLoadError(f"Wait profile file must contain a YAML mapping: {path}")

    try:
        profiles = WaitProfiles.model_validate(raw_data)
    except ValidationError as e:
        raise ProfileLoadError(f"Validation failed for {path}:\n{_format_errors(e)}") from e

    logger.info(
        "Loaded wait profiles from %s",
        path,
        extra={"resource_types": sorted(profiles.profiles)},
    )
    return profiles
