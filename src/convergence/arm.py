"""Azure Resource Manager transport and generic handler.

ArmResourceTransport starts ARM long-running operations and returns as
soon as the request is accepted. It never blocks on the operation's own
poller: convergence is observed by the Wait Engine through
``provisioningState``, so timeouts, flake tolerance and cancellation
behave the same for every resource type.

ArmResourceHandler maps any ARM resource with the usual envelope
(name, location, tags, properties) onto the engine. One instance is
registered per resource type, e.g. ``Microsoft.Network/virtualNetworks``.

SECURITY: Credentials come from credentials.credential_for (managed
identity only) unless the caller supplies one on the ProviderContext.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from typing import Any, TypeVar

from azure.core.exceptions import HttpResponseError, ResourceNotFoundError
from azure.mgmt.resource import ResourceManagementClient

from .config import ConfigurationError, ProviderContext
from .credentials import credential_for
from .errors import NotFoundError
from .handlers import ResourceHandler, WaitStates
from .models import (
    FieldMode,
    FieldSchema,
    FieldType,
    Operation,
    ResourceSchema,
    ResourceSpec,
)
from .normalization import NormalizationType

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Per-call limit for starting an ARM operation or reading a resource
DEFAULT_CALL_TIMEOUT_SECONDS = 60

# Resources without a provisioningState are usable as soon as they exist
DEFAULT_PROVISIONING_STATE = "Succeeded"


class ArmResourceTransport:
    """Transport over ``ResourceManagementClient.resources`` by-id operations."""

    def __init__(
        self,
        client: ResourceManagementClient,
        api_versions: Mapping[str, str],
        *,
        timeout_seconds: float = DEFAULT_CALL_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize transport.

        Args:
            client: Resource management client.
            api_versions: API version per resource type.
            timeout_seconds: Limit for each SDK call.
        """
        self._client = client
        self._api_versions = dict(api_versions)
        self._timeout_seconds = timeout_seconds

    @classmethod
    def from_context(
        cls,
        context: ProviderContext,
        api_versions: Mapping[str, str],
        *,
        timeout_seconds: float = DEFAULT_CALL_TIMEOUT_SECONDS,
    ) -> ArmResourceTransport:
        """Build a transport for the context's subscription.

        Raises:
            ConfigurationError: If the context has no subscription.
            SecretlessViolationError: If credential secrets are in the environment.
        """
        if not context.subscription_id:
            raise ConfigurationError("ARM transport requires a subscription_id")
        client = ResourceManagementClient(credential_for(context), context.subscription_id)
        return cls(client, api_versions, timeout_seconds=timeout_seconds)

    def api_version(self, resource_type: str) -> str:
        try:
            return self._api_versions[resource_type]
        except KeyError as e:
            raise ConfigurationError(
                f"No API version configured for resource type {resource_type}"
            ) from e

    async def create(self, resource_type: str, payload: dict[str, Any]) -> dict[str, Any]:
        body = dict(payload)
        resource_id = body.pop("id")
        api_version = self.api_version(resource_type)
        await self._call(
            "create",
            resource_id,
            lambda: self._client.resources.begin_create_or_update_by_id(
                resource_id, api_version, body
            ),
        )
        return {"id": resource_id, **body}

    async def read(self, resource_type: str, resource_id: str) -> Any:
        api_version = self.api_version(resource_type)
        return await self._call(
            "read",
            resource_id,
            lambda: self._client.resources.get_by_id(resource_id, api_version),
        )

    async def update(
        self, resource_type: str, resource_id: str, payload: dict[str, Any]
    ) -> None:
        body = {k: v for k, v in payload.items() if k != "id"}
        api_version = self.api_version(resource_type)
        await self._call(
            "update",
            resource_id,
            lambda: self._client.resources.begin_update_by_id(resource_id, api_version, body),
        )

    async def delete(self, resource_type: str, resource_id: str) -> None:
        api_version = self.api_version(resource_type)
        await self._call(
            "delete",
            resource_id,
            lambda: self._client.resources.begin_delete_by_id(resource_id, api_version),
        )

    async def _call(self, operation: str, resource_id: str, func: Callable[[], T]) -> T:
        """Run a blocking SDK call in the executor with a timeout.

        Raises:
            NotFoundError: If ARM answered 404.
            TimeoutError: If the call exceeded the per-call timeout.
            HttpResponseError: For any other ARM error.
        """
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, func),
                timeout=self._timeout_seconds,
            )
        except ResourceNotFoundError as e:
            raise NotFoundError(str(e), resource_id=resource_id) from e
        except HttpResponseError as e:
            if e.status_code == 404:
                raise NotFoundError(str(e), resource_id=resource_id) from e
            logger.warning(
                "ARM call failed",
                extra={
                    "operation": operation,
                    "resource_id": resource_id,
                    "status_code": e.status_code,
                    "error": str(e),
                },
            )
            raise
        except TimeoutError:
            logger.error(
                "ARM call timed out",
                extra={
                    "operation": operation,
                    "resource_id": resource_id,
                    "timeout_seconds": self._timeout_seconds,
                },
            )
            raise


def arm_resource_id(
    subscription_id: str, resource_group: str, resource_type: str, name: str
) -> str:
    """Build a fully qualified ARM resource ID."""
    return (
        f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}"
        f"/providers/{resource_type}/{name}"
    )


def resource_group_from_id(resource_id: str) -> str | None:
    """Extract the resource group segment of an ARM resource ID."""
    parts = resource_id.strip("/").split("/")
    for i, part in enumerate(parts[:-1]):
        if part.lower() == "resourcegroups":
            return parts[i + 1]
    return None


def _as_dict(raw: Any) -> dict[str, Any]:
    """Plain dict view of a GenericResource or mapping."""
    if isinstance(raw, Mapping):
        return dict(raw)
    if hasattr(raw, "as_dict"):
        return raw.as_dict()
    raise TypeError(f"Unsupported ARM response type: {type(raw).__name__}")


class ArmResourceHandler(ResourceHandler):
    """Generic handler for ARM resources driven by provisioningState."""

    def __init__(self, type_name: str) -> None:
        """Initialize handler.

        Args:
            type_name: ARM resource type, ``<namespace>/<type>``.
        """
        if "/" not in type_name:
            raise ValueError(f"ARM resource type must be <namespace>/<type>: {type_name}")
        self.type_name = type_name
        self._schema = ResourceSchema(
            type_name=type_name,
            fields={
                "id": FieldSchema(mode=FieldMode.COMPUTED),
                "name": FieldSchema(mode=FieldMode.REQUIRED, force_new=True),
                "resource_group": FieldSchema(
                    mode=FieldMode.REQUIRED,
                    force_new=True,
                    normalize=(NormalizationType.CASE_INSENSITIVE,),
                ),
                "location": FieldSchema(
                    mode=FieldMode.REQUIRED,
                    force_new=True,
                    normalize=(NormalizationType.CASE_INSENSITIVE,),
                ),
                "tags": FieldSchema(
                    type=FieldType.MAP,
                    subset=True,
                    normalize=(NormalizationType.EMPTY_EQUIVALENCE,),
                ),
                "properties": FieldSchema(
                    type=FieldType.MAP,
                    mode=FieldMode.OPTIONAL_COMPUTED,
                    subset=True,
                ),
                "provisioning_state": FieldSchema(mode=FieldMode.COMPUTED),
            },
        )

    @property
    def schema(self) -> ResourceSchema:
        return self._schema

    @property
    def wait_states(self) -> dict[Operation, WaitStates]:
        return {
            Operation.CREATE: WaitStates(
                pending=frozenset({"Accepted", "Creating", "Running", "Provisioning"}),
                target=frozenset({"Succeeded"}),
                failure=frozenset({"Failed", "Canceled"}),
            ),
            Operation.UPDATE: WaitStates(
                pending=frozenset({"Accepted", "Updating", "Running", "Provisioning"}),
                target=frozenset({"Succeeded"}),
                failure=frozenset({"Failed", "Canceled"}),
            ),
            Operation.DELETE: WaitStates(
                pending=frozenset({"Deleting", "Accepted"}),
                target=frozenset({"Deleted"}),
                failure=frozenset({"Failed"}),
                absent_is_target=True,
            ),
        }

    def expand(self, spec: ResourceSpec, context: ProviderContext) -> dict[str, Any]:
        if not context.subscription_id:
            raise ConfigurationError("ARM resources require a subscription_id")
        attrs = spec.attributes
        payload: dict[str, Any] = {
            "id": arm_resource_id(
                context.subscription_id,
                attrs["resource_group"],
                self.type_name,
                attrs["name"],
            ),
            "location": attrs["location"],
            "tags": context.merged_tags(attrs.get("tags")),
        }
        if attrs.get("properties") is not None:
            payload["properties"] = attrs["properties"]
        return payload

    def flatten(self, raw: Any) -> dict[str, Any]:
        data = _as_dict(raw)
        properties = dict(data.get("properties") or {})
        state = properties.pop("provisioningState", DEFAULT_PROVISIONING_STATE)
        resource_id = data.get("id") or ""
        return {
            "id": resource_id,
            "name": data.get("name"),
            "resource_group": resource_group_from_id(resource_id),
            "location": data.get("location"),
            "tags": data.get("tags") or {},
            "properties": properties,
            "provisioning_state": state,
        }

    def extract_id(self, raw: Any) -> str:
        return _as_dict(raw).get("id") or ""

    def desired_id(self, payload: dict[str, Any]) -> str | None:
        # PUT by id: the resource ID is fixed before the call
        return payload.get("id") or None

    def extract_state(self, raw: Any) -> str:
        properties = _as_dict(raw).get("properties") or {}
        return properties.get("provisioningState") or DEFAULT_PROVISIONING_STATE
