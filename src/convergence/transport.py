"""Transport protocol: the remote-call seam underneath the engine."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class Transport(Protocol):
    """Opaque create/read/update/delete calls against a remote service.

    Retries, backoff, auth and rate limiting for these calls belong to the
    transport. Absence is signalled by raising ``errors.NotFoundError``.
    """

    async def create(self, resource_type: str, payload: dict[str, Any]) -> Any:
        """Issue the create call and return the raw response."""
        ...

    async def read(self, resource_type: str, resource_id: str) -> Any | None:
        """Read the current raw state. ``None`` means an empty result."""
        ...

    async def update(
        self, resource_type: str, resource_id: str, payload: dict[str, Any]
    ) -> Any | None:
        """Issue the update call."""
        ...

    async def delete(self, resource_type: str, resource_id: str) -> None:
        """Issue the delete call."""
        ...
