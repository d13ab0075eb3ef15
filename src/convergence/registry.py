"""Resource type registry.

Each resource type is one handler (schema, expand, flatten, identifier
and state extraction) registered under its type name. The engine looks
handlers up here instead of dispatching through per-resource functions.
"""

from __future__ import annotations

import logging

from .config import EngineConfig, ProviderContext
from .errors import UnknownResourceTypeError
from .handlers import ResourceHandler
from .profiles import WaitProfiles
from .reconciler import Reconciler
from .transport import Transport

logger = logging.getLogger(__name__)


class ResourceRegistry:
    """Dispatch table from resource type name to handler."""

    def __init__(self) -> None:
        self._handlers: dict[str, ResourceHandler] = {}

    def register(self, handler: ResourceHandler, *, replace: bool = False) -> None:
        """Register a handler under its type name.

        Args:
            handler: Handler to register.
            replace: Allow overwriting an existing registration.

        Raises:
            ValueError: If the type name is empty, or already registered and
                replace is False.
        """
        name = getattr(handler, "type_name", "")
        if not name:
            raise ValueError(f"{type(handler).__name__} does not declare a type_name")

        existing = self._handlers.get(name)
        if existing is not None and not replace:
            raise ValueError(
                f"Resource type '{name}' is already handled by "
                f"{type(existing).__name__}. Cannot register {type(handler).__name__}."
            )
        if existing is not None:
            logger.warning("Overwriting existing handler", extra={"resource_type": name})

        self._handlers[name] = handler
        logger.info(
            "Registered resource handler",
            extra={"resource_type": name, "handler": type(handler).__name__},
        )

    def get(self, type_name: str) -> ResourceHandler:
        """Get the handler for a resource type.

        Raises:
            UnknownResourceTypeError: If no handler is registered.
        """
        handler = self._handlers.get(type_name)
        if handler is None:
            raise UnknownResourceTypeError(
                f"No handler registered for resource type '{type_name}'"
            )
        return handler

    @property
    def types(self) -> list[str]:
        """Registered type names, sorted."""
        return sorted(self._handlers)

    def __contains__(self, type_name: object) -> bool:
        return type_name in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)

    def reconciler_for(
        self,
        type_name: str,
        transport: Transport,
        context: ProviderContext,
        config: EngineConfig | None = None,
        *,
        profiles: WaitProfiles | None = None,
    ) -> Reconciler:
        """Build a Reconciler for one registered resource type.

        Raises:
            UnknownResourceTypeError: If no handler is registered.
        """
        return Reconciler(
            self.get(type_name),
            transport,
            context,
            config,
            profiles=profiles,
        )
