"""Credential acquisition for Azure-backed transports.

The engine authenticates with managed identities only:
- a user-assigned identity when ProviderContext.client_id is set
- the system-assigned identity otherwise

Secrets in the environment (client secrets, certificates, passwords) are
refused before any credential is built. A credential placed on the
ProviderContext by the caller is used as-is.
"""

from __future__ import annotations

import logging
import os
from typing import Any

from azure.identity import ManagedIdentityCredential

from .config import ProviderContext

logger = logging.getLogger(__name__)

# Environment variables that indicate secret-based authentication
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)


class SecretlessViolationError(Exception):
    """Raised when secret-based credentials are present in the environment."""

    pass


def enforce_secretless_environment() -> None:
    """Refuse to run when credential secrets are present in the environment.

    Raises:
        SecretlessViolationError: If any forbidden variable is set.
    """
    found = [name for name in FORBIDDEN_CREDENTIAL_ENV_VARS if os.environ.get(name)]
    if found:
        logger.critical(
            "Credential secrets found in environment",
            extra={"security_event": "credential_detected", "env_vars": found},
        )
        raise SecretlessViolationError(
            f"Secret-based credentials are not allowed, remove {', '.join(found)} "
            "and assign a managed identity instead"
        )


def get_managed_identity_credential(client_id: str | None = None) -> ManagedIdentityCredential:
    """Build a ManagedIdentityCredential after checking the environment.

    Args:
        client_id: Client ID of a user-assigned managed identity. None selects
            the system-assigned identity.

    Raises:
        SecretlessViolationError: If credential secrets are present.
    """
    enforce_secretless_environment()

    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using system-assigned managed identity")
    return ManagedIdentityCredential()


def credential_for(context: ProviderContext) -> Any:
    """Credential carried by the context, or a managed identity one."""
    if context.credential is not None:
        return context.credential
    return get_managed_identity_credential(context.client_id)
