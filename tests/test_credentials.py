"""Tests for managed identity credential acquisition."""

import os
from unittest.mock import MagicMock, patch

import pytest

from convergence.config import ProviderContext
from convergence.credentials import (
    FORBIDDEN_CREDENTIAL_ENV_VARS,
    SecretlessViolationError,
    credential_for,
    enforce_secretless_environment,
    get_managed_identity_credential,
)


class TestEnforceSecretlessEnvironment:
    """Tests for the environment check."""

    def test_clean_environment_passes(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            enforce_secretless_environment()

    @pytest.mark.parametrize("env_var", FORBIDDEN_CREDENTIAL_ENV_VARS)
    def test_secret_rejected(self, env_var: str) -> None:
        with patch.dict(os.environ, {env_var: "value"}, clear=True):
            with pytest.raises(SecretlessViolationError, match=env_var):
                enforce_secretless_environment()

    def test_empty_value_ignored(self) -> None:
        with patch.dict(os.environ, {"AZURE_CLIENT_SECRET": ""}, clear=True):
            enforce_secretless_environment()


class TestGetManagedIdentityCredential:
    """Tests for credential construction."""

    def test_user_assigned(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            with patch("convergence.credentials.ManagedIdentityCredential") as mock_cred:
                credential = get_managed_identity_credential("client-id-123456")

        mock_cred.assert_called_once_with(client_id="client-id-123456")
        assert credential is mock_cred.return_value

    def test_system_assigned(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            with patch("convergence.credentials.ManagedIdentityCredential") as mock_cred:
                get_managed_identity_credential()

        mock_cred.assert_called_once_with()

    def test_refuses_with_secret_present(self) -> None:
        with patch.dict(os.environ, {"AZURE_PASSWORD": "hunter2"}, clear=True):
            with patch("convergence.credentials.ManagedIdentityCredential") as mock_cred:
                with pytest.raises(SecretlessViolationError):
                    get_managed_identity_credential("client")

        mock_cred.assert_not_called()


class TestCredentialFor:
    """Tests for resolving the credential of a ProviderContext."""

    def test_context_credential_used_as_is(self) -> None:
        supplied = MagicMock()

        assert credential_for(ProviderContext(credential=supplied)) is supplied

    def test_falls_back_to_managed_identity(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            with patch("convergence.credentials.ManagedIdentityCredential") as mock_cred:
                credential = credential_for(ProviderContext(client_id="uami"))

        mock_cred.assert_called_once_with(client_id="uami")
        assert credential is mock_cred.return_value
