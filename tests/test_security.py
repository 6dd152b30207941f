"""Tests for secretless architecture enforcement.

These tests verify that subnetguard only runs on top of an existing
session and rejects any credential environment variables.
"""

from __future__ import annotations

import logging
import os
from unittest import mock

import pytest

from subnetguard.security import (
    FORBIDDEN_CREDENTIAL_ENV_VARS,
    SecretlessViolationError,
    enforce_secretless_architecture,
    get_session_credential,
    log_security_audit_event,
)


class TestSecretlessEnforcement:
    """Tests for secretless architecture enforcement."""

    def test_clean_environment_passes(self) -> None:
        """Test that enforcement passes with no credential env vars."""
        with mock.patch.dict(os.environ, {}, clear=True):
            # Should not raise
            enforce_secretless_architecture()

    @pytest.mark.parametrize("env_var", FORBIDDEN_CREDENTIAL_ENV_VARS)
    def test_forbidden_env_var_raises(self, env_var: str) -> None:
        """Test that each forbidden env var raises SecretlessViolationError."""
        with mock.patch.dict(os.environ, {env_var: "some-secret-value"}):
            with pytest.raises(SecretlessViolationError) as exc_info:
                enforce_secretless_architecture()

            assert env_var in str(exc_info.value)

    def test_azure_client_secret_rejected(self) -> None:
        """Test AZURE_CLIENT_SECRET specifically is rejected."""
        with mock.patch.dict(os.environ, {"AZURE_CLIENT_SECRET": "my-secret"}):
            with pytest.raises(SecretlessViolationError) as exc_info:
                enforce_secretless_architecture()

            assert "SECURITY VIOLATION" in str(exc_info.value)

    def test_empty_value_is_ignored(self) -> None:
        """Test that a set-but-empty variable is not a violation."""
        with mock.patch.dict(os.environ, {"AZURE_CLIENT_SECRET": ""}, clear=True):
            enforce_secretless_architecture()


class TestGetSessionCredential:
    """Tests for session credential selection."""

    def test_rejects_secret_env_var(self) -> None:
        """Test that get_session_credential enforces secretless."""
        with mock.patch.dict(os.environ, {"AZURE_CLIENT_SECRET": "secret"}):
            with pytest.raises(SecretlessViolationError):
                get_session_credential()

    @mock.patch("subnetguard.security.AzureCliCredential")
    def test_returns_cli_credential_by_default(self, mock_credential_class: mock.Mock) -> None:
        """Test that the Azure CLI session is used by default."""
        mock_credential = mock.Mock()
        mock_credential_class.return_value = mock_credential

        with mock.patch.dict(os.environ, {}, clear=True):
            result = get_session_credential()

        mock_credential_class.assert_called_once_with()
        assert result is mock_credential

    @mock.patch("subnetguard.security.ManagedIdentityCredential")
    def test_returns_system_assigned_identity(self, mock_credential_class: mock.Mock) -> None:
        """Test that system-assigned MI is used when no client_id."""
        with mock.patch.dict(os.environ, {}, clear=True):
            result = get_session_credential(use_managed_identity=True)

        mock_credential_class.assert_called_once_with()
        assert result is mock_credential_class.return_value

    @mock.patch("subnetguard.security.ManagedIdentityCredential")
    def test_returns_user_assigned_with_client_id(self, mock_credential_class: mock.Mock) -> None:
        """Test that user-assigned MI is used when client_id provided."""
        client_id = "test-client-id-12345"

        with mock.patch.dict(os.environ, {}, clear=True):
            get_session_credential(use_managed_identity=True, client_id=client_id)

        mock_credential_class.assert_called_once_with(client_id=client_id)


class TestSecurityAudit:
    """Tests for audit log lines."""

    def test_audit_event_fields(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.INFO, logger="subnetguard.security"):
            log_security_audit_event(
                event_type="nsg_association",
                principal="operator@contoso.com",
                target_resource="/subscriptions/x/virtualNetworks/vnet/subnets/web",
                action="associate:nsg",
                result="success",
            )

        record = caplog.records[-1]
        assert record.getMessage() == "Security audit: nsg_association"
        assert record.security_audit is True  # type: ignore[attr-defined]
        assert record.principal == "operator@contoso.com"  # type: ignore[attr-defined]
        assert record.result == "success"  # type: ignore[attr-defined]


class TestForbiddenEnvVarsList:
    """Tests for the forbidden environment variables list."""

    def test_contains_azure_client_secret(self) -> None:
        assert "AZURE_CLIENT_SECRET" in FORBIDDEN_CREDENTIAL_ENV_VARS

    def test_contains_password_credentials(self) -> None:
        """Test that password-based credentials are forbidden."""
        assert "AZURE_USERNAME" in FORBIDDEN_CREDENTIAL_ENV_VARS
        assert "AZURE_PASSWORD" in FORBIDDEN_CREDENTIAL_ENV_VARS

    def test_list_is_tuple(self) -> None:
        """Test that the list is immutable (tuple, not list)."""
        assert isinstance(FORBIDDEN_CREDENTIAL_ENV_VARS, tuple)
