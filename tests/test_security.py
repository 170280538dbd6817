"""Tests for operator identity enforcement and secret hygiene.

These tests verify that onboarding refuses to authenticate as anything but
the signed-in operator, and that secret values never reach output.
"""

from __future__ import annotations

import os
from unittest import mock

import pytest

from onboarding.security import (
    FORBIDDEN_CREDENTIAL_ENV_VARS,
    OperatorCredentialError,
    SecretLeakError,
    enforce_operator_identity,
    ensure_secret_free,
    get_operator_credential,
    redact,
)


class TestOperatorIdentityEnforcement:
    """Tests for operator identity enforcement."""

    def test_clean_environment_passes(self) -> None:
        """Test that enforcement passes with no credential env vars."""
        with mock.patch.dict(os.environ, {}, clear=True):
            enforce_operator_identity()

    @pytest.mark.parametrize("env_var", FORBIDDEN_CREDENTIAL_ENV_VARS)
    def test_forbidden_env_var_raises(self, env_var: str) -> None:
        """Test that each forbidden env var raises OperatorCredentialError."""
        with mock.patch.dict(os.environ, {env_var: "some-secret-value"}, clear=True):
            with pytest.raises(OperatorCredentialError) as exc_info:
                enforce_operator_identity()

            assert env_var in str(exc_info.value)
            assert "az login" in str(exc_info.value)

    def test_empty_value_is_ignored(self) -> None:
        """Test that an exported but empty variable does not block startup."""
        with mock.patch.dict(os.environ, {"AZURE_CLIENT_SECRET": ""}, clear=True):
            enforce_operator_identity()


class TestGetOperatorCredential:
    """Tests for operator credential getter."""

    def test_rejects_secret_env_var(self) -> None:
        """Test that get_operator_credential enforces operator identity."""
        with mock.patch.dict(os.environ, {"AZURE_CLIENT_SECRET": "secret"}, clear=True):
            with pytest.raises(OperatorCredentialError):
                get_operator_credential("tenant")

    @mock.patch("onboarding.security.DefaultAzureCredential")
    def test_pins_tenant(self, mock_credential_class: mock.Mock) -> None:
        """Test that the credential is allowed for the target tenant."""
        with mock.patch.dict(os.environ, {}, clear=True):
            result = get_operator_credential("tenant-1")

        mock_credential_class.assert_called_once_with(
            exclude_environment_credential=True,
            exclude_managed_identity_credential=True,
            additionally_allowed_tenants=["tenant-1"],
        )
        assert result is mock_credential_class.return_value

    @mock.patch("onboarding.security.DefaultAzureCredential")
    def test_default_tenant(self, mock_credential_class: mock.Mock) -> None:
        """Test that no tenant falls back to the account default."""
        with mock.patch.dict(os.environ, {}, clear=True):
            get_operator_credential()

        mock_credential_class.assert_called_once_with(
            exclude_environment_credential=True,
            exclude_managed_identity_credential=True,
        )


class TestSecretHygiene:
    """Tests for redaction and leak checks."""

    def test_redact(self) -> None:
        """Test that identifiers are masked after a short prefix."""
        assert redact("guest@partner.example") == "gues***"
        assert redact("abc") == "***"
        assert redact(None) == "***"

    def test_ensure_secret_free_passes(self) -> None:
        """Test that clean text passes."""
        ensure_secret_free('{"secretName": "app-client-secret"}', ["s3cr3t-value"])

    def test_ensure_secret_free_raises(self) -> None:
        """Test that a contained secret value is refused."""
        with pytest.raises(SecretLeakError):
            ensure_secret_free('{"detail": "s3cr3t-value"}', ["s3cr3t-value"])

    def test_empty_secret_ignored(self) -> None:
        """Test that an empty secret value never matches."""
        ensure_secret_free("anything", [""])

    def test_list_is_tuple(self) -> None:
        """Test that the forbidden list is immutable."""
        assert isinstance(FORBIDDEN_CREDENTIAL_ENV_VARS, tuple)
