"""Credential acquisition and secret hygiene for onboarding runs.

Onboarding runs as the human operator. Several steps grant roles to the
operator's own identity, and the secret write in the key vault relies on
those grants, so the run must not authenticate as some other identity.

SECURITY INVARIANTS:
1. Service principal secret/certificate variables must not be present in
   the environment; DefaultAzureCredential would otherwise prefer them
2. Minted client secrets exist only in memory and in the key vault
3. Serialized onboarding output is checked for secret values before writing
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable

from azure.identity import DefaultAzureCredential

logger = logging.getLogger(__name__)

# Environment variables that would make DefaultAzureCredential authenticate
# as a service principal instead of the operator
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

OPERATOR_CREDENTIAL_MESSAGE = (
    "Detected {env_var} in the environment. Onboarding must run as the "
    "operator's own identity (az login / interactive sign-in), because the "
    "operator is granted key vault access during the run. Unset the "
    "variable and sign in with 'az login --tenant <tenant-id>'."
)

REDACTED = "***"


class OperatorCredentialError(Exception):
    """Raised when the environment would authenticate as a non-operator identity."""

    pass


class SecretLeakError(Exception):
    """Raised when output about to be written contains a secret value."""

    pass


def enforce_operator_identity() -> None:
    """Refuse to start if service principal credentials are present.

    Raises:
        OperatorCredentialError: If any forbidden credential variable is set.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Non-operator credential detected",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise OperatorCredentialError(OPERATOR_CREDENTIAL_MESSAGE.format(env_var=env_var))


def get_operator_credential(tenant_id: str | None = None) -> DefaultAzureCredential:
    """Get the operator's credential after verifying the environment.

    Args:
        tenant_id: Tenant to authenticate against. When None the default
            tenant of the signed-in account is used.

    Returns:
        DefaultAzureCredential that resolves to the signed-in operator.

    Raises:
        OperatorCredentialError: If service principal variables are set.
    """
    enforce_operator_identity()

    if tenant_id:
        logger.info("Using operator credential", extra={"tenant_id": tenant_id})
        return DefaultAzureCredential(
            exclude_environment_credential=True,
            exclude_managed_identity_credential=True,
            additionally_allowed_tenants=[tenant_id],
        )

    logger.info("Using operator credential for default tenant")
    return DefaultAzureCredential(
        exclude_environment_credential=True,
        exclude_managed_identity_credential=True,
    )


def redact(value: str | None, visible: int = 4) -> str:
    """Mask all but the first few characters of an identifier for logs."""
    if not value:
        return REDACTED
    if len(value) <= visible:
        return REDACTED
    return value[:visible] + REDACTED


def ensure_secret_free(text: str, secret_values: Iterable[str]) -> None:
    """Verify text contains none of secret_values.

    Raises:
        SecretLeakError: If any non-empty secret value occurs in text.
    """
    for secret in secret_values:
        if secret and secret in text:
            logger.critical(
                "Secret value found in output; refusing to write",
                extra={"security_event": "secret_leak_blocked"},
            )
            raise SecretLeakError("Refusing to emit output containing a secret value")


def log_security_audit_event(
    event_type: str,
    target_resource: str | None = None,
    action: str | None = None,
    result: str | None = None,
) -> None:
    """Log a security-relevant audit event.

    All security events are logged with structured data for SIEM ingestion.

    Args:
        event_type: Type of security event (role_binding, secret_write, ...).
        target_resource: Scope or resource being changed.
        action: Action being performed.
        result: Result of the action (success, failure, denied).
    """
    logger.info(
        f"Security audit: {event_type}",
        extra={
            "security_audit": True,
            "event_type": event_type,
            "target_resource": target_resource,
            "action": action,
            "result": result,
        },
    )
