"""Error taxonomy for onboarding.

Every failure raised by the provisioning core is classified into one of four
kinds so the orchestrator can decide between retrying, aborting, or telling
the operator to escalate:

- TRANSIENT: replication lag. Retried automatically up to a bounded count.
- PERMISSION: the operator lacks a privilege at a named scope. Never retried.
- TIMEOUT: a bounded wait was exceeded. Recovery is to re-run later.
- FATAL: anything unclassified. Aborts immediately.

The reconciler and role binder only classify and raise. Retry decisions
belong to the orchestrator (see retry.py).
"""

from __future__ import annotations

import re
from enum import Enum

from azure.core.exceptions import AzureError, ServiceResponseTimeoutError

# Exit codes for the CLI embedding
EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_PERMISSION_DENIED = 2

# Message fragments indicating the referenced object has not replicated yet
TRANSIENT_PATTERNS: tuple[str, ...] = (
    "principalnotfound",
    "does not exist in the directory",
    "request_resourcenotfound",
    "resourcenotfound",
    "not found",
    "notfound",
    "does not exist",
    "could not be found",
    "replication",
)

# HTTP 400 bodies that mean "the principal you referenced isn't visible yet"
PRINCIPAL_BAD_REQUEST_PATTERNS: tuple[str, ...] = (
    "principal",
    "invalid object identifier",
    "request_badrequest",
)

PERMISSION_PATTERNS: tuple[str, ...] = (
    "authorizationfailed",
    "authorization_requestdenied",
    "forbidden",
    "not authorized",
    "does not have authorization",
    "insufficient privileges",
    "accessdenied",
)

_ACTION_PATTERN = re.compile(r"action '([^']+)'", re.IGNORECASE)
_SCOPE_PATTERN = re.compile(r"scope '([^']+)'", re.IGNORECASE)


class ErrorKind(str, Enum):
    """Classification of a provisioning failure."""

    TRANSIENT = "transient"
    PERMISSION = "permission"
    TIMEOUT = "timeout"
    FATAL = "fatal"


class FailureClass(str, Enum):
    """Terminal failure classes reported to the caller of a run."""

    PERMISSION_DENIED = "PermissionDenied"
    OTHER = "Other"


class CloudApiError(AzureError):
    """Raised by REST clients that do not go through the Azure SDK pipeline.

    Subclasses AzureError so the core handles Graph and ARM failures alike.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class ProvisioningError(Exception):
    """A classified failure from the reconciler, binder or waiter."""

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind,
        resource: str | None = None,
        resource_id: str | None = None,
        exhausted: bool = False,
        attempts: int = 0,
        missing_privilege: str | None = None,
        scope: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.resource = resource
        self.resource_id = resource_id
        self.exhausted = exhausted
        self.attempts = attempts
        self.missing_privilege = missing_privilege
        self.scope = scope

    @property
    def partial(self) -> bool:
        """True if an object was created before the failure."""
        return self.resource_id is not None

    def describe(self) -> str:
        parts = [f"[{self.kind.value}]"]
        if self.resource:
            parts.append(self.resource)
        parts.append(self.message)
        if self.kind == ErrorKind.PERMISSION:
            parts.append(
                f"(missing privilege '{self.missing_privilege or 'unknown'}' "
                f"at scope '{self.scope or 'unknown'}')"
            )
        if self.resource_id:
            parts.append(f"(partially created: {self.resource_id})")
        if self.exhausted:
            parts.append(f"(gave up after {self.attempts} attempts)")
        return " ".join(parts)


class RegistrationTimeout(ProvisioningError):
    """A resource provider did not reach Registered within the polling budget."""

    def __init__(self, provider: str, last_state: str, attempts: int) -> None:
        super().__init__(
            f"Provider '{provider}' still '{last_state}' after {attempts} polls. "
            "Wait a few minutes and re-run onboarding.",
            kind=ErrorKind.TIMEOUT,
            resource=provider,
            exhausted=True,
            attempts=attempts,
        )
        self.provider = provider
        self.last_state = last_state


class OnboardingError(Exception):
    """An onboarding run aborted at a named step."""

    def __init__(self, step: str, cause: ProvisioningError) -> None:
        super().__init__(f"Step '{step}' failed: {cause.describe()}")
        self.step = step
        self.cause = cause

    @property
    def failure_class(self) -> FailureClass:
        if self.cause.kind == ErrorKind.PERMISSION:
            return FailureClass.PERMISSION_DENIED
        return FailureClass.OTHER

    @property
    def exit_code(self) -> int:
        if self.failure_class == FailureClass.PERMISSION_DENIED:
            return EXIT_PERMISSION_DENIED
        return EXIT_FAILURE


def classify_error(error: BaseException) -> ErrorKind:
    """Classify a raw SDK or REST error.

    Permission is checked first: a 403 whose body mentions a missing
    principal is still a permission problem.
    """
    status_code = getattr(error, "status_code", None)
    code = getattr(error, "code", None) or ""
    error_detail = getattr(error, "error", None)
    if error_detail is not None and getattr(error_detail, "code", None):
        code = f"{code} {error_detail.code}"
    text = f"{code} {error}".lower()

    if isinstance(error, ServiceResponseTimeoutError):
        return ErrorKind.TIMEOUT

    if status_code in (401, 403) or any(p in text for p in PERMISSION_PATTERNS):
        return ErrorKind.PERMISSION

    if status_code == 400:
        if any(p in text for p in PRINCIPAL_BAD_REQUEST_PATTERNS):
            return ErrorKind.TRANSIENT
        return ErrorKind.FATAL

    if status_code == 404 or any(p in text for p in TRANSIENT_PATTERNS):
        return ErrorKind.TRANSIENT

    return ErrorKind.FATAL


def to_provisioning_error(
    error: BaseException,
    *,
    resource: str,
    privilege: str | None = None,
    scope: str | None = None,
    resource_id: str | None = None,
) -> ProvisioningError:
    """Wrap a raw error into a ProvisioningError with its classification.

    For permission errors, the missing action and scope are parsed from the
    Azure message when present, falling back to what the caller needed.
    """
    kind = classify_error(error)
    message = getattr(error, "message", None) or str(error)

    missing_privilege = None
    error_scope = scope
    if kind == ErrorKind.PERMISSION:
        action_match = _ACTION_PATTERN.search(str(error))
        scope_match = _SCOPE_PATTERN.search(str(error))
        missing_privilege = action_match.group(1) if action_match else privilege
        if scope_match:
            error_scope = scope_match.group(1)

    return ProvisioningError(
        message,
        kind=kind,
        resource=resource,
        resource_id=resource_id,
        missing_privilege=missing_privilege,
        scope=error_scope,
    )
