"""Replication-aware role binding.

Binding a role to a principal that was created seconds ago is the dominant
real-world failure in onboarding: directory writes and RBAC-plane reads are
eventually consistent, so the create call reports the principal as missing
until replication catches up.

State machine per attempt:

    Checking --exists--> Done
    Checking --absent--> Creating --ok--> Done
    Creating --transient--> (sleep) Checking

The check always runs before the create, because a previous attempt may
have landed despite reporting an error, and duplicate-create behaviour is
inconsistent across binding types. Permission errors short-circuit: they
never heal by waiting.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum

from azure.core.exceptions import AzureError

from .backend import DIRECTORY_SCOPE, CloudBackend
from .errors import ErrorKind, ProvisioningError, to_provisioning_error
from .retry import RetryPolicy
from .security import log_security_audit_event

logger = logging.getLogger(__name__)

# Role name used for group membership edges
MEMBER_ROLE = "Member"


class ScopeKind(str, Enum):
    """API plane a binding lives on."""

    RESOURCE = "resource"  # ARM role assignment
    DIRECTORY = "directory"  # Entra directory role assignment
    GROUP = "group"  # Security group membership


class PrincipalType(str, Enum):
    """Principal types accepted by ARM role assignment creation."""

    USER = "User"
    GROUP = "Group"
    SERVICE_PRINCIPAL = "ServicePrincipal"


# (check privilege, create privilege) per plane
_PRIVILEGES: dict[ScopeKind, tuple[str, str]] = {
    ScopeKind.RESOURCE: (
        "Microsoft.Authorization/roleAssignments/read",
        "Microsoft.Authorization/roleAssignments/write",
    ),
    ScopeKind.DIRECTORY: (
        "RoleManagement.Read.Directory",
        "RoleManagement.ReadWrite.Directory",
    ),
    ScopeKind.GROUP: ("GroupMember.Read.All", "GroupMember.ReadWrite.All"),
}


@dataclass(frozen=True)
class RoleBinding:
    """An authorization edge: principal holds role at scope.

    Identity is (principal_id, role_name, scope_id); scope_kind and
    principal_type only steer which API is called.
    """

    principal_id: str
    role_name: str
    scope_id: str
    scope_kind: ScopeKind = ScopeKind.RESOURCE
    principal_type: PrincipalType = field(default=PrincipalType.SERVICE_PRINCIPAL, compare=False)

    @classmethod
    def membership(
        cls,
        group_id: str,
        principal_id: str,
        principal_type: PrincipalType = PrincipalType.USER,
    ) -> RoleBinding:
        return cls(
            principal_id=principal_id,
            role_name=MEMBER_ROLE,
            scope_id=group_id,
            scope_kind=ScopeKind.GROUP,
            principal_type=principal_type,
        )

    @classmethod
    def directory_role(cls, principal_id: str, role_name: str) -> RoleBinding:
        return cls(
            principal_id=principal_id,
            role_name=role_name,
            scope_id=DIRECTORY_SCOPE,
            scope_kind=ScopeKind.DIRECTORY,
        )

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.principal_id, self.role_name, self.scope_id)

    def describe(self) -> str:
        return f"{self.role_name} for {self.principal_id} at {self.scope_id}"


@dataclass(frozen=True)
class BindingResult:
    """Outcome of bind(): created is False when the binding already existed."""

    binding: RoleBinding
    created: bool
    attempts: int


class RoleBinder:
    """Check-before-create role binding with replication-aware retry."""

    def __init__(self, backend: CloudBackend) -> None:
        self._backend = backend

    async def bind(self, binding: RoleBinding, policy: RetryPolicy) -> BindingResult:
        """Ensure binding exists.

        Args:
            binding: The edge to ensure.
            policy: Attempt budget, backoff and transient predicate.

        Returns:
            BindingResult describing whether a create was needed.

        Raises:
            ProvisioningError: PERMISSION immediately on an authorization
                failure; FATAL immediately on unclassified errors;
                TRANSIENT with exhausted=True after max_attempts.
        """
        last_error: ProvisioningError | None = None

        for attempt in range(1, policy.max_attempts + 1):
            try:
                if await self._exists(binding):
                    logger.info(
                        f"Binding already present: {binding.describe()}",
                        extra={"scope_kind": binding.scope_kind.value, "attempt": attempt},
                    )
                    return BindingResult(binding=binding, created=False, attempts=attempt)

                await self._create(binding)
                log_security_audit_event(
                    "role_binding",
                    target_resource=binding.scope_id,
                    action=f"grant {binding.role_name} to {binding.principal_id}",
                    result="success",
                )
                return BindingResult(binding=binding, created=True, attempts=attempt)

            except ProvisioningError as e:
                if e.kind == ErrorKind.PERMISSION:
                    log_security_audit_event(
                        "role_binding",
                        target_resource=binding.scope_id,
                        action=f"grant {binding.role_name} to {binding.principal_id}",
                        result="denied",
                    )
                    raise
                if not policy.retryable(e):
                    raise
                last_error = e

            if attempt < policy.max_attempts:
                logger.warning(
                    f"Binding not yet possible, waiting for replication: {binding.describe()}",
                    extra={
                        "attempt": attempt,
                        "max_attempts": policy.max_attempts,
                        "wait_seconds": policy.backoff_seconds,
                        "error": last_error.message if last_error else None,
                    },
                )
                await asyncio.sleep(policy.backoff_seconds)

        raise ProvisioningError(
            f"binding did not succeed: {last_error.message if last_error else 'unknown'}",
            kind=ErrorKind.TRANSIENT,
            resource=binding.describe(),
            exhausted=True,
            attempts=policy.max_attempts,
            scope=binding.scope_id,
        ) from last_error

    async def _exists(self, binding: RoleBinding) -> bool:
        try:
            if binding.scope_kind == ScopeKind.GROUP:
                members = await self._backend.list_members(binding.scope_id)
                return binding.principal_id in members
            roles = await self._backend.list_role_assignments(
                binding.scope_id, binding.principal_id
            )
            return any(r.lower() == binding.role_name.lower() for r in roles)
        except AzureError as e:
            raise self._wrap(e, binding, _PRIVILEGES[binding.scope_kind][0]) from e

    async def _create(self, binding: RoleBinding) -> None:
        try:
            if binding.scope_kind == ScopeKind.GROUP:
                await self._backend.add_member(binding.scope_id, binding.principal_id)
            else:
                await self._backend.create_role_assignment(
                    binding.scope_id,
                    binding.role_name,
                    binding.principal_id,
                    binding.principal_type.value,
                )
        except AzureError as e:
            raise self._wrap(e, binding, _PRIVILEGES[binding.scope_kind][1]) from e

    @staticmethod
    def _wrap(error: AzureError, binding: RoleBinding, privilege: str) -> ProvisioningError:
        return to_provisioning_error(
            error,
            resource=binding.describe(),
            privilege=privilege,
            scope=binding.scope_id,
        )
