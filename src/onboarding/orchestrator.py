"""Onboarding orchestrator.

Runs the fixed provisioning sequence for one customer environment:

 0. providers           register Microsoft.KeyVault/Storage/ManagedIdentity
 1. resource_group      ensure the resource group
 2. security_groups     admins/contributors/readers + memberships (degradable)
 3. group_rbac          Contributor for admins on the resource group
 4. app_registration    app, service principal, client secret
 5. app_permissions     Reader, Directory Readers, admins membership
 6. key_vault           vault (two-phase), Secrets Officer for admins + operator
 7. secret              client secret into the vault
 8. storage             account (two-phase), container, Blob Data Contributor
 9. managed_identities  runtime and deployment identities with their roles

ORDERING: the operator's Key Vault Secrets Officer grant is issued before the
secret write. The write still retries on 403, because a data-plane grant
takes a while to propagate.

Each step returns a StepContribution that is merged into an immutable
OnboardingRecord. The first unrecoverable failure aborts the run with an
OnboardingError naming the step. Nothing is rolled back; a re-run picks up
where the previous one stopped.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, TypeVar

from azure.core.exceptions import AzureError

from .backend import DIRECTORY_SCOPE, CloudBackend, ResourceKind
from .binder import BindingResult, PrincipalType, RoleBinder, RoleBinding
from .config import Config
from .errors import OnboardingError, ProvisioningError, to_provisioning_error
from .models import OnboardingSpec
from .naming import secret_name
from .providers import ProviderRegistrationWaiter
from .reconciler import ReconciliationResult, Reconciler, ResourceSpec
from .record import (
    CredentialMetadata,
    OnboardingRecord,
    SecretReference,
    Severity,
    StepContribution,
    StepOutcome,
    StepStatus,
)
from .retry import RetryPolicy, call_with_retry
from .security import ensure_secret_free, log_security_audit_event, redact

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Providers that must be Registered before their resource kinds are created
REQUIRED_PROVIDERS: tuple[str, ...] = (
    "Microsoft.KeyVault",
    "Microsoft.Storage",
    "Microsoft.ManagedIdentity",
)

SECURITY_GROUP_ROLES: tuple[str, ...] = ("admins", "contributors", "readers")
ADMIN_GROUP = "admins"

CREDENTIAL_VALIDITY_DAYS = 365

CONTRIBUTOR_ROLE = "Contributor"
READER_ROLE = "Reader"
DIRECTORY_READERS_ROLE = "Directory Readers"
KEY_VAULT_SECRETS_OFFICER_ROLE = "Key Vault Secrets Officer"
STORAGE_BLOB_DATA_CONTRIBUTOR_ROLE = "Storage Blob Data Contributor"


class RoleScope(str, Enum):
    """Symbolic scopes used in the managed identity role plan."""

    SUBSCRIPTION = "subscription"
    RESOURCE_GROUP = "resourceGroup"
    DIRECTORY = "directory"


# Managed identity suffix -> roles it holds
MANAGED_IDENTITY_ROLES: dict[str, tuple[tuple[str, RoleScope], ...]] = {
    "runtime": (
        (READER_ROLE, RoleScope.SUBSCRIPTION),
        (DIRECTORY_READERS_ROLE, RoleScope.DIRECTORY),
    ),
    "deployment": ((CONTRIBUTOR_ROLE, RoleScope.RESOURCE_GROUP),),
}


class Onboarder:
    """Provision one customer environment end to end."""

    def __init__(self, spec: OnboardingSpec, config: Config, backend: CloudBackend) -> None:
        self._spec = spec
        self._config = config
        self._backend = backend
        self._reconciler = Reconciler(backend)
        self._binder = RoleBinder(backend)
        self._waiter = ProviderRegistrationWaiter(
            backend,
            poll_interval_seconds=config.provider_poll_interval_seconds,
            max_retries=config.provider_max_retries,
        )

    @property
    def subscription_scope(self) -> str:
        return f"/subscriptions/{self._config.subscription_id}"

    async def run(self) -> OnboardingRecord:
        """Run every step in order.

        Returns:
            The finished OnboardingRecord.

        Raises:
            OnboardingError: At the first unrecoverable step failure.
        """
        spec = self._spec
        record = OnboardingRecord(
            organization=spec.organization_code,
            environment=spec.environment.value,
            location=spec.location,
            environment_index=spec.environment_index,
            subscription_id=self._config.subscription_id,
            tenant_id=self._config.tenant_id,
        )
        logger.info(
            "Onboarding started",
            extra={
                "organization": spec.organization_code,
                "environment": spec.environment.value,
                "location": spec.location,
                "environment_index": spec.environment_index,
            },
        )

        record = record.merge(await self._step("providers", self._register_providers))

        contribution, resource_group = await self._step(
            "resource_group", self._ensure_resource_group
        )
        record = record.merge(contribution)

        contribution, groups = await self._step("security_groups", self._ensure_security_groups)
        record = record.merge(contribution)
        admins = groups[ADMIN_GROUP]

        record = record.merge(
            await self._step(
                "group_rbac", lambda: self._bind_group_rbac(admins, resource_group)
            )
        )

        contribution, app, service_principal, client_secret = await self._step(
            "app_registration", lambda: self._ensure_app_registration(record.started_at)
        )
        record = record.merge(contribution)

        record = record.merge(
            await self._step(
                "app_permissions",
                lambda: self._bind_app_permissions(service_principal, admins),
            )
        )

        contribution, vault = await self._step(
            "key_vault", lambda: self._ensure_key_vault(admins, resource_group)
        )
        record = record.merge(contribution)

        record = record.merge(
            await self._step("secret", lambda: self._store_secret(vault, app, client_secret))
        )

        record = record.merge(
            await self._step("storage", lambda: self._ensure_storage(admins, resource_group))
        )

        record = record.merge(
            await self._step(
                "managed_identities", lambda: self._ensure_managed_identities(resource_group)
            )
        )

        record = record.finish()
        # The record must never carry the minted value
        ensure_secret_free(json.dumps(record.to_dict(), default=str), (client_secret,))

        logger.info(
            f"Onboarding {record.summary()}",
            extra={
                "resources": len(record.resources),
                "created": record.created_count,
                "bindings": len(record.bindings),
                "degraded_steps": [o.step for o in record.degraded_steps],
            },
        )
        return record

    async def _step(self, name: str, operation: Callable[[], Awaitable[T]]) -> T:
        logger.info(f"Step '{name}' started", extra={"step": name})
        try:
            result = await operation()
        except ProvisioningError as e:
            logger.error(
                f"Onboarding aborted at step '{name}': {e.describe()}",
                extra={
                    "step": name,
                    "resource": e.resource,
                    "error_kind": e.kind.value,
                    "missing_privilege": e.missing_privilege,
                    "scope": e.scope,
                    "partial_resource_id": e.resource_id,
                },
            )
            raise OnboardingError(name, e) from e
        logger.info(f"Step '{name}' completed", extra={"step": name})
        return result

    # -- building blocks ---------------------------------------------------

    async def _ensure(self, spec: ResourceSpec) -> ReconciliationResult:
        return await call_with_retry(
            lambda: self._reconciler.ensure(spec),
            self._config.resource_policy,
            description=f"ensure {spec.describe()}",
        )

    async def _bind(self, binding: RoleBinding) -> BindingResult:
        return await self._binder.bind(binding, self._config.rbac_policy)

    async def _call(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: RetryPolicy,
        *,
        description: str,
        resource: str,
        privilege: str | None = None,
        scope: str | None = None,
    ) -> T:
        """Retry a raw backend call, classifying SDK errors on each attempt."""

        async def attempt() -> T:
            try:
                return await operation()
            except AzureError as e:
                raise to_provisioning_error(
                    e, resource=resource, privilege=privilege, scope=scope
                ) from e

        return await call_with_retry(attempt, policy, description=description)

    def _tags(self) -> dict[str, str]:
        return self._spec.resource_tags()

    # -- steps -------------------------------------------------------------

    async def _register_providers(self) -> StepContribution:
        registered: list[str] = []
        for namespace in REQUIRED_PROVIDERS:
            if await self._waiter.ensure_registered(namespace):
                registered.append(namespace)
        detail = f"registered {', '.join(registered)}" if registered else None
        return StepContribution(outcomes=(StepOutcome("providers", Severity.FATAL, detail=detail),))

    async def _ensure_resource_group(self) -> tuple[StepContribution, ReconciliationResult]:
        resource_group = await self._ensure(
            ResourceSpec(
                kind=ResourceKind.RESOURCE_GROUP,
                desired_name=self._spec.effective_resource_group_name,
                scope=self.subscription_scope,
                desired_properties={"location": self._spec.location, "tags": self._tags()},
            )
        )
        return (
            StepContribution(
                resources=(resource_group,),
                outcomes=(StepOutcome("resource_group", Severity.FATAL),),
            ),
            resource_group,
        )

    async def _ensure_security_groups(
        self,
    ) -> tuple[StepContribution, dict[str, ReconciliationResult]]:
        groups: dict[str, ReconciliationResult] = {}
        for role in SECURITY_GROUP_ROLES:
            name = self._spec.name_for(ResourceKind.SECURITY_GROUP, role)
            groups[role] = await self._ensure(
                ResourceSpec(
                    kind=ResourceKind.SECURITY_GROUP,
                    desired_name=name,
                    scope=self._config.tenant_id,
                    desired_properties={
                        "description": f"{role.capitalize()} of {self._spec.organization_code} "
                        f"{self._spec.environment.value} environment",
                        "mailNickname": name,
                    },
                )
            )

        problems: list[str] = []
        members: list[tuple[str, PrincipalType]] = [
            (self._spec.operator_object_id, PrincipalType.USER)
        ]
        for email in self._spec.guest_emails:
            try:
                user_id = await self._call(
                    lambda email=email: self._backend.find_user(email),
                    self._config.resource_policy,
                    description=f"resolve guest {redact(email)}",
                    resource=f"user '{redact(email)}'",
                    privilege="User.Read.All",
                )
            except ProvisioningError as e:
                logger.warning(
                    "Guest lookup failed, continuing without membership",
                    extra={"guest": redact(email), "error": e.describe()},
                )
                problems.append(f"guest {redact(email)} lookup failed: {e.kind.value}")
                continue
            if user_id is None:
                logger.warning(
                    "Guest not found in directory, continuing without membership",
                    extra={"guest": redact(email)},
                )
                problems.append(f"guest {redact(email)} not found")
                continue
            members.append((user_id, PrincipalType.USER))

        bindings: list[BindingResult] = []
        for role, group in groups.items():
            for principal_id, principal_type in members:
                binding = RoleBinding.membership(group.id, principal_id, principal_type)
                try:
                    bindings.append(await self._bind(binding))
                except ProvisioningError as e:
                    logger.warning(
                        "Group membership failed, continuing",
                        extra={"group": role, "principal_id": principal_id, "error": e.describe()},
                    )
                    problems.append(f"{role} membership for {principal_id} failed: {e.kind.value}")

        if problems:
            outcome = StepOutcome(
                "security_groups",
                Severity.DEGRADED,
                status=StepStatus.DEGRADED,
                detail="; ".join(problems),
            )
        else:
            outcome = StepOutcome("security_groups", Severity.DEGRADED)

        return (
            StepContribution(
                resources=tuple(groups.values()),
                bindings=tuple(bindings),
                outcomes=(outcome,),
            ),
            groups,
        )

    async def _bind_group_rbac(
        self, admins: ReconciliationResult, resource_group: ReconciliationResult
    ) -> StepContribution:
        result = await self._bind(
            RoleBinding(
                principal_id=admins.id,
                role_name=CONTRIBUTOR_ROLE,
                scope_id=resource_group.id,
                principal_type=PrincipalType.GROUP,
            )
        )
        return StepContribution(
            bindings=(result,), outcomes=(StepOutcome("group_rbac", Severity.FATAL),)
        )

    async def _ensure_app_registration(
        self, started_at: datetime
    ) -> tuple[StepContribution, ReconciliationResult, ReconciliationResult, str]:
        app_name = self._spec.name_for(ResourceKind.APP_REGISTRATION)
        app = await self._ensure(
            ResourceSpec(
                kind=ResourceKind.APP_REGISTRATION,
                desired_name=app_name,
                scope=self._config.tenant_id,
                desired_properties={"signInAudience": "AzureADMyOrg"},
            )
        )
        app_id = app.attribute("appId")

        service_principal = await self._ensure(
            ResourceSpec(
                kind=ResourceKind.SERVICE_PRINCIPAL,
                desired_name=app_name,
                scope=self._config.tenant_id,
                desired_properties={"appId": app_id},
            )
        )

        expires_at = started_at + timedelta(days=CREDENTIAL_VALIDITY_DAYS)
        display_name = f"onboarding-{started_at:%Y%m%d}"
        credential = await self._call(
            lambda: self._backend.add_password(app.id, display_name, expires_at),
            self._config.resource_policy,
            description=f"mint client secret for '{app_name}'",
            resource=f"{ResourceKind.APP_REGISTRATION.value} '{app_name}'",
            privilege="Application.ReadWrite.All",
        )
        log_security_audit_event(
            "credential_minted",
            target_resource=app_id,
            action=f"add password '{display_name}'",
            result="success",
        )

        previous_key_ids = tuple(
            k for k in app.attributes.get("passwordKeyIds", ()) if k != credential.key_id
        )
        if previous_key_ids:
            logger.warning(
                f"App '{app_name}' holds {len(previous_key_ids)} earlier client secret(s); "
                "revoke those no longer in use",
                extra={"app_id": app_id, "previous_key_ids": list(previous_key_ids)},
            )

        metadata = CredentialMetadata(
            app_id=app_id,
            key_id=credential.key_id,
            display_name=credential.display_name,
            expires_at=credential.expires_at,
            previous_key_ids=previous_key_ids,
        )
        return (
            StepContribution(
                resources=(app, service_principal),
                credentials=(metadata,),
                outcomes=(StepOutcome("app_registration", Severity.FATAL),),
            ),
            app,
            service_principal,
            credential.secret_value,
        )

    async def _bind_app_permissions(
        self, service_principal: ReconciliationResult, admins: ReconciliationResult
    ) -> StepContribution:
        bindings = [
            await self._bind(
                RoleBinding(
                    principal_id=service_principal.id,
                    role_name=READER_ROLE,
                    scope_id=self.subscription_scope,
                )
            ),
            await self._bind(
                RoleBinding.directory_role(service_principal.id, DIRECTORY_READERS_ROLE)
            ),
            await self._bind(
                RoleBinding.membership(
                    admins.id, service_principal.id, PrincipalType.SERVICE_PRINCIPAL
                )
            ),
        ]
        return StepContribution(
            bindings=tuple(bindings),
            outcomes=(StepOutcome("app_permissions", Severity.FATAL),),
        )

    async def _ensure_key_vault(
        self, admins: ReconciliationResult, resource_group: ReconciliationResult
    ) -> tuple[StepContribution, ReconciliationResult]:
        vault = await self._ensure(
            ResourceSpec(
                kind=ResourceKind.KEY_VAULT,
                desired_name=self._spec.name_for(ResourceKind.KEY_VAULT),
                scope=resource_group.id,
                desired_properties={
                    "location": self._spec.location,
                    "tenantId": self._config.tenant_id,
                    "sku": "standard",
                    "enableSoftDelete": True,
                    "tags": self._tags(),
                },
                follow_up_properties={"enableRbacAuthorization": True},
            )
        )

        # Admins first, then the operator who performs the secret write
        bindings = [
            await self._bind(
                RoleBinding(
                    principal_id=admins.id,
                    role_name=KEY_VAULT_SECRETS_OFFICER_ROLE,
                    scope_id=vault.id,
                    principal_type=PrincipalType.GROUP,
                )
            ),
            await self._bind(
                RoleBinding(
                    principal_id=self._spec.operator_object_id,
                    role_name=KEY_VAULT_SECRETS_OFFICER_ROLE,
                    scope_id=vault.id,
                    principal_type=PrincipalType.USER,
                )
            ),
        ]
        return (
            StepContribution(
                resources=(vault,),
                bindings=tuple(bindings),
                outcomes=(StepOutcome("key_vault", Severity.FATAL),),
            ),
            vault,
        )

    async def _store_secret(
        self, vault: ReconciliationResult, app: ReconciliationResult, client_secret: str
    ) -> StepContribution:
        vault_uri = vault.attribute("vaultUri")
        name = secret_name(app.spec.desired_name)
        secret_id = await self._call(
            lambda: self._backend.set_secret(vault_uri, name, client_secret),
            self._config.secret_write_policy,
            description=f"write secret '{name}'",
            resource=f"secret '{name}'",
            privilege="Microsoft.KeyVault/vaults/secrets/setSecret/action",
            scope=vault.id,
        )
        log_security_audit_event(
            "secret_write",
            target_resource=vault.id,
            action=f"set secret '{name}'",
            result="success",
        )
        reference = SecretReference(
            vault_name=vault.spec.desired_name,
            vault_uri=vault_uri,
            secret_name=name,
            secret_id=secret_id,
        )
        return StepContribution(
            secrets=(reference,), outcomes=(StepOutcome("secret", Severity.FATAL),)
        )

    async def _ensure_storage(
        self, admins: ReconciliationResult, resource_group: ReconciliationResult
    ) -> StepContribution:
        account = await self._ensure(
            ResourceSpec(
                kind=ResourceKind.STORAGE_ACCOUNT,
                desired_name=self._spec.name_for(ResourceKind.STORAGE_ACCOUNT),
                scope=resource_group.id,
                desired_properties={
                    "location": self._spec.location,
                    "sku": "Standard_LRS",
                    "kind": "StorageV2",
                    "minimumTlsVersion": "TLS1_2",
                    "allowBlobPublicAccess": False,
                    "tags": self._tags(),
                },
                follow_up_properties={"allowSharedKeyAccess": False},
            )
        )
        container = await self._ensure(
            ResourceSpec(
                kind=ResourceKind.BLOB_CONTAINER,
                desired_name=self._spec.name_for(ResourceKind.BLOB_CONTAINER),
                scope=account.id,
                desired_properties={"publicAccess": "None"},
            )
        )
        binding = await self._bind(
            RoleBinding(
                principal_id=admins.id,
                role_name=STORAGE_BLOB_DATA_CONTRIBUTOR_ROLE,
                scope_id=account.id,
                principal_type=PrincipalType.GROUP,
            )
        )
        return StepContribution(
            resources=(account, container),
            bindings=(binding,),
            outcomes=(StepOutcome("storage", Severity.FATAL),),
        )

    async def _ensure_managed_identities(
        self, resource_group: ReconciliationResult
    ) -> StepContribution:
        scopes = {
            RoleScope.SUBSCRIPTION: self.subscription_scope,
            RoleScope.RESOURCE_GROUP: resource_group.id,
            RoleScope.DIRECTORY: DIRECTORY_SCOPE,
        }
        resources: list[ReconciliationResult] = []
        bindings: list[BindingResult] = []

        for suffix, roles in MANAGED_IDENTITY_ROLES.items():
            identity = await self._ensure(
                ResourceSpec(
                    kind=ResourceKind.MANAGED_IDENTITY,
                    desired_name=self._spec.name_for(ResourceKind.MANAGED_IDENTITY, suffix),
                    scope=resource_group.id,
                    desired_properties={"location": self._spec.location, "tags": self._tags()},
                )
            )
            resources.append(identity)
            principal_id = identity.attribute("principalId")

            for role_name, scope in roles:
                if scope == RoleScope.DIRECTORY:
                    binding = RoleBinding.directory_role(principal_id, role_name)
                else:
                    binding = RoleBinding(
                        principal_id=principal_id,
                        role_name=role_name,
                        scope_id=scopes[scope],
                    )
                bindings.append(await self._bind(binding))

        return StepContribution(
            resources=tuple(resources),
            bindings=tuple(bindings),
            outcomes=(StepOutcome("managed_identities", Severity.FATAL),),
        )


def planned_names(spec: OnboardingSpec) -> dict[str, Any]:
    """Names a run for spec would use, without touching the cloud."""
    app_name = spec.name_for(ResourceKind.APP_REGISTRATION)
    return {
        "resourceGroup": spec.effective_resource_group_name,
        "securityGroups": {
            role: spec.name_for(ResourceKind.SECURITY_GROUP, role) for role in SECURITY_GROUP_ROLES
        },
        "appRegistration": app_name,
        "keyVault": spec.name_for(ResourceKind.KEY_VAULT),
        "secret": secret_name(app_name),
        "storageAccount": spec.name_for(ResourceKind.STORAGE_ACCOUNT),
        "blobContainer": spec.name_for(ResourceKind.BLOB_CONTAINER),
        "managedIdentities": {
            suffix: spec.name_for(ResourceKind.MANAGED_IDENTITY, suffix)
            for suffix in MANAGED_IDENTITY_ROLES
        },
    }
