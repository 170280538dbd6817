"""Idempotent resource reconciliation.

ensure() makes one attempt to bring a described resource into existence:

1. Look up the resource by (kind, name, scope)
2. If it exists, return it untouched
3. Otherwise create it, apply any follow-up configuration to the id the
   create returned, and re-fetch to confirm

Existing resources are authoritative. Properties that differ from the
desired ones are reported as observed and never overwritten, so re-running
onboarding cannot clobber a customer's manual edits.

Objects created by this reconciler are remembered for the rest of the run.
Directory and ARM reads lag behind writes, so a later ensure() for the same
key resumes the remembered object (pending follow-up, then confirmation)
instead of issuing a second create.

The reconciler never retries and never truncates names; both are the
caller's job (retry.py, naming.py).
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from azure.core.exceptions import AzureError

from .backend import CloudBackend, ObservedResource, ResourceKind
from .errors import ErrorKind, ProvisioningError, to_provisioning_error

logger = logging.getLogger(__name__)

# Privileges needed per kind, reported when the backend denies a call
_WRITE_PRIVILEGES: dict[ResourceKind, str] = {
    ResourceKind.RESOURCE_GROUP: "Microsoft.Resources/subscriptions/resourceGroups/write",
    ResourceKind.SECURITY_GROUP: "Group.ReadWrite.All",
    ResourceKind.APP_REGISTRATION: "Application.ReadWrite.All",
    ResourceKind.SERVICE_PRINCIPAL: "Application.ReadWrite.All",
    ResourceKind.KEY_VAULT: "Microsoft.KeyVault/vaults/write",
    ResourceKind.STORAGE_ACCOUNT: "Microsoft.Storage/storageAccounts/write",
    ResourceKind.BLOB_CONTAINER: "Microsoft.Storage/storageAccounts/blobServices/containers/write",
    ResourceKind.MANAGED_IDENTITY: "Microsoft.ManagedIdentity/userAssignedIdentities/write",
}


@dataclass(frozen=True)
class ResourceSpec:
    """Desired state for one resource.

    Identity is (kind, desired_name, scope). follow_up_properties is the
    second phase of a two-phase creation, applied with a separate update
    call once the base object exists.
    """

    kind: ResourceKind
    desired_name: str
    scope: str
    desired_properties: Mapping[str, Any] = field(default_factory=dict)
    follow_up_properties: Mapping[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> tuple[ResourceKind, str, str]:
        return (self.kind, self.desired_name, self.scope)

    def describe(self) -> str:
        return f"{self.kind.value} '{self.desired_name}'"


@dataclass(frozen=True)
class ReconciliationResult:
    """Outcome of ensure().

    properties: what was observed (existing) or applied (created).
    attributes: server-assigned values from the lookup, or from the create
    response and re-fetch (principalId, appId, vaultUri, ...).
    """

    spec: ResourceSpec
    existed: bool
    id: str
    properties: Mapping[str, Any] = field(default_factory=dict)
    attributes: Mapping[str, Any] = field(default_factory=dict)

    def attribute(self, name: str) -> Any:
        """Get a server-assigned attribute, raising if the backend omitted it."""
        if name not in self.attributes:
            raise ProvisioningError(
                f"{self.spec.describe()} has no '{name}' attribute",
                kind=ErrorKind.FATAL,
                resource=self.spec.describe(),
                resource_id=self.id,
            )
        return self.attributes[name]


class Reconciler:
    """Single-attempt "ensure exists" over any ResourceKind."""

    def __init__(self, backend: CloudBackend) -> None:
        self._backend = backend
        # Created in this run but not yet confirmed, and those owing a follow-up
        self._created: dict[tuple[ResourceKind, str, str], ObservedResource] = {}
        self._follow_up_pending: set[tuple[ResourceKind, str, str]] = set()

    async def ensure(self, spec: ResourceSpec) -> ReconciliationResult:
        """Ensure the resource described by spec exists.

        Args:
            spec: Desired resource.

        Returns:
            ReconciliationResult with existed=True if the resource was found.
            An object created by an earlier ensure() in this run is resumed
            and never created twice.

        Raises:
            ProvisioningError: Classified failure. For a two-phase create
                whose follow-up failed, resource_id carries the partially
                created object.
        """
        created = self._created.get(spec.key)
        if created is not None:
            logger.info(
                f"Resuming {spec.describe()} created earlier in this run",
                extra={"kind": spec.kind.value, "resource_id": created.id},
            )
            return await self._complete(spec, created)

        observed = await self._lookup(spec)
        if observed is not None:
            logger.info(
                f"{spec.describe()} already exists, leaving as-is",
                extra={"kind": spec.kind.value, "resource_id": observed.id},
            )
            return ReconciliationResult(
                spec=spec,
                existed=True,
                id=observed.id,
                properties=dict(observed.properties),
                attributes=dict(observed.properties),
            )

        logger.info(
            f"Creating {spec.describe()}",
            extra={"kind": spec.kind.value, "scope": spec.scope},
        )
        try:
            created = await self._backend.create(
                spec.kind, spec.desired_name, spec.scope, dict(spec.desired_properties)
            )
        except AzureError as e:
            raise self._wrap(e, spec) from e

        self._created[spec.key] = created
        if spec.follow_up_properties:
            self._follow_up_pending.add(spec.key)
        return await self._complete(spec, created)

    async def _complete(
        self, spec: ResourceSpec, created: ObservedResource
    ) -> ReconciliationResult:
        """Apply any pending follow-up to a created object and confirm it."""
        if spec.key in self._follow_up_pending:
            try:
                await self._backend.update_properties(
                    spec.kind, created.id, dict(spec.follow_up_properties)
                )
            except AzureError as e:
                error = self._wrap(e, spec, resource_id=created.id)
                logger.error(
                    f"{spec.describe()} created but follow-up configuration failed; "
                    "manual remediation required",
                    extra={
                        "resource_id": created.id,
                        "follow_up": sorted(spec.follow_up_properties),
                        "error_kind": error.kind.value,
                    },
                )
                raise error from e
            self._follow_up_pending.discard(spec.key)

        confirmed = await self._lookup(spec)
        if confirmed is None:
            raise ProvisioningError(
                f"created as {created.id} but not yet visible on re-fetch",
                kind=ErrorKind.TRANSIENT,
                resource=spec.describe(),
            )

        del self._created[spec.key]
        logger.info(
            f"Created {spec.describe()}",
            extra={"kind": spec.kind.value, "resource_id": created.id},
        )
        return ReconciliationResult(
            spec=spec,
            existed=False,
            id=created.id,
            properties={**spec.desired_properties, **spec.follow_up_properties},
            attributes={**created.properties, **confirmed.properties},
        )

    async def _lookup(self, spec: ResourceSpec) -> ObservedResource | None:
        try:
            return await self._backend.lookup(spec.kind, spec.desired_name, spec.scope)
        except AzureError as e:
            raise to_provisioning_error(
                e,
                resource=spec.describe(),
                privilege=f"read {spec.kind.value}",
                scope=spec.scope,
            ) from e

    @staticmethod
    def _wrap(
        error: AzureError, spec: ResourceSpec, resource_id: str | None = None
    ) -> ProvisioningError:
        return to_provisioning_error(
            error,
            resource=spec.describe(),
            privilege=_WRITE_PRIVILEGES.get(spec.kind),
            scope=spec.scope,
            resource_id=resource_id,
        )
