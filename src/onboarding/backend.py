"""Uniform capability surface over the identity and resource-management APIs.

The reconciler, role binder and provider waiter talk to the cloud only
through CloudBackend. azure_backend.AzureCloudBackend implements it against
Azure Resource Manager, Key Vault and Microsoft Graph; the test suite uses
an in-memory implementation (tests/azure_mock).

Implementations raise raw azure.core.exceptions.AzureError subclasses and
leave classification to the caller. A lookup that finds nothing returns
None rather than raising.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

# Scope id used for Entra directory role assignments
DIRECTORY_SCOPE = "/"


class ResourceKind(str, Enum):
    """Kinds of objects the reconciler can ensure."""

    RESOURCE_GROUP = "ResourceGroup"
    SECURITY_GROUP = "SecurityGroup"
    APP_REGISTRATION = "AppRegistration"
    SERVICE_PRINCIPAL = "ServicePrincipal"
    KEY_VAULT = "KeyVault"
    STORAGE_ACCOUNT = "StorageAccount"
    BLOB_CONTAINER = "BlobContainer"
    MANAGED_IDENTITY = "ManagedIdentity"


@dataclass(frozen=True)
class ObservedResource:
    """A resource as currently seen by the backend."""

    id: str
    name: str
    properties: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class MintedCredential:
    """A client secret returned once by the directory.

    The secret value is held in memory only and is excluded from repr.
    """

    key_id: str
    display_name: str
    expires_at: datetime
    secret_value: str = field(repr=False)


class CloudBackend(Protocol):
    """Operations the provisioning core needs from the cloud."""

    async def lookup(
        self, kind: ResourceKind, name: str, scope: str
    ) -> ObservedResource | None: ...

    async def create(
        self, kind: ResourceKind, name: str, scope: str, properties: dict[str, Any]
    ) -> ObservedResource:
        """Create a resource and return it as the create call reported it."""
        ...

    async def update_properties(
        self, kind: ResourceKind, resource_id: str, properties: dict[str, Any]
    ) -> None: ...

    async def list_members(self, group_id: str) -> list[str]: ...

    async def add_member(self, group_id: str, principal_id: str) -> None: ...

    async def list_role_assignments(self, scope_id: str, principal_id: str) -> list[str]:
        """Role names held by principal_id at exactly scope_id."""
        ...

    async def create_role_assignment(
        self, scope_id: str, role_name: str, principal_id: str, principal_type: str
    ) -> None: ...

    async def get_provider_state(self, namespace: str) -> str: ...

    async def register_provider(self, namespace: str) -> None: ...

    async def find_user(self, email: str) -> str | None: ...

    async def add_password(
        self, app_object_id: str, display_name: str, expires_at: datetime
    ) -> MintedCredential: ...

    async def set_secret(self, vault_uri: str, name: str, value: str) -> str:
        """Store a secret and return its versioned id."""
        ...
