"""CloudBackend implementation over the Azure SDKs and Microsoft Graph.

ARM-plane kinds (resource group, key vault, storage, managed identity) go
through the azure-mgmt-* clients; directory kinds go through graph.py.

Scopes passed by the orchestrator:

    ResourceGroup                      /subscriptions/{sub}
    KeyVault, StorageAccount,
    ManagedIdentity                    resource group ARM id
    BlobContainer                      storage account ARM id
    SecurityGroup, AppRegistration,
    ServicePrincipal                   tenant id (informational)

SECURITY: All SDK calls are blocking and run in the default executor.
Long-running operations are bounded by a timeout so a stuck poller cannot
hang the run.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any

from azure.core.credentials import TokenCredential
from azure.core.exceptions import (
    HttpResponseError,
    ResourceNotFoundError,
    ServiceResponseTimeoutError,
)
from azure.keyvault.secrets import SecretClient
from azure.mgmt.authorization import AuthorizationManagementClient
from azure.mgmt.authorization.models import RoleAssignmentCreateParameters
from azure.mgmt.core.tools import parse_resource_id
from azure.mgmt.keyvault import KeyVaultManagementClient
from azure.mgmt.keyvault.models import (
    Sku as VaultSku,
    VaultCreateOrUpdateParameters,
    VaultPatchParameters,
    VaultPatchProperties,
    VaultProperties,
)
from azure.mgmt.msi import ManagedServiceIdentityClient
from azure.mgmt.msi.models import Identity
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.storage import StorageManagementClient
from azure.mgmt.storage.models import (
    BlobContainer,
    Sku as StorageSku,
    StorageAccountCreateParameters,
    StorageAccountUpdateParameters,
)

from .backend import DIRECTORY_SCOPE, MintedCredential, ObservedResource, ResourceKind
from .errors import CloudApiError
from .graph import GraphClient

logger = logging.getLogger(__name__)

# Long-running operation timeout (key vault / storage account creation)
LRO_TIMEOUT_SECONDS = 600

# Well-known Azure built-in role GUIDs (identical in every tenant)
BUILTIN_ROLES: dict[str, str] = {
    "Owner": "8e3af657-a8ff-443c-a75c-2fe8c4bcb635",
    "Contributor": "b24988ac-6180-42a0-ab88-20f7382dd24c",
    "Reader": "acdd72a7-3385-48ef-bd42-f606fba81ae7",
    "User Access Administrator": "18d7d88d-d35e-4fb5-a5c3-7773c20a72d9",
    "Key Vault Administrator": "00482a5a-887f-4fb3-b363-3b7fe8e74483",
    "Key Vault Secrets Officer": "b86a8fe4-44ce-4948-aee5-eccb2c155cd7",
    "Key Vault Secrets User": "4633458b-17de-408a-b874-0445c86b69e6",
    "Storage Blob Data Contributor": "ba92f5b4-2d11-453d-a403-e96b0029c9fe",
    "Storage Blob Data Reader": "2a2b9908-6ea1-4ae2-8e65-a410df84e7d1",
}

# Entra built-in directory role template ids
DIRECTORY_ROLES: dict[str, str] = {
    "Directory Readers": "88d8e3e3-8f55-4a1e-953a-9b9898b8876b",
    "Directory Writers": "9360feb5-f418-4baa-8175-e2a00bac4301",
    "Global Reader": "f2ef992c-3afb-46b9-b7cf-a126ee74c451",
    "Application Administrator": "9b895d92-2cd3-44c7-9d02-a6ac2d5ea5c3",
}

_GRAPH_KINDS = frozenset(
    {ResourceKind.SECURITY_GROUP, ResourceKind.APP_REGISTRATION, ResourceKind.SERVICE_PRINCIPAL}
)


def role_definition_guid(role_name: str) -> str:
    """Map a built-in role name to its GUID.

    Raises:
        ValueError: If the role is not a known built-in role.
    """
    try:
        return BUILTIN_ROLES[role_name]
    except KeyError:
        raise ValueError(
            f"Role '{role_name}' is not a recognized built-in role. "
            f"Known roles: {sorted(BUILTIN_ROLES)}"
        ) from None


def role_name_for(definition_id: str, known: dict[str, str]) -> str:
    """Reverse-map a role definition id (full path or GUID) to its name."""
    guid = definition_id.rstrip("/").rsplit("/", 1)[-1].lower()
    for name, role_guid in known.items():
        if role_guid == guid:
            return name
    return guid


class AzureCloudBackend:
    """CloudBackend over ARM, Key Vault and Graph for one subscription."""

    def __init__(
        self,
        credential: TokenCredential,
        subscription_id: str,
        tenant_id: str,
        graph: GraphClient | None = None,
    ) -> None:
        self._credential = credential
        self._subscription_id = subscription_id
        self._tenant_id = tenant_id
        self._resources = ResourceManagementClient(credential, subscription_id)
        self._authorization = AuthorizationManagementClient(credential, subscription_id)
        self._keyvault = KeyVaultManagementClient(credential, subscription_id)
        self._storage = StorageManagementClient(credential, subscription_id)
        self._msi = ManagedServiceIdentityClient(credential, subscription_id)
        self._graph = graph or GraphClient(credential)
        self._secret_clients: dict[str, SecretClient] = {}

    # -- executor helpers --------------------------------------------------

    async def _run(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))

    async def _execute_with_timeout(
        self,
        begin_operation: Callable[[], Any],
        operation_name: str,
        timeout_seconds: int = LRO_TIMEOUT_SECONDS,
    ) -> Any:
        """Start an SDK long-running operation and wait for it with a timeout.

        Raises:
            ServiceResponseTimeoutError: If the operation exceeds the timeout.
            HttpResponseError: If Azure returns an error.
        """
        loop = asyncio.get_event_loop()
        poller = await loop.run_in_executor(None, begin_operation)
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, poller.result),
                timeout=timeout_seconds,
            )
        except TimeoutError as e:
            logger.error(
                f"{operation_name} timed out",
                extra={"timeout_seconds": timeout_seconds},
            )
            raise ServiceResponseTimeoutError(
                f"{operation_name} did not complete within {timeout_seconds}s"
            ) from e

    async def _get_or_none(self, func: Callable[..., Any], *args: Any) -> Any:
        try:
            return await self._run(func, *args)
        except ResourceNotFoundError:
            return None

    # -- resources ---------------------------------------------------------

    async def lookup(self, kind: ResourceKind, name: str, scope: str) -> ObservedResource | None:
        if kind in _GRAPH_KINDS:
            return await self._lookup_directory_object(kind, name)

        if kind == ResourceKind.RESOURCE_GROUP:
            group = await self._get_or_none(self._resources.resource_groups.get, name)
            return _observed_resource_group(group) if group is not None else None

        if kind == ResourceKind.BLOB_CONTAINER:
            account = parse_resource_id(scope)
            container = await self._get_or_none(
                self._storage.blob_containers.get,
                account["resource_group"],
                account["name"],
                name,
            )
            return _observed_container(container) if container is not None else None

        resource_group = parse_resource_id(scope)["resource_group"]

        if kind == ResourceKind.KEY_VAULT:
            vault = await self._get_or_none(self._keyvault.vaults.get, resource_group, name)
            return _observed_vault(vault) if vault is not None else None

        if kind == ResourceKind.STORAGE_ACCOUNT:
            account = await self._get_or_none(
                self._storage.storage_accounts.get_properties, resource_group, name
            )
            return _observed_storage_account(account) if account is not None else None

        if kind == ResourceKind.MANAGED_IDENTITY:
            identity = await self._get_or_none(
                self._msi.user_assigned_identities.get, resource_group, name
            )
            return _observed_identity(identity) if identity is not None else None

        raise ValueError(f"Unsupported resource kind: {kind}")

    async def _lookup_directory_object(
        self, kind: ResourceKind, name: str
    ) -> ObservedResource | None:
        if kind == ResourceKind.SECURITY_GROUP:
            group = await self._run(self._graph.find_group, name)
            return _observed_group(group) if group is not None else None

        if kind == ResourceKind.APP_REGISTRATION:
            app = await self._run(self._graph.find_application, name)
            return _observed_application(app) if app is not None else None

        sp = await self._run(self._graph.find_service_principal, name)
        return _observed_service_principal(sp) if sp is not None else None

    async def create(
        self, kind: ResourceKind, name: str, scope: str, properties: dict[str, Any]
    ) -> ObservedResource:
        if kind == ResourceKind.RESOURCE_GROUP:
            group = await self._run(
                self._resources.resource_groups.create_or_update,
                name,
                {"location": properties["location"], "tags": properties.get("tags", {})},
            )
            return _observed_resource_group(group)

        if kind == ResourceKind.SECURITY_GROUP:
            group = await self._run(
                self._graph.create_group,
                name,
                properties.get("description", name),
                properties.get("mailNickname", name),
            )
            return _observed_group(group)

        if kind == ResourceKind.APP_REGISTRATION:
            app = await self._run(self._graph.create_application, name, properties)
            return _observed_application(app)

        if kind == ResourceKind.SERVICE_PRINCIPAL:
            sp = await self._run(self._graph.create_service_principal, properties["appId"])
            return _observed_service_principal(sp)

        if kind == ResourceKind.KEY_VAULT:
            parameters = VaultCreateOrUpdateParameters(
                location=properties["location"],
                tags=properties.get("tags"),
                properties=VaultProperties(
                    tenant_id=properties.get("tenantId", self._tenant_id),
                    sku=VaultSku(family="A", name=properties.get("sku", "standard")),
                    access_policies=[],
                    enable_soft_delete=properties.get("enableSoftDelete", True),
                ),
            )
            vault = await self._execute_with_timeout(
                lambda: self._keyvault.vaults.begin_create_or_update(
                    _resource_group_of(scope), name, parameters
                ),
                operation_name=f"Create key vault '{name}'",
            )
            return _observed_vault(vault)

        if kind == ResourceKind.STORAGE_ACCOUNT:
            parameters = StorageAccountCreateParameters(
                sku=StorageSku(name=properties.get("sku", "Standard_LRS")),
                kind=properties.get("kind", "StorageV2"),
                location=properties["location"],
                tags=properties.get("tags"),
                minimum_tls_version=properties.get("minimumTlsVersion"),
                allow_blob_public_access=properties.get("allowBlobPublicAccess"),
            )
            account = await self._execute_with_timeout(
                lambda: self._storage.storage_accounts.begin_create(
                    _resource_group_of(scope), name, parameters
                ),
                operation_name=f"Create storage account '{name}'",
            )
            return _observed_storage_account(account)

        if kind == ResourceKind.BLOB_CONTAINER:
            account = parse_resource_id(scope)
            container = await self._run(
                self._storage.blob_containers.create,
                account["resource_group"],
                account["name"],
                name,
                BlobContainer(public_access=properties.get("publicAccess", "None")),
            )
            return _observed_container(container)

        if kind == ResourceKind.MANAGED_IDENTITY:
            identity = await self._run(
                self._msi.user_assigned_identities.create_or_update,
                _resource_group_of(scope),
                name,
                Identity(location=properties["location"], tags=properties.get("tags")),
            )
            return _observed_identity(identity)

        raise ValueError(f"Unsupported resource kind: {kind}")

    async def update_properties(
        self, kind: ResourceKind, resource_id: str, properties: dict[str, Any]
    ) -> None:
        if kind == ResourceKind.APP_REGISTRATION:
            await self._run(self._graph.update_application, resource_id, properties)
            return

        parsed = parse_resource_id(resource_id)
        if kind == ResourceKind.KEY_VAULT:
            await self._run(
                self._keyvault.vaults.update,
                parsed["resource_group"],
                parsed["name"],
                VaultPatchParameters(
                    properties=VaultPatchProperties(
                        enable_rbac_authorization=properties.get("enableRbacAuthorization")
                    )
                ),
            )
        elif kind == ResourceKind.STORAGE_ACCOUNT:
            await self._run(
                self._storage.storage_accounts.update,
                parsed["resource_group"],
                parsed["name"],
                StorageAccountUpdateParameters(
                    allow_shared_key_access=properties.get("allowSharedKeyAccess")
                ),
            )
        else:
            raise ValueError(f"Follow-up configuration is not supported for {kind}")

    # -- group membership --------------------------------------------------

    async def list_members(self, group_id: str) -> list[str]:
        return await self._run(self._graph.list_group_members, group_id)

    async def add_member(self, group_id: str, principal_id: str) -> None:
        await self._run(self._graph.add_group_member, group_id, principal_id)

    # -- role assignments --------------------------------------------------

    async def list_role_assignments(self, scope_id: str, principal_id: str) -> list[str]:
        if scope_id == DIRECTORY_SCOPE:
            assignments = await self._run(
                self._graph.list_directory_role_assignments, principal_id
            )
            return [
                role_name_for(a["roleDefinitionId"], DIRECTORY_ROLES)
                for a in assignments
                if a.get("directoryScopeId", "/") == DIRECTORY_SCOPE
            ]

        def list_at_scope() -> list[Any]:
            return list(
                self._authorization.role_assignments.list_for_scope(
                    scope_id, filter=f"principalId eq '{principal_id}'"
                )
            )

        assignments = await self._run(list_at_scope)
        # list_for_scope also returns inherited assignments; only the exact scope counts
        return [
            role_name_for(a.role_definition_id, BUILTIN_ROLES)
            for a in assignments
            if a.scope and a.scope.lower() == scope_id.lower()
        ]

    async def create_role_assignment(
        self, scope_id: str, role_name: str, principal_id: str, principal_type: str
    ) -> None:
        if scope_id == DIRECTORY_SCOPE:
            template_id = DIRECTORY_ROLES.get(role_name)
            if template_id is None:
                raise ValueError(f"Unknown directory role: {role_name}")
            await self._run(
                self._graph.create_directory_role_assignment, principal_id, template_id
            )
            return

        role_definition_id = (
            f"/subscriptions/{self._subscription_id}/providers/"
            f"Microsoft.Authorization/roleDefinitions/{role_definition_guid(role_name)}"
        )
        parameters = RoleAssignmentCreateParameters(
            role_definition_id=role_definition_id,
            principal_id=principal_id,
            principal_type=principal_type,
        )
        try:
            await self._run(
                self._authorization.role_assignments.create,
                scope_id,
                str(uuid.uuid4()),
                parameters,
            )
        except HttpResponseError as e:
            # Role assignment may already exist (409 Conflict) - that's OK
            if e.status_code == 409:
                logger.info(
                    f"Role assignment {role_name} already exists for {principal_id}",
                    extra={"scope": scope_id},
                )
                return
            raise

    # -- providers ---------------------------------------------------------

    async def get_provider_state(self, namespace: str) -> str:
        provider = await self._run(self._resources.providers.get, namespace)
        return provider.registration_state or "Unknown"

    async def register_provider(self, namespace: str) -> None:
        await self._run(self._resources.providers.register, namespace)

    # -- directory users and credentials -----------------------------------

    async def find_user(self, email: str) -> str | None:
        user = await self._run(self._graph.find_user_by_mail, email)
        return user["id"] if user else None

    async def add_password(
        self, app_object_id: str, display_name: str, expires_at: datetime
    ) -> MintedCredential:
        response = await self._run(
            self._graph.add_password, app_object_id, display_name, expires_at
        )
        secret_value = response.get("secretText")
        if not secret_value:
            raise CloudApiError("addPassword response did not include a secret", status_code=500)
        return MintedCredential(
            key_id=response.get("keyId", ""),
            display_name=response.get("displayName", display_name),
            expires_at=expires_at,
            secret_value=secret_value,
        )

    # -- key vault data plane ----------------------------------------------

    async def set_secret(self, vault_uri: str, name: str, value: str) -> str:
        client = self._secret_clients.get(vault_uri)
        if client is None:
            client = SecretClient(vault_url=vault_uri, credential=self._credential)
            self._secret_clients[vault_uri] = client
        secret = await self._run(client.set_secret, name, value)
        return secret.id


def _resource_group_of(scope: str) -> str:
    return parse_resource_id(scope)["resource_group"]


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


# -- SDK models -> ObservedResource ----------------------------------------


def _observed_resource_group(group: Any) -> ObservedResource:
    return ObservedResource(
        id=group.id,
        name=group.name,
        properties={"location": group.location, "tags": dict(group.tags or {})},
    )


def _observed_container(container: Any) -> ObservedResource:
    return ObservedResource(
        id=container.id,
        name=container.name,
        properties={"publicAccess": _enum_value(container.public_access)},
    )


def _observed_vault(vault: Any) -> ObservedResource:
    return ObservedResource(
        id=vault.id,
        name=vault.name,
        properties={
            "location": vault.location,
            "tenantId": str(vault.properties.tenant_id),
            "vaultUri": vault.properties.vault_uri,
            "sku": _enum_value(vault.properties.sku.name),
            "enableRbacAuthorization": bool(vault.properties.enable_rbac_authorization),
        },
    )


def _observed_storage_account(account: Any) -> ObservedResource:
    return ObservedResource(
        id=account.id,
        name=account.name,
        properties={
            "location": account.location,
            "kind": _enum_value(account.kind),
            "sku": _enum_value(account.sku.name),
            "minimumTlsVersion": _enum_value(account.minimum_tls_version),
            "allowBlobPublicAccess": account.allow_blob_public_access,
            "allowSharedKeyAccess": account.allow_shared_key_access,
        },
    )


def _observed_identity(identity: Any) -> ObservedResource:
    return ObservedResource(
        id=identity.id,
        name=identity.name,
        properties={
            "location": identity.location,
            "principalId": str(identity.principal_id),
            "clientId": str(identity.client_id),
        },
    )


def _observed_group(group: dict[str, Any]) -> ObservedResource:
    return ObservedResource(
        id=group["id"],
        name=group["displayName"],
        properties={
            "description": group.get("description"),
            "securityEnabled": group.get("securityEnabled"),
        },
    )


def _observed_application(app: dict[str, Any]) -> ObservedResource:
    return ObservedResource(
        id=app["id"],
        name=app["displayName"],
        properties={
            "appId": app["appId"],
            "signInAudience": app.get("signInAudience"),
            "passwordKeyIds": [c["keyId"] for c in app.get("passwordCredentials") or []],
        },
    )


def _observed_service_principal(sp: dict[str, Any]) -> ObservedResource:
    return ObservedResource(id=sp["id"], name=sp["displayName"], properties={"appId": sp["appId"]})
