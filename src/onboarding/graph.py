"""Minimal Microsoft Graph REST client.

Covers exactly the directory objects onboarding touches: security groups
and their members, application registrations and their passwords, service
principals, directory role assignments and user lookup.

All calls are synchronous (requests); AzureCloudBackend runs them in the
default executor. Non-2xx responses raise CloudApiError carrying the HTTP
status and the Graph error code so errors.classify_error can classify them.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any

import requests
from azure.core.credentials import AccessToken, TokenCredential

from .errors import CloudApiError

logger = logging.getLogger(__name__)

GRAPH_API_BASE = "https://graph.microsoft.com/v1.0"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"

# Seconds per HTTP request
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30

# Refresh the bearer token this long before it expires
TOKEN_REFRESH_MARGIN_SECONDS = 300

# Safety limit for nextLink pagination
MAX_PAGES = 100


def _quote(value: str) -> str:
    """Escape a literal for an OData $filter expression."""
    return value.replace("'", "''")


class GraphClient:
    """Thin wrapper over the Graph v1.0 endpoints used during onboarding."""

    def __init__(
        self,
        credential: TokenCredential,
        session: requests.Session | None = None,
        timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self._credential = credential
        self._session = session or requests.Session()
        self._timeout = timeout_seconds
        self._token: AccessToken | None = None

    def _headers(self) -> dict[str, str]:
        refresh_at = time.time() + TOKEN_REFRESH_MARGIN_SECONDS
        if self._token is None or self._token.expires_on < refresh_at:
            self._token = self._credential.get_token(GRAPH_SCOPE)
        return {
            "Authorization": f"Bearer {self._token.token}",
            "Content-Type": "application/json",
        }

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        url = path if path.startswith("https://") else f"{GRAPH_API_BASE}{path}"
        try:
            resp = self._session.request(
                method,
                url,
                json=json,
                params=params,
                headers=self._headers(),
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            raise CloudApiError(f"Graph {method} {path} failed: {e}") from e

        if resp.status_code >= 400:
            code, message = _error_detail(resp)
            logger.debug(
                "Graph request failed",
                extra={
                    "method": method,
                    "path": path,
                    "status_code": resp.status_code,
                    "code": code,
                },
            )
            raise CloudApiError(
                f"Graph {method} {path} failed ({resp.status_code}): {code}: {message}",
                status_code=resp.status_code,
                code=code,
            )

        if resp.status_code == 204 or not resp.content:
            return {}
        return resp.json()

    def _list(self, path: str, params: dict[str, str] | None = None) -> list[dict[str, Any]]:
        """GET a collection, following @odata.nextLink."""
        items: list[dict[str, Any]] = []
        page = self._request("GET", path, params=params)
        for _ in range(MAX_PAGES):
            items.extend(page.get("value", []))
            next_link = page.get("@odata.nextLink")
            if not next_link:
                return items
            page = self._request("GET", next_link)
        logger.warning("Graph pagination limit reached", extra={"path": path, "items": len(items)})
        return items

    def _find_one(self, path: str, filter_expr: str) -> dict[str, Any] | None:
        matches = self._list(path, params={"$filter": filter_expr})
        if len(matches) > 1:
            logger.warning(
                "Multiple directory objects match, using the first",
                extra={"path": path, "filter": filter_expr, "matches": len(matches)},
            )
        return matches[0] if matches else None

    # Groups

    def find_group(self, display_name: str) -> dict[str, Any] | None:
        return self._find_one("/groups", f"displayName eq '{_quote(display_name)}'")

    def create_group(
        self, display_name: str, description: str, mail_nickname: str
    ) -> dict[str, Any]:
        return self._request(
            "POST",
            "/groups",
            json={
                "displayName": display_name,
                "description": description,
                "mailNickname": mail_nickname,
                "mailEnabled": False,
                "securityEnabled": True,
            },
        )

    def list_group_members(self, group_id: str) -> list[str]:
        members = self._list(f"/groups/{group_id}/members", params={"$select": "id"})
        return [m["id"] for m in members]

    def add_group_member(self, group_id: str, principal_id: str) -> None:
        self._request(
            "POST",
            f"/groups/{group_id}/members/$ref",
            json={"@odata.id": f"{GRAPH_API_BASE}/directoryObjects/{principal_id}"},
        )

    # Applications and service principals

    def find_application(self, display_name: str) -> dict[str, Any] | None:
        return self._find_one("/applications", f"displayName eq '{_quote(display_name)}'")

    def create_application(self, display_name: str, properties: dict[str, Any]) -> dict[str, Any]:
        payload = {**properties, "displayName": display_name}
        return self._request("POST", "/applications", json=payload)

    def update_application(self, object_id: str, properties: dict[str, Any]) -> None:
        self._request("PATCH", f"/applications/{object_id}", json=properties)

    def add_password(
        self, object_id: str, display_name: str, end_datetime: datetime
    ) -> dict[str, Any]:
        return self._request(
            "POST",
            f"/applications/{object_id}/addPassword",
            json={
                "passwordCredential": {
                    "displayName": display_name,
                    "endDateTime": end_datetime.isoformat().replace("+00:00", "Z"),
                }
            },
        )

    def find_service_principal(self, display_name: str) -> dict[str, Any] | None:
        return self._find_one("/servicePrincipals", f"displayName eq '{_quote(display_name)}'")

    def create_service_principal(self, app_id: str) -> dict[str, Any]:
        return self._request("POST", "/servicePrincipals", json={"appId": app_id})

    # Directory roles

    def list_directory_role_assignments(self, principal_id: str) -> list[dict[str, Any]]:
        return self._list(
            "/roleManagement/directory/roleAssignments",
            params={"$filter": f"principalId eq '{_quote(principal_id)}'"},
        )

    def create_directory_role_assignment(
        self, principal_id: str, role_definition_id: str
    ) -> dict[str, Any]:
        return self._request(
            "POST",
            "/roleManagement/directory/roleAssignments",
            json={
                "principalId": principal_id,
                "roleDefinitionId": role_definition_id,
                "directoryScopeId": "/",
            },
        )

    # Users

    def find_user_by_mail(self, email: str) -> dict[str, Any] | None:
        return self._find_one("/users", f"mail eq '{_quote(email)}'")


def _error_detail(resp: requests.Response) -> tuple[str, str]:
    """Extract (code, message) from a Graph error body."""
    try:
        body = resp.json()
    except ValueError:
        return "Unknown", resp.text[:500]
    error = body.get("error", {}) if isinstance(body, dict) else {}
    return error.get("code", "Unknown"), error.get("message", "")
