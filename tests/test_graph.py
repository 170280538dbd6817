"""Tests for the Microsoft Graph client with a mocked HTTP session."""

from __future__ import annotations

import time
from datetime import UTC, datetime
from typing import Any
from unittest.mock import MagicMock

import pytest
import requests
from azure.core.credentials import AccessToken

from onboarding.errors import CloudApiError, ErrorKind, classify_error
from onboarding.graph import GRAPH_API_BASE, GRAPH_SCOPE, GraphClient


def response(status_code: int = 200, body: Any = None) -> MagicMock:
    resp = MagicMock(spec=requests.Response)
    resp.status_code = status_code
    resp.content = b"" if body is None else b"{}"
    resp.json.return_value = body
    resp.text = ""
    return resp


@pytest.fixture
def credential() -> MagicMock:
    credential = MagicMock()
    credential.get_token.return_value = AccessToken("token-1", int(time.time()) + 3600)
    return credential


@pytest.fixture
def session() -> MagicMock:
    return MagicMock(spec=requests.Session)


@pytest.fixture
def client(credential: MagicMock, session: MagicMock) -> GraphClient:
    return GraphClient(credential, session=session)


class TestRequests:
    """Tests for request plumbing."""

    def test_bearer_token_cached(
        self, client: GraphClient, credential: MagicMock, session: MagicMock
    ) -> None:
        """Test that the token is fetched once while still valid."""
        session.request.return_value = response(body={"value": []})

        client.find_group("sg-1")
        client.find_group("sg-2")

        credential.get_token.assert_called_once_with(GRAPH_SCOPE)
        headers = session.request.call_args.kwargs["headers"]
        assert headers["Authorization"] == "Bearer token-1"

    def test_token_refreshed_near_expiry(
        self, client: GraphClient, credential: MagicMock, session: MagicMock
    ) -> None:
        """Test that a token about to expire is replaced."""
        credential.get_token.side_effect = [
            AccessToken("old", int(time.time()) + 60),
            AccessToken("new", int(time.time()) + 3600),
        ]
        session.request.return_value = response(body={"value": []})

        client.find_group("a")
        client.find_group("b")

        assert credential.get_token.call_count == 2
        assert session.request.call_args.kwargs["headers"]["Authorization"] == "Bearer new"

    def test_error_carries_status_and_code(self, client: GraphClient, session: MagicMock) -> None:
        """Test that Graph errors become classifiable CloudApiErrors."""
        session.request.return_value = response(
            403,
            {"error": {"code": "Authorization_RequestDenied", "message": "Insufficient"}},
        )

        with pytest.raises(CloudApiError) as exc_info:
            client.create_group("sg", "desc", "sg")

        error = exc_info.value
        assert error.status_code == 403
        assert error.code == "Authorization_RequestDenied"
        assert classify_error(error) == ErrorKind.PERMISSION

    def test_replication_error_is_transient(self, client: GraphClient, session: MagicMock) -> None:
        """Test that a missing principal from Graph classifies as transient."""
        session.request.return_value = response(
            404,
            {"error": {"code": "Request_ResourceNotFound", "message": "does not exist"}},
        )

        with pytest.raises(CloudApiError) as exc_info:
            client.add_group_member("group-1", "sp-1")

        assert classify_error(exc_info.value) == ErrorKind.TRANSIENT

    def test_transport_error(self, client: GraphClient, session: MagicMock) -> None:
        """Test that transport failures are wrapped."""
        session.request.side_effect = requests.ConnectionError("reset")

        with pytest.raises(CloudApiError, match="reset"):
            client.find_user_by_mail("a@b.example")

    def test_pagination(self, client: GraphClient, session: MagicMock) -> None:
        """Test that nextLink pages are followed."""
        next_link = f"{GRAPH_API_BASE}/groups/g/members?$skiptoken=abc"
        session.request.side_effect = [
            response(body={"value": [{"id": "a"}], "@odata.nextLink": next_link}),
            response(body={"value": [{"id": "b"}]}),
        ]

        assert client.list_group_members("g") == ["a", "b"]
        assert session.request.call_args_list[1].args == ("GET", next_link)


class TestEndpoints:
    """Tests for endpoint payloads."""

    def test_find_group_escapes_quotes(self, client: GraphClient, session: MagicMock) -> None:
        """Test that display names are escaped in $filter."""
        session.request.return_value = response(body={"value": [{"id": "g-1"}]})

        assert client.find_group("o'brien")["id"] == "g-1"

        params = session.request.call_args.kwargs["params"]
        assert params == {"$filter": "displayName eq 'o''brien'"}

    def test_find_returns_none(self, client: GraphClient, session: MagicMock) -> None:
        """Test that no match gives None."""
        session.request.return_value = response(body={"value": []})
        assert client.find_application("app") is None

    def test_create_group_is_security_group(
        self, client: GraphClient, session: MagicMock
    ) -> None:
        """Test the security group payload."""
        session.request.return_value = response(201, {"id": "g-1"})

        client.create_group("sg-admins", "Admins", "sg-admins")

        args, kwargs = session.request.call_args
        assert args == ("POST", f"{GRAPH_API_BASE}/groups")
        assert kwargs["json"]["securityEnabled"] is True
        assert kwargs["json"]["mailEnabled"] is False

    def test_add_member_reference(self, client: GraphClient, session: MagicMock) -> None:
        """Test that members are added by directory object reference."""
        session.request.return_value = response(204)

        client.add_group_member("g-1", "u-1")

        args, kwargs = session.request.call_args
        assert args[1] == f"{GRAPH_API_BASE}/groups/g-1/members/$ref"
        assert kwargs["json"] == {"@odata.id": f"{GRAPH_API_BASE}/directoryObjects/u-1"}

    def test_add_password(self, client: GraphClient, session: MagicMock) -> None:
        """Test the password credential payload."""
        session.request.return_value = response(
            200, {"keyId": "k-1", "secretText": "value", "displayName": "onboarding"}
        )

        result = client.add_password("obj-1", "onboarding", datetime(2027, 1, 1, tzinfo=UTC))

        assert result["keyId"] == "k-1"
        payload = session.request.call_args.kwargs["json"]
        assert payload == {
            "passwordCredential": {
                "displayName": "onboarding",
                "endDateTime": "2027-01-01T00:00:00Z",
            }
        }

    def test_directory_role_assignment(self, client: GraphClient, session: MagicMock) -> None:
        """Test that directory roles are assigned at the tenant root."""
        session.request.return_value = response(201, {"id": "ra-1"})

        client.create_directory_role_assignment("sp-1", "role-def-1")

        payload = session.request.call_args.kwargs["json"]
        assert payload["directoryScopeId"] == "/"
        assert payload["roleDefinitionId"] == "role-def-1"
