"""Unit tests for the Magic API client."""

import asyncio
import json
from unittest.mock import patch

import httpx
import pytest

from pymagicapi.api import TOKEN_HEADER, MagicApiClient
from pymagicapi.exceptions import (
    MagicAPIError,
    MagicAuthenticationError,
    MagicConfigError,
    MagicInvalidResponseError,
    MagicNetworkError,
    MagicNotFoundError,
    MagicPermissionError,
    MagicRemoteRejectedError,
)
from pymagicapi.models import GroupNode, MagicGroupInfo, ResourceType


def make_client(handler, **kwargs) -> MagicApiClient:
    """Client wired to an in-process handler."""
    kwargs.setdefault("url", "http://magic.test/magic/web/")
    kwargs.setdefault("username", "")
    kwargs.setdefault("password", "")
    kwargs.setdefault("token", "")
    return MagicApiClient(transport=httpx.MockTransport(handler), **kwargs)


def envelope(data, code=1, message="success"):
    return httpx.Response(200, json={"code": code, "message": message, "data": data})


class TestMagicApiClient:
    """Tests for client initialization."""

    def test_init_strips_trailing_slash(self):
        """Test that the base URL is normalized."""
        client = make_client(lambda r: envelope(None))
        assert client.url == "http://magic.test/magic/web"

    def test_init_without_url_raises_error(self):
        """Test that a missing URL is a configuration error."""
        with patch("pymagicapi.api.config") as mock_config:
            mock_config.api_url = None
            with pytest.raises(MagicConfigError, match="URL not configured"):
                MagicApiClient(url=None, username="", password="", token="")

    def test_auth_headers_prefer_session_token(self):
        """Test that a session token wins over the static token."""
        client = make_client(lambda r: envelope(None), token="static")
        assert client.auth_headers() == {TOKEN_HEADER: "static"}
        client.session_token = "fresh"
        assert client.auth_headers() == {TOKEN_HEADER: "fresh"}

    def test_auth_headers_empty_without_token(self):
        """Test that no header is sent without any token."""
        client = make_client(lambda r: envelope(None))
        assert client.auth_headers() == {}


class TestRequest:
    """Tests for request sending and envelope handling."""

    async def test_unwraps_data(self):
        """Test that the envelope's data member is returned."""
        client = make_client(lambda r: envelope({"answer": 42}))
        assert await client._request("/workbench") == {"answer": 42}
        await client.aclose()

    async def test_sends_post_with_token_header(self):
        """Test that requests are POSTs carrying the token header."""
        seen = []

        def handler(request):
            seen.append(request)
            return envelope(True)

        client = make_client(handler, token="abc")
        await client.delete_file("f1")
        await client.aclose()

        assert seen[0].method == "POST"
        assert seen[0].url.path == "/magic/web/file/delete"
        assert seen[0].headers[TOKEN_HEADER] == "abc"
        assert json.loads(seen[0].content) == {"id": "f1"}

    async def test_rejected_code_raises(self):
        """Test that a failure code in the envelope is a rejection."""
        client = make_client(lambda r: envelope(None, code=0, message="name taken"))
        with pytest.raises(MagicRemoteRejectedError, match="name taken") as exc_info:
            await client._request("/file/save", json={})
        assert exc_info.value.code == 0

    async def test_success_false_raises(self):
        """Test that success=false is a rejection."""
        client = make_client(
            lambda r: httpx.Response(200, json={"success": False, "message": "nope"})
        )
        with pytest.raises(MagicRemoteRejectedError, match="nope"):
            await client._request("/file/save")

    async def test_code_200_accepted(self):
        """Test that code 200 counts as success."""
        client = make_client(lambda r: envelope("ok", code=200))
        assert await client._request("/file/save") == "ok"

    async def test_empty_response(self):
        """Test that an empty body yields None."""
        client = make_client(lambda r: httpx.Response(200, content=b""))
        assert await client._request("/file/save") is None

    async def test_html_response_raises_auth_error(self):
        """Test that an HTML login page is reported as an auth problem."""
        client = make_client(
            lambda r: httpx.Response(
                200, content=b"<html></html>", headers={"Content-Type": "text/html"}
            )
        )
        with pytest.raises(MagicAuthenticationError):
            await client._request("/resource")

    async def test_invalid_json_raises(self):
        """Test that a non-JSON body is an invalid response."""
        client = make_client(
            lambda r: httpx.Response(
                200, content=b"not json", headers={"Content-Type": "text/plain"}
            )
        )
        with pytest.raises(MagicInvalidResponseError):
            await client._request("/resource")

    async def test_http_401_clears_session(self):
        """Test that 401 drops the session token."""
        client = make_client(lambda r: httpx.Response(401))
        client.session_token = "old"
        with pytest.raises(MagicAuthenticationError):
            await client._request("/resource")
        assert client.session_token is None

    @pytest.mark.parametrize(
        "status,exc",
        [(403, MagicPermissionError), (404, MagicNotFoundError)],
    )
    async def test_http_error_mapping(self, status, exc):
        """Test that HTTP statuses map onto client exceptions."""
        client = make_client(lambda r: httpx.Response(status))
        with pytest.raises(exc):
            await client._request("/resource")

    async def test_http_error_with_json_message(self):
        """Test that a JSON error message is included."""
        client = make_client(
            lambda r: httpx.Response(500, json={"message": "boom"})
        )
        with pytest.raises(MagicAPIError, match="boom"):
            await client._request("/resource")

    async def test_network_error(self):
        """Test that transport failures become network errors."""

        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = make_client(handler)
        with pytest.raises(MagicNetworkError):
            await client._request("/resource")

    async def test_no_retry_on_failure(self):
        """Test that a failed call is attempted exactly once."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500)

        client = make_client(handler)
        with pytest.raises(MagicAPIError):
            await client._request("/resource")
        assert len(calls) == 1


class TestLogin:
    """Tests for authentication."""

    async def test_token_from_data(self):
        """Test reading the token from data.token."""
        client = make_client(
            lambda r: envelope({"token": "t1"}), username="u", password="p"
        )
        assert await client.login() == "t1"
        assert client.session_token == "t1"

    async def test_token_from_header(self):
        """Test reading the token from the response header."""
        client = make_client(
            lambda r: httpx.Response(
                200, json={"code": 1, "data": True}, headers={TOKEN_HEADER: "t2"}
            ),
            username="u",
            password="p",
        )
        assert await client.login() == "t2"

    async def test_ensure_login_without_credentials(self):
        """Test that no login is attempted without credentials."""
        calls = []

        def handler(request):
            calls.append(request)
            return envelope({"token": "x"})

        client = make_client(handler)
        assert await client.ensure_login() is None
        assert calls == []

    async def test_concurrent_callers_share_one_login(self):
        """Test that parallel requests trigger a single login."""
        logins = []

        async def handler(request):
            if request.url.path.endswith("/login"):
                logins.append(request)
                await asyncio.sleep(0)
                return envelope({"token": "shared"})
            return envelope(request.headers.get(TOKEN_HEADER))

        client = make_client(handler, username="u", password="p")
        results = await asyncio.gather(
            client._request("/workbench"), client._request("/workbench")
        )
        assert len(logins) == 1
        assert results == ["shared", "shared"]

    async def test_failed_login_is_not_fatal(self):
        """Test that a failed login leaves the request unauthenticated."""

        def handler(request):
            if request.url.path.endswith("/login"):
                return httpx.Response(401)
            return envelope(request.headers.get(TOKEN_HEADER))

        client = make_client(handler, username="u", password="bad")
        assert await client._request("/workbench") is None


class TestResourceEndpoints:
    """Tests for tree and CRUD endpoints."""

    async def test_fetch_resource_tree(self):
        """Test that /resource is parsed into a tree."""
        payload = {
            "api": {
                "node": {"id": "0", "name": "api", "type": "api", "parentId": None},
                "children": [
                    {
                        "node": {"id": "g1", "name": "user", "parentId": "0", "type": "api"},
                        "children": [
                            {
                                "node": {"id": "f1", "name": "login", "groupId": "g1"},
                                "children": [],
                            }
                        ],
                    }
                ],
            }
        }
        client = make_client(lambda r: envelope(payload))
        tree = await client.fetch_resource_tree()
        group = tree.find_group(ResourceType.API, ["user"])
        assert isinstance(group, GroupNode)
        assert group.files()[0].id == "f1"

    async def test_create_file_returns_id(self):
        """Test that create_file returns the server's id."""
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return envelope("new-id")

        client = make_client(handler)
        new_id = await client.create_file(
            "login", "return 1", ResourceType.API, "api/user", "g1", method="GET"
        )
        assert new_id == "new-id"
        assert bodies[0] == {
            "name": "login",
            "script": "return 1",
            "type": "api",
            "groupPath": "api/user",
            "groupId": "g1",
            "method": "GET",
        }

    async def test_create_file_without_id_raises(self):
        """Test that a missing id is an invalid response."""
        client = make_client(lambda r: envelope(None))
        with pytest.raises(MagicInvalidResponseError):
            await client.create_file("x", "", ResourceType.API, "api")

    async def test_create_group_accepts_object_response(self):
        """Test that an id inside an object is accepted."""
        client = make_client(lambda r: envelope({"id": "g9"}))
        assert await client.create_group("billing", None, ResourceType.API) == "g9"

    async def test_save_group_sends_payload(self):
        """Test that save_group sends the group's wire form."""
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return envelope(True)

        client = make_client(handler)
        await client.save_group(
            MagicGroupInfo(id="g1", name="users", path="", type=ResourceType.API)
        )
        assert bodies[0]["name"] == "users"
        assert bodies[0]["parentId"] == "0"

    async def test_search_workbench_empty(self):
        """Test that a null search result becomes an empty list."""
        client = make_client(lambda r: envelope(None))
        assert await client.search_workbench("db") == []

    async def test_async_context_manager_closes(self):
        """Test that leaving the context closes the httpx client."""
        async with make_client(lambda r: envelope(1)) as client:
            await client._request("/workbench")
            assert client._client is not None
        assert client._client is None
