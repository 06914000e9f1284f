"""API client for the Magic API web console."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import httpx

from .config import config
from .exceptions import (
    MagicAPIError,
    MagicAuthenticationError,
    MagicConfigError,
    MagicInvalidResponseError,
    MagicNetworkError,
    MagicNotFoundError,
    MagicPermissionError,
    MagicRemoteRejectedError,
)
from .models import (
    MagicGroupInfo,
    ResourceTree,
    ResourceType,
    parse_resource_tree,
)

logger = logging.getLogger(__name__)

TOKEN_HEADER = "magic-token"
SUCCESS_CODES = (1, 200)


class MagicApiClient:
    """Asynchronous client for the Magic API resource endpoints.

    The client never retries: a failed call raises once and the caller
    decides what to do with the affected resource.
    """

    def __init__(
        self,
        url: str | None = None,
        username: str | None = None,
        password: str | None = None,
        token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the client.

        Args:
            url: Base URL of the Magic API console (uses config if not provided)
            username: Optional login user name
            password: Optional login password
            token: Optional static session token
            transport: Optional httpx transport, used by tests
        """
        self.url = (url or config.api_url or "").rstrip("/")
        self.username = username if username is not None else config.username
        self.password = password if password is not None else config.password
        self.token = token if token is not None else config.token
        self._transport = transport

        if not self.url:
            raise MagicConfigError(
                "Server URL not configured. Please set MAGIC_API_URL or "
                "add it to .magic-api-mirror.json."
            )

        self.session_token: str | None = None
        self._login_task: asyncio.Task[str | None] | None = None
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> MagicApiClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the httpx client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.url,
                headers={"Content-Type": "application/json"},
                transport=self._transport,
                follow_redirects=True,
            )
        return self._client

    async def aclose(self) -> None:
        """Close the client and release connections."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    def auth_headers(self) -> dict[str, str]:
        tok = self.session_token or self.token
        return {TOKEN_HEADER: tok} if tok else {}

    def _raise_for_status(self, response: httpx.Response) -> None:
        """Translate HTTP error statuses into client exceptions."""
        status_code = response.status_code
        if status_code < 400:
            return

        if status_code == 401:
            self.session_token = None
            raise MagicAuthenticationError("Invalid credentials or expired session")
        if status_code == 403:
            raise MagicPermissionError("Access forbidden - check your permissions")
        if status_code == 404:
            raise MagicNotFoundError(f"Endpoint not found: {response.request.url}")

        error_msg = f"API request failed with status {status_code}"
        try:
            error_data = response.json()
            if isinstance(error_data, dict):
                msg = error_data.get("message") or error_data.get("error")
                if msg:
                    error_msg = f"{error_msg}: {msg}"
        except ValueError:
            # Body is not JSON, keep the status-based message
            pass
        raise MagicAPIError(error_msg)

    async def _request(
        self, endpoint: str, json: Any = None, authenticated: bool = True
    ) -> Any:
        """POST to an endpoint and unwrap the response envelope.

        Args:
            endpoint: API endpoint path
            json: Optional JSON body
            authenticated: Whether to log in first when credentials are known

        Returns:
            The ``data`` member of the envelope (or the whole body if the
            server did not wrap it)

        Raises:
            MagicNetworkError: If the server cannot be reached
            MagicRemoteRejectedError: If the envelope reports a failure
        """
        if authenticated:
            await self.ensure_login()

        client = self._get_client()
        try:
            response = await client.post(
                "/" + endpoint.lstrip("/"), json=json, headers=self.auth_headers()
            )
        except httpx.RequestError as e:
            raise MagicNetworkError(f"Network error: {e}") from e

        self._raise_for_status(response)

        if not response.content:
            return None
        try:
            body = response.json()
        except ValueError as e:
            content_type = response.headers.get("Content-Type", "")
            if "text/html" in content_type:
                raise MagicAuthenticationError(
                    "Server returned HTML instead of JSON - check the URL and login"
                ) from e
            raise MagicInvalidResponseError("Invalid JSON response from server") from e

        if not isinstance(body, dict):
            return body

        code = body.get("code")
        if body.get("success") is False or (
            code is not None and code not in SUCCESS_CODES
        ):
            message = body.get("message") or "request rejected"
            raise MagicRemoteRejectedError(
                f"{endpoint} failed: {message}", code=code
            )
        return body.get("data", body)

    # =========================
    # Authentication
    # =========================

    async def ensure_login(self) -> str | None:
        """Log in once if credentials are configured and no session exists.

        Concurrent callers share one in-flight login.

        Returns:
            The session token, or None when logging in was not possible
        """
        if self.session_token:
            return self.session_token
        if not self.username or not self.password:
            return None
        if self._login_task is None:
            self._login_task = asyncio.ensure_future(self.login())
        try:
            return await self._login_task
        except MagicAPIError as e:
            logger.error(f"Login failed: {e}")
            return None
        finally:
            self._login_task = None

    async def login(self) -> str | None:
        """Authenticate with username and password.

        Returns:
            The new session token, or None if the server did not return one
        """
        client = self._get_client()
        try:
            response = await client.post(
                "/login", json={"username": self.username, "password": self.password}
            )
        except httpx.RequestError as e:
            raise MagicNetworkError(f"Network error: {e}") from e
        self._raise_for_status(response)

        tok: Optional[str] = None
        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {}
        if isinstance(body, dict):
            data = body.get("data")
            if isinstance(data, dict):
                tok = data.get("token")
            tok = tok or body.get("token")
        tok = tok or response.headers.get(TOKEN_HEADER)

        if tok:
            self.session_token = tok
            logger.debug("Obtained a new session token")
        return tok

    # =========================
    # Resource tree
    # =========================

    async def fetch_resource_tree(self) -> ResourceTree:
        """Fetch and parse the whole resource tree, grouped by type."""
        data = await self._request("/resource")
        return parse_resource_tree(data)

    # =========================
    # Files
    # =========================

    async def save_file(self, file: dict[str, Any]) -> Any:
        """Save an existing file (script, metadata or a new name).

        Args:
            file: Wire payload, see ``MagicFileInfo.to_payload``
        """
        return await self._request("/file/save", json=file)

    async def create_file(
        self,
        name: str,
        script: str,
        resource_type: ResourceType,
        group_path: str,
        group_id: Optional[str] = None,
        **fields: Any,
    ) -> str:
        """Create a file and return its new id.

        Args:
            name: File name (stem, without extension)
            script: Script body
            resource_type: Resource type
            group_path: Group directory path including type, e.g. ``api/user``
            group_id: Id of the parent group if known
            **fields: Additional wire fields (method, path, ...)
        """
        request: dict[str, Any] = dict(fields)
        request.update(
            {
                "name": name,
                "script": script,
                "type": resource_type.value,
                "groupPath": group_path,
            }
        )
        if group_id:
            request["groupId"] = group_id
        data = await self._request("/file/create", json=request)
        new_id = data.get("id") if isinstance(data, dict) else data
        if not new_id:
            raise MagicInvalidResponseError(f"Server did not return an id for {name}")
        return str(new_id)

    async def delete_file(self, file_id: str) -> Any:
        return await self._request("/file/delete", json={"id": file_id})

    # =========================
    # Groups
    # =========================

    async def create_group(
        self,
        name: str,
        parent_id: Optional[str],
        resource_type: ResourceType,
        description: Optional[str] = None,
    ) -> str:
        """Create a group and return its new id."""
        request: dict[str, Any] = {
            "name": name,
            "parentId": parent_id,
            "type": resource_type.value,
        }
        if description:
            request["description"] = description
        data = await self._request("/group/create", json=request)
        new_id = data.get("id") if isinstance(data, dict) else data
        if not new_id:
            raise MagicInvalidResponseError(f"Server did not return an id for group {name}")
        return str(new_id)

    async def save_group(self, group: MagicGroupInfo) -> Any:
        return await self._request("/group/save", json=group.to_payload())

    async def delete_group(self, group_id: str) -> Any:
        return await self._request("/group/delete", json={"id": group_id})

    # =========================
    # Workbench
    # =========================

    async def get_workbench_completion_data(self) -> Any:
        """Fetch class/extension/function names used for completion."""
        return await self._request("/workbench")

    async def search_workbench(self, keyword: str) -> list[dict[str, Any]]:
        """Search script bodies on the server.

        Returns:
            List of hits with ``id``, ``text`` and ``line`` keys
        """
        data = await self._request("/workbench/search", json={"keyword": keyword})
        return data or []
