"""Async HTTP client for the topickeys API.

Usage:
    async with TopicKeysClient("http://localhost:8000", username="alice") as client:
        identities = await client.fetch_user_identities({"bob", "carol"})
        await client.invite(topic_id, "bob", wrapped_key)

For in-process tests pass an httpx transport, e.g.
``httpx.ASGITransport(app=topickeys.api.app)``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

import httpx

from .errors import ApiError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class TopicKeysClient:
    """Client for the remote key store, identity lookup and topic routes.

    Args:
        url: Base URL of the topickeys server
        username: Acting user, sent as the Api-Username header
        admin_token: Token for /admin routes
        transport: Optional httpx transport (tests use ASGITransport)
    """

    def __init__(
        self,
        url: str,
        username: str | None = None,
        admin_token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self._url = url.rstrip("/")
        self.username = username
        self._admin_token = admin_token
        self._client = httpx.AsyncClient(base_url=self._url, transport=transport, timeout=timeout)

    async def aclose(self) -> None:
        """Close HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> TopicKeysClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        admin: bool = False,
    ) -> Any:
        """Make an HTTP request."""
        headers: dict[str, str] = {}
        if self.username:
            headers["Api-Username"] = self.username
        if admin and self._admin_token:
            headers["X-Admin-Token"] = self._admin_token

        response = await self._client.request(method, path, json=json, params=params, headers=headers)

        if response.status_code >= 400:
            raise ApiError(response.status_code, _error_detail(response))

        if response.status_code == 204 or not response.content:
            return None

        return response.json()

    # --- Encrypt Operations ---

    async def fetch_user_identities(self, usernames: Iterable[str]) -> dict[str, str]:
        """Look up encoded public identities.

        Usernames without an identity are absent from the result.
        """
        names = sorted(set(usernames))
        if not names:
            return {}
        result = await self._request("GET", "/encrypt/user", params={"usernames": ",".join(names)})
        return dict(result or {})

    async def submit_keys(
        self,
        public: str,
        private: str | Mapping[str, str],
        overwrite: bool = False,
    ) -> None:
        """Store the acting user's exported identity on the server.

        Raises:
            ApiError: 409 if keys already exist and overwrite is not set
        """
        payload_private = private if isinstance(private, str) else dict(private)
        await self._request(
            "PUT",
            "/encrypt/keys",
            json={"public": public, "private": payload_private, "overwrite": overwrite},
        )

    async def get_capabilities(self) -> dict[str, Any]:
        """Capability flags for the acting user (see status.CapabilityFlags)."""
        return await self._request("GET", "/encrypt/capabilities")

    # --- Topic Operations ---

    async def create_topic(
        self,
        title: str,
        encrypted_title: str | None = None,
        key: str | None = None,
    ) -> dict[str, Any]:
        """Create a topic, optionally encrypted with the creator's wrapped key."""
        payload: dict[str, Any] = {"title": title}
        if encrypted_title is not None:
            payload["encrypted_title"] = encrypted_title
        if key is not None:
            payload["key"] = key
        return await self._request("POST", "/t", json=payload)

    async def get_topic_key(self, topic_id: int) -> dict[str, Any]:
        """The acting user's wrapped key and the topic's encrypted title."""
        return await self._request("GET", f"/t/{topic_id}/encrypt")

    async def invite(self, topic_id: int, username: str, wrapped_key: str | None) -> None:
        """Grant a user access to a topic.

        Raises:
            ApiError: 422 if wrapped_key is missing; nothing is changed server-side
        """
        payload: dict[str, Any] = {"user": username}
        if wrapped_key is not None:
            payload["key"] = wrapped_key
        await self._request("POST", f"/t/{topic_id}/invite", json=payload)

    async def remove_access(self, topic_id: int, username: str) -> None:
        """Revoke a user's access (participant record and wrapped key)."""
        await self._request("DELETE", f"/t/{topic_id}/allowed-users/{username}")

    async def update_encrypted_title(self, topic_id: int, encrypted_title: str) -> dict[str, Any]:
        return await self._request("PUT", f"/t/{topic_id}", json={"encrypted_title": encrypted_title})

    # --- Admin Operations ---

    async def create_user(self, username: str, groups: list[str] | None = None) -> dict[str, Any]:
        return await self._request(
            "POST", "/admin/users", json={"username": username, "groups": groups or []}, admin=True
        )

    async def run_encrypt_consistency(self, workers: int = 1) -> None:
        await self._request(
            "POST", "/admin/jobs/encrypt-consistency", params={"workers": workers}, admin=True
        )


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text
    if isinstance(body, dict) and "detail" in body:
        return str(body["detail"])
    return response.text
