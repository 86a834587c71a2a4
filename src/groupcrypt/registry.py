"""
groupcrypt - Remote collaborators: public key registry and group-key store.

Endpoints consumed (relative to the configured API base URL):

    GET  /users/{id}/public-key          -> {"publicKey": b64}
    PUT  /users/public-key               {"publicKey": b64}
    POST /groups/{id}/keys               {userId, encryptedGroupKey, iv, authTag, encryptedBy}
    GET  /groups/{id}/keys/{userId}      -> {encryptedGroupKey, iv, authTag, encryptedBy} | 404

The protocols below are what the rest of the package depends on; the httpx
implementations are the production wiring.
"""

import logging
from typing import Any, Dict, Optional, Protocol
from urllib.parse import quote

import httpx

from .cipher import WrappedGroupKeyEnvelope, b64decode, b64encode
from .constants import API_TIMEOUT, KEY_SIZE
from .errors import ErrorCode, InvalidEncodingError, KeyNotPublishedError, NetworkError

logger = logging.getLogger(__name__)


def _segment(value: str) -> str:
    """Percent-encode an id for use as a single URL path segment."""
    return quote(str(value), safe="")


class PublicKeyDirectory(Protocol):
    async def get_public_key(self, user_id: str) -> bytes: ...

    async def publish_public_key(self, public_key: bytes) -> None: ...


class GroupKeyBackend(Protocol):
    async def store_envelope(
        self, group_id: str, user_id: str, envelope: WrappedGroupKeyEnvelope
    ) -> None: ...

    async def fetch_envelope(
        self, group_id: str, user_id: str
    ) -> Optional[WrappedGroupKeyEnvelope]: ...


class ApiClient:
    """
    Thin async JSON client around httpx.AsyncClient.

    Transport failures and non-2xx responses are raised as NetworkError with
    the HTTP status in ``details``; callers that treat 404 specially pass
    ``allow_404=True`` and receive None instead.
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = API_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.http_client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"), headers=headers, timeout=timeout, transport=transport
        )

    async def request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        allow_404: bool = False,
    ) -> Optional[Dict[str, Any]]:
        try:
            response = await self.http_client.request(method, path, json=json)
        except httpx.TimeoutException as e:
            raise NetworkError(
                ErrorCode.E202_CONNECTION_TIMEOUT,
                f"{method} {path} timed out",
                {"path": path},
            ) from e
        except httpx.HTTPError as e:
            raise NetworkError(
                ErrorCode.E201_CONNECTION_FAILED,
                f"{method} {path} failed: {e}",
                {"path": path},
            ) from e

        if response.status_code == 404 and allow_404:
            return None
        if response.is_error:
            raise NetworkError(
                ErrorCode.E200_NETWORK_ERROR,
                f"{method} {path} returned HTTP {response.status_code}",
                {"path": path, "status": response.status_code},
            )
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise NetworkError(
                ErrorCode.E206_INVALID_MESSAGE,
                f"{method} {path} returned invalid JSON",
                {"path": path},
            ) from e

    async def close(self) -> None:
        await self.http_client.aclose()

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


class HttpKeyRegistry:
    """Public key registry backed by the REST API."""

    def __init__(self, api: ApiClient):
        self.api = api

    async def get_public_key(self, user_id: str) -> bytes:
        path = f"/users/{_segment(user_id)}/public-key"
        data = await self.api.request("GET", path, allow_404=True)
        if not data or not data.get("publicKey"):
            raise KeyNotPublishedError(user_id)
        public_key = b64decode(data["publicKey"], "publicKey")
        if len(public_key) != KEY_SIZE:
            raise InvalidEncodingError(
                f"Public key for {user_id} must be {KEY_SIZE} bytes", {"user_id": user_id}
            )
        return public_key

    async def publish_public_key(self, public_key: bytes) -> None:
        await self.api.request("PUT", "/users/public-key", json={"publicKey": b64encode(public_key)})
        logger.info("Public key published to registry")


class HttpGroupKeyStore:
    """Per-(group, member) wrapped key records backed by the REST API."""

    def __init__(self, api: ApiClient):
        self.api = api

    async def store_envelope(
        self, group_id: str, user_id: str, envelope: WrappedGroupKeyEnvelope
    ) -> None:
        payload = {"userId": user_id, **envelope.to_dict()}
        await self.api.request("POST", f"/groups/{_segment(group_id)}/keys", json=payload)
        logger.debug(f"Stored wrapped group key for {user_id} in group {group_id}")

    async def fetch_envelope(
        self, group_id: str, user_id: str
    ) -> Optional[WrappedGroupKeyEnvelope]:
        path = f"/groups/{_segment(group_id)}/keys/{_segment(user_id)}"
        data = await self.api.request("GET", path, allow_404=True)
        if data is None:
            return None
        return WrappedGroupKeyEnvelope.from_dict(data)
