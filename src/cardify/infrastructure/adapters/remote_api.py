import logging
from typing import Any

import httpx

from cardify.domain.constants import REQUEST_TIMEOUT, TABLE_CARDS, TABLE_DECKS
from cardify.domain.errors import (
    AuthError,
    PermanentRemoteError,
    RemoteError,
    TransientRemoteError,
)
from cardify.domain.interfaces import CredentialProvider, RemoteGateway
from cardify.domain.models import EntityTable

# Owner-scoped listing routes; everything else is /{table} and /{table}/{id}.
LIST_ROUTES = {
    TABLE_DECKS: "/decks/user",
    TABLE_CARDS: "/cards",
}


def classify_status(status_code: int, message: str) -> RemoteError:
    """Map an HTTP status to the sync error taxonomy."""
    if status_code in (401, 403):
        return AuthError(message, status_code=status_code)
    if status_code == 429 or status_code >= 500:
        return TransientRemoteError(message, status_code=status_code)
    return PermanentRemoteError(message, status_code=status_code)


class HttpRemoteGateway(RemoteGateway):
    """Adapter for the remote REST API (JSON envelope `{success, data, error}`)."""

    def __init__(
        self,
        base_url: str,
        credentials: CredentialProvider,
        timeout: float = REQUEST_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.logger = logging.getLogger(__name__)
        self.base_url = base_url.rstrip("/")
        self.credentials = credentials
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self.logger.debug(f"HttpRemoteGateway initialized with base_url={self.base_url}")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def _request(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> Any:
        headers = {}
        token = await self.credentials.get_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"

        try:
            resp = await self._get_client().request(
                method, path, json=payload, params=params, headers=headers
            )
        except httpx.TimeoutException as e:
            self.logger.warning(f"[remote] {method} {path} timed out: {e}")
            raise TransientRemoteError(f"{method} {path} timed out") from e
        except httpx.TransportError as e:
            self.logger.warning(f"[remote] {method} {path} transport error: {e}")
            raise TransientRemoteError(f"{method} {path} failed: {e}") from e

        data: Any = None
        if resp.content:
            try:
                data = resp.json()
            except ValueError:
                data = None

        if resp.status_code >= 400:
            detail = data.get("error") if isinstance(data, dict) else None
            message = f"{method} {path} -> {resp.status_code}" + (f": {detail}" if detail else "")
            self.logger.error(f"[remote] {message}")
            raise classify_status(resp.status_code, message)

        if isinstance(data, dict) and "success" in data:
            if not data["success"]:
                raise PermanentRemoteError(
                    f"{method} {path} rejected: {data.get('error')}", status_code=resp.status_code
                )
            return data.get("data")
        return data

    async def create_entity(self, table: EntityTable, payload: dict[str, Any]) -> Any:
        return await self._request("POST", f"/{table.value}", payload)

    async def update_entity(
        self, table: EntityTable, entity_id: str, payload: dict[str, Any]
    ) -> Any:
        return await self._request("PUT", f"/{table.value}/{entity_id}", payload)

    async def delete_entity(self, table: EntityTable, entity_id: str) -> Any:
        return await self._request("DELETE", f"/{table.value}/{entity_id}")

    async def list_entities(
        self, table: EntityTable, owner_scope: str | None = None
    ) -> list[dict[str, Any]]:
        path = LIST_ROUTES.get(table.value, f"/{table.value}")
        params = {"owner": owner_scope} if owner_scope else None
        result = await self._request("GET", path, params=params)
        if result is None:
            return []
        if not isinstance(result, list):
            raise PermanentRemoteError(f"GET {path} returned {type(result).__name__}, not a list")
        return result

    async def is_responsive(self) -> bool:
        """Check whether the API answers at all (any HTTP status counts)."""
        try:
            await self._get_client().get("/health", timeout=2.0)
            return True
        except httpx.HTTPError:
            return False

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
