"""
InventDB Client for Python SDK.

This module provides the main client interface:
- InventClient: HTTP connection to an InventDB server

Example:
    >>> async with InventClient("http://localhost:3001", actor="alice") as db:
    ...     device = await db.create("devices", {"name": "PC-1", "model": "X1"})
    ...     await db.update("devices", device["id"], {"status": "in_use"})
    ...     history = await db.history("devices", device["id"])

Invariants:
    - Every request carries the client's actor and role headers
    - Non-2xx responses are raised as InventDbError subclasses
    - Records are plain dicts exactly as the server returns them
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx

from .errors import (
    AccessDeniedError,
    ApiError,
    ConnectionError,
    InventDbError,
    NotFoundError,
    SnapshotError,
    ValidationError,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:3001"


def _segment(value: Any) -> str:
    return quote(str(value), safe="")


def error_from_response(response: httpx.Response) -> InventDbError:
    """Map an error response to the matching SDK exception."""
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    message = body.get("error") or f"HTTP {response.status_code}"
    details = body.get("details") if isinstance(body.get("details"), dict) else {}
    status = response.status_code

    if status == 404:
        key = details.get("key")
        return NotFoundError(
            message,
            resource_type=details.get("kind"),
            resource_id=str(key) if key is not None else None,
        )
    if status == 400:
        return ValidationError(
            message, collection=details.get("collection"), errors=details.get("errors")
        )
    if status == 403:
        return AccessDeniedError(message, role=details.get("role"))
    if status == 422:
        return SnapshotError(message, name=details.get("name"))
    return ApiError(message, code=body.get("error_code"), details=details, status=status)


class InventClient:
    """Client for connecting to an InventDB server.

    Example:
        >>> async with InventClient(role="admin") as db:
        ...     meta = await db.create_backup("before-audit")
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        actor: str = "anonymous",
        role: str = "user",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize client.

        Args:
            base_url: Server URL (scheme, host and port)
            actor: Recorded as the user on every audit entry this client causes
            role: "admin" unlocks backup, restore and import operations
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.actor = actor
        self.role = role
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        """Open the underlying HTTP connection pool."""
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"X-Actor": self.actor, "X-Role": self.role},
            timeout=self.timeout,
            transport=self._transport,
        )

    async def close(self) -> None:
        """Close the connection pool."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> InventClient:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        if self._client is None:
            raise ConnectionError("Client is not connected", base_url=self.base_url)
        if params:
            params = {k: v for k, v in params.items() if v is not None}
        try:
            return await self._client.request(method, path, json=json, params=params)
        except httpx.TransportError as e:
            raise ConnectionError(f"Request failed: {e}", base_url=self.base_url) from e

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._send(method, path, **kwargs)
        if response.is_error:
            error = error_from_response(response)
            logger.debug(
                "Request failed",
                extra={"method": method, "path": path, "status": response.status_code},
            )
            raise error
        return response.json()

    # Records

    async def list(self, collection: str) -> list[dict[str, Any]]:
        """All records of a collection, newest first."""
        return await self._request("GET", f"/api/{_segment(collection)}")

    async def get(self, collection: str, record_id: str) -> dict[str, Any]:
        """Get one record.

        Raises:
            NotFoundError: If the record doesn't exist
        """
        return await self._request("GET", f"/api/{_segment(collection)}/{_segment(record_id)}")

    async def create(self, collection: str, data: dict[str, Any]) -> dict[str, Any]:
        """Create a record. Returns it with its server-assigned id and timestamps.

        Raises:
            ValidationError: If required fields are missing or values are malformed
        """
        return await self._request("POST", f"/api/{_segment(collection)}", json=data)

    async def update(
        self, collection: str, record_id: str, data: dict[str, Any]
    ) -> dict[str, Any]:
        """Apply a partial update. Returns the record as stored afterwards."""
        return await self._request(
            "PUT", f"/api/{_segment(collection)}/{_segment(record_id)}", json=data
        )

    async def delete(self, collection: str, record_id: str) -> None:
        await self._request("DELETE", f"/api/{_segment(collection)}/{_segment(record_id)}")

    # Audit history

    async def history(
        self,
        collection: str | None = None,
        record_id: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Audit entries, newest first, optionally filtered to a collection or record."""
        return await self._request(
            "GET",
            "/api/history",
            params={"collection": collection, "record_id": record_id, "limit": limit},
        )

    async def history_entry(self, seq: int) -> dict[str, Any]:
        return await self._request("GET", f"/api/history/{int(seq)}")

    # Snapshots

    async def list_backups(self) -> list[dict[str, Any]]:
        return await self._request("GET", "/api/backups")

    async def create_backup(self, name: str | None = None) -> dict[str, Any]:
        """Create a snapshot. Requires the admin role."""
        return await self._request("POST", "/api/backup", json={"name": name} if name else {})

    async def get_backup(self, name: str) -> dict[str, Any]:
        """Contents of a snapshot: collections plus history."""
        return await self._request("GET", f"/api/backup/{_segment(name)}")

    async def compare_backup(self, name: str) -> dict[str, Any]:
        """Per collection, the records a restore of the snapshot would add, remove or change."""
        return await self._request("GET", f"/api/backup/{_segment(name)}/compare")

    async def restore_backup(self, name: str) -> dict[str, Any]:
        """Replace the whole store with a snapshot. Requires the admin role."""
        return await self._request("POST", f"/api/restore/{_segment(name)}")

    async def delete_backup(self, name: str) -> None:
        await self._request("DELETE", f"/api/backup/{_segment(name)}")

    # Whole-store export / import

    async def export_db(self) -> dict[str, Any]:
        return await self._request("GET", "/api/db.json")

    async def import_db(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Replace the store with an external dump. Requires the admin role.

        Raises:
            SnapshotError: If the dump is structurally invalid
        """
        return await self._request("POST", "/api/db.json", json=payload)

    # Server

    async def stats(self) -> dict[str, Any]:
        return await self._request("GET", "/api/stats")

    async def health(self) -> dict[str, Any]:
        """Health report. An unhealthy server returns {"healthy": False, ...}."""
        response = await self._send("GET", "/api/health")
        if response.status_code == 503:
            return response.json()
        if response.is_error:
            raise error_from_response(response)
        return response.json()
