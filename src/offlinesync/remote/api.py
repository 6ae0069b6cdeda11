"""HTTP client for the remote entity API.

This module provides:
- RemoteAPI: Protocol the coordinator calls (create/update/delete per entity)
- RemoteResult: Successful response with the current remote version
- RemoteError hierarchy: transient, permanent and conflict errors
- HTTPRemoteClient: httpx implementation of RemoteAPI

Endpoints:
    POST   /api/{collection}        create
    PUT    /api/{collection}/{id}   update (If-Match: expected version)
    DELETE /api/{collection}/{id}   delete (If-Match: expected version)
    GET    /health                  reachability probe
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from offlinesync.core.config import ServerConfig
from offlinesync.core.types import EntityType
from offlinesync.remote.schemas import ConflictBody, EntityResponse, ErrorBody

logger = logging.getLogger(__name__)

ENTITY_COLLECTIONS: dict[EntityType, str] = {
    EntityType.QUOTE: "quotes",
    EntityType.CLIENT: "clients",
    EntityType.SITE: "sites",
    EntityType.SUPPLY_ITEM: "items",
}

TRANSIENT_STATUS_CODES = frozenset({408, 425, 429})


class RemoteError(Exception):
    """Base exception for remote API errors."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientRemoteError(RemoteError):
    """Timeout, connection failure or 5xx. Worth retrying."""


class PermanentRemoteError(RemoteError):
    """Request rejected for good. Retrying will not help."""


class AuthenticationError(PermanentRemoteError):
    """Authentication failed."""


class RemoteConflictError(RemoteError):
    """Remote version does not match what the operation was based on.

    Attributes:
        remote_payload: Current remote entity (None if missing or deleted)
        remote_version: Current remote version number, if known
        remote_updated_at: Remote modification time, as sent by the server
        deleted: True if the remote holds a tombstone for the entity
    """

    def __init__(
        self,
        message: str,
        remote_payload: dict[str, Any] | None = None,
        remote_version: int | None = None,
        remote_updated_at: str | float | None = None,
        deleted: bool = False,
        status_code: int | None = 409,
    ) -> None:
        super().__init__(message, status_code)
        self.remote_payload = remote_payload
        self.remote_version = remote_version
        self.remote_updated_at = remote_updated_at
        self.deleted = deleted


@dataclass
class RemoteResult:
    """Successful remote call."""

    entity: dict[str, Any] | None = None
    version: int | None = None


class RemoteAPI(Protocol):
    """Protocol for the remote authority.

    Implementations raise RemoteConflictError on version mismatch,
    TransientRemoteError on retryable failures and PermanentRemoteError
    otherwise. They are expected to enforce their own request timeout.
    """

    def create(
        self, entity_type: EntityType, entity_id: str, payload: dict[str, Any]
    ) -> RemoteResult:
        """Create the entity remotely."""
        ...

    def update(
        self,
        entity_type: EntityType,
        entity_id: str,
        payload: dict[str, Any],
        expected_version: int | None = None,
    ) -> RemoteResult:
        """Replace the remote entity."""
        ...

    def delete(
        self,
        entity_type: EntityType,
        entity_id: str,
        expected_version: int | None = None,
    ) -> RemoteResult:
        """Delete the remote entity."""
        ...

    def health_check(self) -> bool:
        """Check if the remote is reachable."""
        ...


class HTTPRemoteClient:
    """HTTP client for the remote entity API."""

    def __init__(self, config: ServerConfig) -> None:
        """Initialize the client.

        Args:
            config: Server configuration with URL, token, and settings.
        """
        self._config = config
        self._client = httpx.Client(
            base_url=config.server_url,
            timeout=config.timeout,
            verify=config.verify_ssl,
            headers={"Authorization": f"Bearer {config.token}"},
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> HTTPRemoteClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    # === Health check ===

    def health_check(self) -> bool:
        """Check if the server is healthy.

        Returns:
            True if server is healthy.
        """
        try:
            response = self._client.get("/health")
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    # === Entity operations ===

    def create(
        self, entity_type: EntityType, entity_id: str, payload: dict[str, Any]
    ) -> RemoteResult:
        """Create an entity.

        Args:
            entity_type: Entity collection.
            entity_id: Local id, sent in the body.
            payload: Entity snapshot.

        Returns:
            Created entity and its version.

        Raises:
            RemoteConflictError: If the entity already exists.
        """
        body = {**payload, "id": payload.get("id", entity_id)}
        response = self._send("POST", self._collection_url(entity_type), json=body)
        return self._to_result(response)

    def update(
        self,
        entity_type: EntityType,
        entity_id: str,
        payload: dict[str, Any],
        expected_version: int | None = None,
    ) -> RemoteResult:
        """Update an entity.

        Args:
            entity_type: Entity collection.
            entity_id: Entity id.
            payload: New entity snapshot.
            expected_version: Remote version the payload is based on.

        Returns:
            Updated entity and its version.

        Raises:
            RemoteConflictError: On version mismatch, or if the entity is
                missing (404) or deleted (410) remotely.
        """
        response = self._send(
            "PUT",
            self._entity_url(entity_type, entity_id),
            json=payload,
            headers=self._if_match(expected_version),
            missing_is_conflict=True,
        )
        return self._to_result(response)

    def delete(
        self,
        entity_type: EntityType,
        entity_id: str,
        expected_version: int | None = None,
    ) -> RemoteResult:
        """Delete an entity.

        Raises:
            RemoteConflictError: If the remote entity changed since
                ``expected_version``, or is missing remotely.
        """
        self._send(
            "DELETE",
            self._entity_url(entity_type, entity_id),
            headers=self._if_match(expected_version),
            missing_is_conflict=True,
        )
        return RemoteResult()

    # === Internals ===

    @staticmethod
    def _collection_url(entity_type: EntityType) -> str:
        return f"/api/{ENTITY_COLLECTIONS[entity_type]}"

    def _entity_url(self, entity_type: EntityType, entity_id: str) -> str:
        return f"{self._collection_url(entity_type)}/{entity_id}"

    @staticmethod
    def _if_match(expected_version: int | None) -> dict[str, str]:
        if expected_version is None:
            return {}
        return {"If-Match": str(expected_version)}

    def _send(
        self,
        method: str,
        url: str,
        missing_is_conflict: bool = False,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request and map failures onto the RemoteError hierarchy."""
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientRemoteError(f"Timeout on {method} {url}: {e}") from e
        except httpx.TransportError as e:
            raise TransientRemoteError(f"Network error on {method} {url}: {e}") from e
        return self._handle_response(response, missing_is_conflict)

    def _handle_response(
        self, response: httpx.Response, missing_is_conflict: bool
    ) -> httpx.Response:
        """Handle API response and raise appropriate exceptions."""
        status = response.status_code
        if status < 400:
            return response
        if status in (401, 403):
            raise AuthenticationError("Invalid or expired token", status)
        if status in (409, 410) or (status == 404 and missing_is_conflict):
            raise self._conflict_from(response)
        detail = self._detail(response)
        if status >= 500 or status in TRANSIENT_STATUS_CODES:
            raise TransientRemoteError(detail, status)
        raise PermanentRemoteError(detail, status)

    @staticmethod
    def _detail(response: httpx.Response) -> str:
        try:
            return ErrorBody.model_validate(response.json()).detail
        except (ValueError, ValidationError):
            return response.reason_phrase or f"HTTP {response.status_code}"

    @staticmethod
    def _conflict_from(response: httpx.Response) -> RemoteConflictError:
        """Build a RemoteConflictError from a 404/409/410 response."""
        try:
            body = ConflictBody.model_validate(response.json())
        except (ValueError, ValidationError):
            body = ConflictBody(detail=response.reason_phrase or "Conflict")

        if response.status_code == 404:
            body.current = None
        deleted = body.deleted or response.status_code == 410
        logger.debug(
            "Remote conflict (%d): %s, remote version=%s, deleted=%s",
            response.status_code,
            body.detail,
            body.version,
            deleted,
        )
        return RemoteConflictError(
            body.detail,
            remote_payload=None if deleted else body.current,
            remote_version=body.version,
            remote_updated_at=body.updated_at,
            deleted=deleted,
            status_code=response.status_code,
        )

    @staticmethod
    def _to_result(response: httpx.Response) -> RemoteResult:
        if response.status_code == 204 or not response.content:
            return RemoteResult()
        try:
            entity = EntityResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise PermanentRemoteError(
                f"Malformed response body: {e}", response.status_code
            ) from e
        return RemoteResult(
            entity=entity.model_dump(exclude_unset=True),
            version=entity.version,
        )
