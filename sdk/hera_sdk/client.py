"""
HERA Client for Python SDK.

This module provides the main client interface:
- HeraClient: HTTP connection to a HERA server

Example:
    >>> async with HeraClient("http://localhost:8080", organization_id="org-1",
    ...                       actor_user_id="user-1") as hera:
    ...     created = await hera.create_entity(
    ...         "customer", "Acme", "HERA.CRM.CUSTOMER.ENTITY.PROFILE.v1"
    ...     )
    ...     entity_id = created["entity_id"]

Invariants:
    - Every call carries organization_id (per call or from the client default)
    - A success:false envelope always raises a HeraApiError subclass
    - Convenience methods return the success envelope unchanged
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from .errors import ConnectionError, HeraApiError, error_from_envelope
from .settings import ClientSettings

logger = logging.getLogger(__name__)


class HeraClient:
    """Client for a HERA server.

    Wraps the RPC envelope ``{action, actor_user_id, organization_id, payload}``
    and the per-resource endpoints behind plain async methods.

    Example:
        >>> async with HeraClient(organization_id="org-1", actor_user_id="u-1") as hera:
        ...     page = await hera.query_entities({"entity_type": "customer"})
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        organization_id: str | None = None,
        actor_user_id: str | None = None,
        timeout: float | None = None,
        settings: ClientSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize client.

        Args:
            base_url: Server URL (defaults to HERA_BASE_URL)
            organization_id: Default organization for calls
            actor_user_id: Default actor for write calls
            timeout: Request timeout in seconds
            settings: Explicit settings instead of the environment
            transport: Optional httpx transport (e.g. ASGITransport in tests)
        """
        settings = settings or ClientSettings()
        self.base_url = (base_url or settings.base_url).rstrip("/")
        self.organization_id = organization_id or settings.organization_id
        self.actor_user_id = actor_user_id or settings.actor_user_id
        self.timeout = timeout if timeout is not None else settings.timeout
        self._session_header = settings.session_header
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    async def connect(self) -> None:
        """Open the underlying HTTP client."""
        if self._http is not None:
            return
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    async def __aenter__(self) -> HeraClient:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def _request(
        self, method: str, path: str, json_body: Any = None, headers: dict[str, str] | None = None
    ) -> httpx.Response:
        if self._http is None:
            await self.connect()
        assert self._http is not None
        try:
            return await self._http.request(method, path, json=json_body, headers=headers)
        except httpx.TransportError as e:
            raise ConnectionError(f"Failed to reach server: {e}", base_url=self.base_url) from e

    async def health(self) -> dict[str, Any]:
        """Check server health.

        Returns:
            Health payload with status, service and version
        """
        response = await self._request("GET", "/health")
        response.raise_for_status()
        return response.json()

    async def call(
        self,
        resource: str,
        action: str,
        payload: dict[str, Any] | None = None,
        *,
        organization_id: str | None = None,
        actor_user_id: str | None = None,
    ) -> dict[str, Any]:
        """Send one RPC envelope.

        Args:
            resource: Action family (entities, relationships, transactions, ...)
            action: Action name, e.g. CREATE
            payload: Action payload
            organization_id: Envelope organization (the session header keeps the
                client organization, so a mismatch is refused server-side)
            actor_user_id: Overrides the client default

        Returns:
            The success envelope

        Raises:
            HeraApiError: Subclass matching the failure envelope
            ConnectionError: If the server cannot be reached
        """
        organization_id = organization_id or self.organization_id
        envelope = {
            "action": action,
            "actor_user_id": actor_user_id or self.actor_user_id,
            "organization_id": organization_id,
            "payload": payload or {},
        }
        headers = {}
        if self._session_header and self.organization_id:
            headers[self._session_header] = self.organization_id

        response = await self._request("POST", f"/v1/rpc/{resource}", envelope, headers)
        try:
            body = response.json()
        except ValueError as e:
            raise HeraApiError(
                f"Malformed response (HTTP {response.status_code})",
                status_code=response.status_code,
            ) from e

        if not body.get("success"):
            error = error_from_envelope(response.status_code, body)
            logger.debug(
                "RPC call failed",
                extra={"resource": resource, "action": action, "code": error.code},
            )
            raise error
        return body

    async def create_entity(
        self,
        entity_type: str,
        entity_name: str,
        smart_code: str,
        *,
        entity_code: str | None = None,
        dynamic: list[dict[str, Any]] | dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
        **fields: Any,
    ) -> dict[str, Any]:
        """Create an entity with optional dynamic fields in one unit.

        Example:
            >>> await hera.create_entity(
            ...     "customer", "Acme", "HERA.CRM.CUSTOMER.ENTITY.PROFILE.v1",
            ...     dynamic={"credit_limit": {"field_type": "number", "value": 5000}},
            ... )
        """
        payload: dict[str, Any] = {
            "entity_type": entity_type,
            "entity_name": entity_name,
            "smart_code": smart_code,
            **fields,
        }
        if entity_code is not None:
            payload["entity_code"] = entity_code
        if dynamic is not None:
            payload["dynamic"] = dynamic
        if metadata is not None:
            payload["metadata"] = metadata
        return await self.call("entities", "CREATE", payload)

    async def read_entity(self, entity_id: str, include_dynamic: bool = True) -> dict[str, Any]:
        return await self.call(
            "entities", "READ", {"entity_id": entity_id, "include_dynamic": include_dynamic}
        )

    async def update_entity(self, entity_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        return await self.call("entities", "UPDATE", {"entity_id": entity_id, "patch": patch})

    async def query_entities(
        self,
        filters: dict[str, Any] | None = None,
        *,
        limit: int | None = None,
        offset: int | None = None,
        include_dynamic: bool = False,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"filters": filters or {}, "include_dynamic": include_dynamic}
        if limit is not None:
            payload["limit"] = limit
        if offset is not None:
            payload["offset"] = offset
        return await self.call("entities", "QUERY", payload)

    async def delete_entity(self, entity_id: str) -> dict[str, Any]:
        return await self.call("entities", "DELETE", {"entity_id": entity_id})

    async def set_dynamic_fields(
        self,
        entity_id: str,
        fields: list[dict[str, Any]] | dict[str, Any],
        smart_code: str | None = None,
    ) -> dict[str, Any]:
        """Upsert several typed fields on one entity atomically."""
        payload: dict[str, Any] = {"entity_id": entity_id, "fields": fields}
        if smart_code is not None:
            payload["smart_code"] = smart_code
        return await self.call("dynamic-data", "BATCH", payload)

    async def read_dynamic_fields(
        self, entity_id: str, field_names: list[str] | None = None
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"entity_id": entity_id}
        if field_names is not None:
            payload["field_names"] = field_names
        return await self.call("dynamic-data", "READ", payload)

    async def upsert_relationship(
        self,
        from_entity_id: str,
        to_entity_id: str,
        relationship_type: str,
        smart_code: str,
        **fields: Any,
    ) -> dict[str, Any]:
        return await self.call(
            "relationships",
            "UPSERT",
            {
                "from_entity_id": from_entity_id,
                "to_entity_id": to_entity_id,
                "relationship_type": relationship_type,
                "smart_code": smart_code,
                **fields,
            },
        )

    async def replace_relationships(
        self,
        relationship_type: str,
        smart_code: str,
        pairs: list[dict[str, Any]],
    ) -> dict[str, Any]:
        """Make ``pairs`` the complete set of edges of this type for their sources.

        Example:
            >>> await hera.replace_relationships(
            ...     "ASSIGNED_TO", "HERA.UNIVERSAL.REL.ASSIGNED.v1",
            ...     [{"from_entity_id": a, "to_entity_id": y}],
            ... )
        """
        return await self.call(
            "relationships",
            "BULK_UPSERT",
            {"relationship_type": relationship_type, "smart_code": smart_code, "pairs": pairs},
        )

    async def query_relationships(self, **filters: Any) -> dict[str, Any]:
        return await self.call("relationships", "QUERY", filters)

    async def create_transaction(
        self, header: dict[str, Any], lines: list[dict[str, Any]] | None = None
    ) -> dict[str, Any]:
        """Create a transaction header and its lines atomically.

        GL transactions must balance; an external_reference makes the call
        idempotent (a repeat returns ``idempotent_replay: True``).
        """
        return await self.call("transactions", "CREATE", {"header": header, "lines": lines or []})

    async def read_transaction(
        self,
        transaction_id: str,
        *,
        include_lines: bool = True,
        include_deleted: bool = False,
    ) -> dict[str, Any]:
        return await self.call(
            "transactions",
            "READ",
            {
                "transaction_id": transaction_id,
                "include_lines": include_lines,
                "include_deleted": include_deleted,
            },
        )

    async def query_transactions(
        self,
        filters: dict[str, Any] | None = None,
        *,
        limit: int | None = None,
        offset: int | None = None,
        include_lines: bool = False,
        include_deleted: bool = False,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "filters": filters or {},
            "include_lines": include_lines,
            "include_deleted": include_deleted,
        }
        if limit is not None:
            payload["limit"] = limit
        if offset is not None:
            payload["offset"] = offset
        return await self.call("transactions", "QUERY", payload)

    async def void_transaction(self, transaction_id: str, reason: str) -> dict[str, Any]:
        return await self.call(
            "transactions", "VOID", {"transaction_id": transaction_id, "reason": reason}
        )

    async def reverse_transaction(
        self, transaction_id: str, reason: str | None = None
    ) -> dict[str, Any]:
        return await self.call(
            "transactions", "REVERSE", {"transaction_id": transaction_id, "reason": reason}
        )

    async def validate_transaction(
        self,
        transaction_id: str | None = None,
        draft: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Check balance for a stored transaction or an unsaved draft."""
        if transaction_id is not None:
            return await self.call("transactions", "VALIDATE", {"transaction_id": transaction_id})
        return await self.call("transactions", "VALIDATE", {"draft": draft or {}})
