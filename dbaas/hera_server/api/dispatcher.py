"""
RPC dispatcher.

Turns a raw request envelope into an orchestrator call and renders the
response envelope:

    success: {"success": true, "action": <ACTION>, ...action fields}
    failure: {"success": false, "error": <CODE>, "error_detail"?, "error_hint"?}

The dispatcher is transport-agnostic: the HTTP server and the tests call
dispatch() directly and get back the envelope with the HTTP status code
the error kind maps to.

Invariants:
    - organization_id is required for every action (ORG_REQUIRED)
    - A session organization that differs from the envelope is ORG_MISMATCH
    - Write actions require actor_user_id (ACTOR_REQUIRED)
    - Unexpected exceptions never leak internals (INTERNAL_ERROR)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import pydantic

from ..orchestrate import (
    CallContext,
    DynamicDataOrchestrator,
    EntityOrchestrator,
    HeraError,
    Orchestrator,
    OrganizationOrchestrator,
    RelationshipOrchestrator,
    SmartCodePolicy,
    TransactionOrchestrator,
)
from ..orchestrate.errors import (
    ACTOR_REQUIRED,
    INTERNAL_ERROR,
    ORG_MISMATCH,
    ORG_REQUIRED,
    PAYLOAD_INVALID,
    UNKNOWN_ACTION,
    AuthorizationError,
    NotFoundError,
    ValidationError,
)
from ..store import UniversalStore
from .models import RpcRequest

logger = logging.getLogger(__name__)


@dataclass
class RpcResult:
    """Rendered envelope plus the transport status it maps to."""

    status_code: int
    body: dict[str, Any]

    @property
    def success(self) -> bool:
        return bool(self.body.get("success"))


class RpcDispatcher:
    """Routes envelopes to orchestrators by resource family.

    Example:
        >>> dispatcher = RpcDispatcher(store)
        >>> result = await dispatcher.dispatch("entities", {
        ...     "action": "READ",
        ...     "organization_id": org_id,
        ...     "payload": {"entity_id": entity_id},
        ... })
        >>> result.body["success"]
        True
    """

    def __init__(self, store: UniversalStore, smart_codes: SmartCodePolicy | None = None) -> None:
        self.store = store
        policy = smart_codes or SmartCodePolicy()
        orchestrators: list[Orchestrator] = [
            EntityOrchestrator(store, policy),
            RelationshipOrchestrator(store, policy),
            TransactionOrchestrator(store, policy),
            DynamicDataOrchestrator(store, policy),
            OrganizationOrchestrator(store, policy),
        ]
        self.orchestrators = {o.resource: o for o in orchestrators}

    @property
    def resources(self) -> list[str]:
        return sorted(self.orchestrators)

    async def dispatch(
        self,
        resource: str,
        raw: Any,
        session_organization_id: str | None = None,
    ) -> RpcResult:
        """Execute one envelope.

        Args:
            resource: Action family (entities, relationships, transactions, ...)
            raw: Request envelope as decoded JSON
            session_organization_id: Organization bound to the caller's session

        Returns:
            RpcResult with the response envelope; never raises for request errors
        """
        action = raw.get("action") if isinstance(raw, dict) else None
        try:
            request = self._parse(raw)
            action = request.action
            orchestrator = self._route(resource, action)
            ctx = self._context(orchestrator, request, session_organization_id)
            result = await orchestrator.handle(ctx, action, request.payload)
        except HeraError as e:
            log = logger.warning if e.status_code >= 500 else logger.info
            log(
                "RPC failed",
                extra={
                    "resource": resource,
                    "rpc_action": action,
                    "error": e.code,
                    "error_detail": e.detail,
                },
            )
            return RpcResult(e.status_code, e.to_envelope())
        except Exception:
            logger.exception(
                "RPC raised unexpectedly",
                extra={"resource": resource, "rpc_action": action},
            )
            return RpcResult(
                500,
                {
                    "success": False,
                    "error": INTERNAL_ERROR,
                    "error_detail": "internal error",
                },
            )

        logger.debug(
            "RPC succeeded",
            extra={
                "resource": resource,
                "rpc_action": action,
                "organization_id": ctx.organization_id,
            },
        )
        return RpcResult(200, {"success": True, "action": action, **result})

    @staticmethod
    def _parse(raw: Any) -> RpcRequest:
        try:
            return RpcRequest.model_validate(raw)
        except pydantic.ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'envelope'}: {err['msg']}"
                for err in e.errors()
            )
            raise ValidationError(
                PAYLOAD_INVALID,
                f"invalid envelope: {problems}",
                hint="Send {action, actor_user_id, organization_id, payload}",
            ) from None

    def _route(self, resource: str, action: str) -> Orchestrator:
        orchestrator = self.orchestrators.get(resource)
        if orchestrator is None:
            raise NotFoundError(UNKNOWN_ACTION, f"unknown resource {resource!r}")
        if not orchestrator.supports(action):
            raise ValidationError(
                UNKNOWN_ACTION,
                f"{resource} does not support action {action!r}",
                hint=f"Supported actions: {', '.join(sorted(orchestrator.actions))}",
            )
        return orchestrator

    @staticmethod
    def _context(
        orchestrator: Orchestrator,
        request: RpcRequest,
        session_organization_id: str | None,
    ) -> CallContext:
        if request.organization_id is None:
            raise ValidationError(ORG_REQUIRED, "organization_id is required")
        session = session_organization_id
        if session is not None and session != request.organization_id:
            raise AuthorizationError(
                ORG_MISMATCH,
                "organization_id does not match the session organization",
            )
        if orchestrator.is_write(request.action) and request.actor_user_id is None:
            raise ValidationError(
                ACTOR_REQUIRED,
                f"actor_user_id is required for {request.action}",
            )
        return CallContext(
            organization_id=request.organization_id,
            actor_user_id=request.actor_user_id,
        )
