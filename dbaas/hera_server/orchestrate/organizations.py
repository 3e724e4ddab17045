"""
Organization registry.

Tenant onboarding and lookup. Tenants are registered from the platform
organization; every other organization can only read its own row.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from ..schema.types import PLATFORM_ORGANIZATION_ID
from ..store import DuplicateKeyError
from .base import CallContext, Orchestrator, mapping_arg
from .errors import (
    ORG_DUPLICATE,
    ORG_MISMATCH,
    ORG_NOT_FOUND,
    PAYLOAD_INVALID,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
    require_str,
)

logger = logging.getLogger(__name__)


class OrganizationOrchestrator(Orchestrator):
    """CREATE / READ over core_organizations."""

    resource = "organizations"
    actions = {
        "CREATE": "create",
        "READ": "read",
    }
    write_actions = frozenset({"CREATE"})

    async def handle(
        self, ctx: CallContext, action: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        # CREATE carries the new tenant's id in the payload, so the generic
        # payload organization check does not apply to it.
        if action == "CREATE":
            return await self.create(ctx, payload)
        return await super().handle(ctx, action, payload)

    async def create(self, ctx: CallContext, payload: dict[str, Any]) -> dict[str, Any]:
        if ctx.organization_id != PLATFORM_ORGANIZATION_ID:
            raise AuthorizationError(
                ORG_MISMATCH,
                "organizations are registered from the platform organization",
            )
        name = require_str(payload, "organization_name")
        code = payload.get("organization_code")
        if code is not None and not isinstance(code, str):
            raise ValidationError(PAYLOAD_INVALID, "organization_code must be a string")
        organization_id = payload.get("organization_id") or str(uuid.uuid4())

        try:
            org = await self.store.create_organization(
                organization_id,
                name,
                organization_code=code,
                metadata=mapping_arg(payload, "metadata"),
            )
        except DuplicateKeyError:
            raise ConflictError(
                ORG_DUPLICATE, "organization id or organization_code already exists"
            ) from None

        logger.info(
            "Organization registered",
            extra={"organization_id": org.id, "actor_user_id": ctx.actor_user_id},
        )
        return {"organization_id": org.id, "data": org.to_dict()}

    async def read(self, ctx: CallContext, payload: dict[str, Any]) -> dict[str, Any]:
        org = await self.store.get_organization(ctx.organization_id)
        if org is None:
            raise NotFoundError(ORG_NOT_FOUND, f"organization {ctx.organization_id} not found")
        return {"organization_id": org.id, "data": org.to_dict()}
