"""
Relationship Orchestrator.

Manages typed, directed edges between entities, including the two
high-traffic patterns: organization membership (MEMBER_OF) and role
assignment (HAS_ROLE).

Invariants:
    - Both endpoints exist in the caller's organization before any write
    - QUERY returns active edges unless include_inactive is set
    - UPSERT merges on (from, to, type); BULK_UPSERT replaces per source

How to change safely:
    - Keep replace_edges separate from upsert; callers rely on the
      difference between "exactly this set" and "add this edge"
"""

from __future__ import annotations

import logging
from typing import Any

from ..schema.types import HAS_ROLE, MEMBER_OF
from .base import (
    CallContext,
    Orchestrator,
    flag_arg,
    mapping_arg,
    optional_date,
    optional_str,
    page_args,
)
from .errors import (
    ENTITY_NOT_FOUND,
    INVALID_STATUS,
    PAIR_MISSING_ENDPOINT,
    PAYLOAD_INVALID,
    RELATIONSHIP_NOT_FOUND,
    NotFoundError,
    ValidationError,
    require_str,
)

logger = logging.getLogger(__name__)

MEMBERSHIP_SMART_CODE = "HERA.UNIVERSAL.REL.MEMBER_OF.v1"
ROLE_SMART_CODE = "HERA.UNIVERSAL.REL.HAS_ROLE.v1"

_STATUS_ACTIVE = {"active": True, "inactive": False}


def _is_active(payload: dict[str, Any]) -> bool:
    """Read the active flag from ``status`` ("active"/"inactive") or ``is_active``."""
    if "status" in payload and payload["status"] is not None:
        status = payload["status"]
        if status not in _STATUS_ACTIVE:
            raise ValidationError(
                INVALID_STATUS,
                f"relationship status must be active or inactive, got {status!r}",
            )
        return _STATUS_ACTIVE[status]
    return flag_arg(payload, "is_active", True)


def _endpoint(pair: dict[str, Any], key: str, index: int | None = None) -> str:
    value = pair.get(key)
    if not isinstance(value, str) or not value.strip():
        where = f"pairs[{index}].{key}" if index is not None else key
        raise ValidationError(PAIR_MISSING_ENDPOINT, f"{where} is required")
    return value


class RelationshipOrchestrator(Orchestrator):
    """UPSERT / BULK_UPSERT / READ / QUERY / DELETE over core_relationships."""

    resource = "relationships"
    actions = {
        "UPSERT": "upsert",
        "CREATE": "upsert",
        "BULK_UPSERT": "replace_edges",
        "READ": "read",
        "QUERY": "query",
        "DELETE": "delete",
        "ASSIGN_MEMBERSHIP": "assign_membership",
        "SET_ROLES": "set_roles",
    }
    write_actions = frozenset(
        {"UPSERT", "CREATE", "BULK_UPSERT", "DELETE", "ASSIGN_MEMBERSHIP", "SET_ROLES"}
    )

    async def _require_entities(self, ctx: CallContext, entity_ids: list[str]) -> None:
        found = await self.store.existing_entity_ids(ctx.organization_id, entity_ids)
        missing = [entity_id for entity_id in dict.fromkeys(entity_ids) if entity_id not in found]
        if missing:
            raise NotFoundError(ENTITY_NOT_FOUND, f"entity {missing[0]} not found")

    async def upsert(self, ctx: CallContext, payload: dict[str, Any]) -> dict[str, Any]:
        """Create the edge, or update data and active flag of the existing one."""
        relationship_type = require_str(payload, "relationship_type")
        from_id = _endpoint(payload, "from_entity_id")
        to_id = _endpoint(payload, "to_entity_id")
        smart_code = self.smart_codes.check(payload.get("smart_code"))
        data = mapping_arg(payload, "relationship_data")
        is_active = _is_active(payload)
        strength = payload.get("relationship_strength", 1.0)
        if isinstance(strength, bool) or not isinstance(strength, (int, float)):
            raise ValidationError(PAYLOAD_INVALID, "relationship_strength must be a number")
        await self._require_entities(ctx, [from_id, to_id])

        edge = await self.store.upsert_relationship(
            ctx.organization_id,
            relationship_type,
            from_id,
            to_id,
            smart_code,
            relationship_data=data,
            is_active=is_active,
            actor=ctx.actor_user_id,
            relationship_direction=optional_str(payload, "relationship_direction") or "forward",
            relationship_strength=float(strength),
            effective_date=optional_date(payload, "effective_date"),
        )
        return {"relationship_id": edge.id, "data": edge.to_dict()}

    async def replace_edges(self, ctx: CallContext, payload: dict[str, Any]) -> dict[str, Any]:
        """Replace, for each distinct source in pairs, its full edge set of one type.

        Not a merge: BULK_UPSERT(A->X) then BULK_UPSERT(A->Y) leaves only A->Y.
        """
        relationship_type = require_str(payload, "relationship_type")
        smart_code = self.smart_codes.check(payload.get("smart_code"))
        is_active = _is_active(payload)
        raw_pairs = payload.get("pairs")
        if not isinstance(raw_pairs, list):
            raise ValidationError(PAYLOAD_INVALID, "pairs must be a list")

        pairs: list[tuple[str, str, dict[str, Any]]] = []
        for index, pair in enumerate(raw_pairs):
            if not isinstance(pair, dict):
                raise ValidationError(PAIR_MISSING_ENDPOINT, f"pairs[{index}] must be an object")
            from_id = _endpoint(pair, "from_entity_id", index)
            to_id = _endpoint(pair, "to_entity_id", index)
            data = mapping_arg(pair, "relationship_data") or mapping_arg(pair, "metadata")
            pairs.append((from_id, to_id, data))

        await self._require_entities(ctx, [p[0] for p in pairs] + [p[1] for p in pairs])

        inserted, removed = await self.store.replace_relationships(
            ctx.organization_id,
            relationship_type,
            smart_code,
            pairs,
            is_active=is_active,
            actor=ctx.actor_user_id,
        )
        return {
            "data": {
                "items": [edge.to_dict() for edge in inserted],
                "inserted": len(inserted),
                "removed": removed,
            }
        }

    async def read(self, ctx: CallContext, payload: dict[str, Any]) -> dict[str, Any]:
        relationship_id = require_str(payload, "relationship_id")
        edge = await self.store.get_relationship(ctx.organization_id, relationship_id)
        if edge is None:
            raise NotFoundError(RELATIONSHIP_NOT_FOUND, f"relationship {relationship_id} not found")
        return {"relationship_id": relationship_id, "data": edge.to_dict()}

    async def query(self, ctx: CallContext, payload: dict[str, Any]) -> dict[str, Any]:
        limit, offset = page_args(payload)
        edges = await self.store.query_relationships(
            ctx.organization_id,
            from_entity_id=optional_str(payload, "from_entity_id"),
            to_entity_id=optional_str(payload, "to_entity_id"),
            relationship_type=optional_str(payload, "relationship_type"),
            include_inactive=flag_arg(payload, "include_inactive", False),
            limit=limit,
            offset=offset,
        )
        items = [edge.to_dict() for edge in edges]
        return {"data": {"items": items, "limit": limit, "offset": offset}}

    async def delete(self, ctx: CallContext, payload: dict[str, Any]) -> dict[str, Any]:
        relationship_id = require_str(payload, "relationship_id")
        if not await self.store.delete_relationship(ctx.organization_id, relationship_id):
            raise NotFoundError(RELATIONSHIP_NOT_FOUND, f"relationship {relationship_id} not found")
        return {"relationship_id": relationship_id, "deleted": True}

    async def assign_membership(self, ctx: CallContext, payload: dict[str, Any]) -> dict[str, Any]:
        """Make a user a member of one organization entity.

        Any other active MEMBER_OF edge from the user is deactivated so the
        user keeps at most one active membership.
        """
        user_id = _endpoint(payload, "user_entity_id")
        org_entity_id = _endpoint(payload, "organization_entity_id")
        smart_code = self.smart_codes.check(payload.get("smart_code") or MEMBERSHIP_SMART_CODE)
        data = mapping_arg(payload, "relationship_data")
        if payload.get("role") is not None:
            data = {**data, "role": payload["role"]}
        await self._require_entities(ctx, [user_id, org_entity_id])

        edge, deactivated = await self.store.upsert_exclusive_relationship(
            ctx.organization_id,
            MEMBER_OF,
            user_id,
            org_entity_id,
            smart_code,
            relationship_data=data,
            actor=ctx.actor_user_id,
        )
        logger.info(
            "Membership assigned",
            extra={
                "organization_id": ctx.organization_id,
                "user_entity_id": user_id,
                "deactivated": deactivated,
            },
        )
        return {"relationship_id": edge.id, "deactivated": deactivated, "data": edge.to_dict()}

    async def set_roles(self, ctx: CallContext, payload: dict[str, Any]) -> dict[str, Any]:
        """Replace a user's HAS_ROLE set; the first role is marked primary."""
        user_id = _endpoint(payload, "user_entity_id")
        role_ids = payload.get("role_entity_ids")
        if not isinstance(role_ids, list) or not all(isinstance(r, str) and r for r in role_ids):
            raise ValidationError(PAYLOAD_INVALID, "role_entity_ids must be a list of ids")
        role_ids = list(dict.fromkeys(role_ids))
        smart_code = self.smart_codes.check(payload.get("smart_code") or ROLE_SMART_CODE)
        await self._require_entities(ctx, [user_id, *role_ids])

        pairs = [
            (user_id, role_id, {"is_primary": index == 0})
            for index, role_id in enumerate(role_ids)
        ]
        inserted, removed = await self.store.replace_relationships(
            ctx.organization_id,
            HAS_ROLE,
            smart_code,
            pairs,
            actor=ctx.actor_user_id,
            sources=[user_id],
        )
        return {
            "user_entity_id": user_id,
            "data": {
                "items": [edge.to_dict() for edge in inserted],
                "inserted": len(inserted),
                "removed": removed,
            },
        }
