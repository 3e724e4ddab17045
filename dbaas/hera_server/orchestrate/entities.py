"""
Entity CRUD Orchestrator.

Single entry point for creating, reading, updating, deleting and querying
entities together with their dynamic data, scoped to one organization per
call.

Invariants:
    - Cross-tenant reads raise ENTITY_NOT_FOUND, identical to absence
    - Writes touch core_entities and core_dynamic_data only
    - A dynamic patch is written in the same unit of work as the entity columns
    - Hard delete is refused while anything references the entity
    - entity_code is unique per (organization, entity_type) when present

How to change safely:
    - New patchable columns must be added to PATCHABLE_FIELDS explicitly
    - include_relationships is read-only; edges are written by the
      relationship orchestrator
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from ..schema.types import EntityStatus
from ..store import DuplicateKeyError, Entity, Relationship
from .base import (
    CallContext,
    Orchestrator,
    check_filters,
    flag_arg,
    mapping_arg,
    optional_str,
    page_args,
)
from .dynamic_data import flatten_fields, parse_field_specs
from .errors import (
    ENTITY_CODE_DUPLICATE,
    ENTITY_HAS_DEPENDENCIES,
    ENTITY_NAME_REQUIRED,
    ENTITY_NOT_FOUND,
    ENTITY_TYPE_REQUIRED,
    INVALID_STATUS,
    PATCH_FIELD_NOT_ALLOWED,
    ConflictError,
    NotFoundError,
    ValidationError,
    require_str,
)

logger = logging.getLogger(__name__)

PATCHABLE_FIELDS = frozenset(
    {"entity_type", "entity_name", "entity_code", "smart_code", "status", "metadata", "dynamic"}
)
QUERY_FILTERS = frozenset({"entity_type", "status", "smart_code_prefix", "search"})


def _status(value: Any) -> str:
    try:
        return EntityStatus(value).value
    except ValueError:
        raise ValidationError(
            INVALID_STATUS,
            f"unknown entity status {value!r}",
            hint=f"Use one of: {', '.join(s.value for s in EntityStatus)}",
        ) from None


def _not_found(entity_id: str) -> NotFoundError:
    return NotFoundError(ENTITY_NOT_FOUND, f"entity {entity_id} not found")


def _code_conflict(entity_type: str, entity_code: str | None) -> ConflictError:
    return ConflictError(
        ENTITY_CODE_DUPLICATE,
        f"entity_code {entity_code!r} already exists for entity_type {entity_type}",
        hint="Read the existing entity or choose another entity_code",
    )


def _group_by_type(edges: list[Relationship]) -> dict[str, list[dict[str, Any]]]:
    """{relationship_type: [edge, ...]} for the outgoing edges of one entity."""
    grouped: dict[str, list[dict[str, Any]]] = {}
    for edge in edges:
        grouped.setdefault(edge.relationship_type, []).append(edge.to_dict())
    return grouped


class EntityOrchestrator(Orchestrator):
    """CREATE / READ / UPDATE / QUERY / DELETE over core_entities."""

    resource = "entities"
    actions = {
        "CREATE": "create",
        "READ": "read",
        "UPDATE": "update",
        "QUERY": "query",
        "DELETE": "delete",
    }
    write_actions = frozenset({"CREATE", "UPDATE", "DELETE"})

    async def create(self, ctx: CallContext, payload: dict[str, Any]) -> dict[str, Any]:
        """Create an entity and its initial dynamic fields.

        Payload:
            entity_type, entity_name, smart_code (required)
            entity_code, status, metadata, dynamic (optional)
        """
        entity_type = require_str(payload, "entity_type", ENTITY_TYPE_REQUIRED)
        entity_name = require_str(payload, "entity_name", ENTITY_NAME_REQUIRED)
        smart_code = self.smart_codes.check(payload.get("smart_code"))
        entity_code = optional_str(payload, "entity_code")
        status = _status(payload.get("status", EntityStatus.ACTIVE.value))
        metadata = mapping_arg(payload, "metadata")
        fields = parse_field_specs(payload.get("dynamic"), smart_code, self)

        entity_id = str(uuid.uuid4())
        try:
            entity, written = await self.store.create_entity(
                organization_id=ctx.organization_id,
                entity_type=entity_type,
                entity_name=entity_name,
                smart_code=smart_code,
                actor=ctx.actor_user_id,
                entity_id=entity_id,
                entity_code=entity_code,
                status=status,
                metadata=metadata,
                fields=fields,
            )
        except DuplicateKeyError:
            raise _code_conflict(entity_type, entity_code) from None

        logger.info(
            "Entity created",
            extra={
                "organization_id": ctx.organization_id,
                "entity_id": entity_id,
                "entity_type": entity_type,
                "dynamic_fields": len(written),
            },
        )
        data = entity.to_dict()
        data["dynamic"] = flatten_fields(written)
        return {"entity_id": entity_id, "data": data}

    async def read(self, ctx: CallContext, payload: dict[str, Any]) -> dict[str, Any]:
        entity_id = require_str(payload, "entity_id")
        include_dynamic = flag_arg(payload, "include_dynamic", True)
        include_relationships = flag_arg(payload, "include_relationships", False)

        entity = await self.store.get_entity(ctx.organization_id, entity_id)
        if entity is None:
            raise _not_found(entity_id)

        data = entity.to_dict()
        if include_dynamic:
            fields = await self.store.get_dynamic_fields(ctx.organization_id, [entity_id])
            data["dynamic"] = flatten_fields(fields)
        if include_relationships:
            edges = await self.store.get_outgoing_relationships(ctx.organization_id, [entity_id])
            data["relationships"] = _group_by_type(edges[entity_id])
        return {"entity_id": entity_id, "data": data}

    async def update(self, ctx: CallContext, payload: dict[str, Any]) -> dict[str, Any]:
        """Apply a PATCH: only provided fields change, metadata merges.

        ``patch.dynamic`` takes the same field specs as CREATE and is upserted
        in the same unit of work. Field smart codes default to the entity's
        (new) smart code.
        """
        entity_id = require_str(payload, "entity_id")
        patch = mapping_arg(payload, "patch")

        unknown = sorted(set(patch) - PATCHABLE_FIELDS)
        if unknown:
            raise ValidationError(
                PATCH_FIELD_NOT_ALLOWED,
                f"cannot patch: {', '.join(unknown)}",
                hint=f"Patchable fields: {', '.join(sorted(PATCHABLE_FIELDS))}",
            )

        changes: dict[str, Any] = {}
        if "entity_type" in patch:
            changes["entity_type"] = require_str(patch, "entity_type", ENTITY_TYPE_REQUIRED)
        if "entity_name" in patch:
            changes["entity_name"] = require_str(patch, "entity_name", ENTITY_NAME_REQUIRED)
        if "entity_code" in patch:
            changes["entity_code"] = optional_str(patch, "entity_code")
        if "smart_code" in patch:
            changes["smart_code"] = self.smart_codes.check(patch["smart_code"])
        if "status" in patch:
            changes["status"] = _status(patch["status"])
        metadata_patch = mapping_arg(patch, "metadata")

        fields = []
        if patch.get("dynamic") is not None:
            default_smart_code = changes.get("smart_code")
            if default_smart_code is None:
                current = await self.store.get_entity(ctx.organization_id, entity_id)
                if current is None:
                    raise _not_found(entity_id)
                default_smart_code = current.smart_code
            fields = parse_field_specs(patch["dynamic"], default_smart_code, self)

        try:
            entity = await self.store.update_entity(
                ctx.organization_id,
                entity_id,
                changes,
                ctx.actor_user_id,
                metadata_patch=metadata_patch,
                fields=fields,
            )
        except DuplicateKeyError:
            raise _code_conflict(
                changes.get("entity_type", "(unchanged)"), changes.get("entity_code")
            ) from None
        if entity is None:
            raise _not_found(entity_id)

        data = entity.to_dict()
        if fields:
            stored = await self.store.get_dynamic_fields(ctx.organization_id, [entity_id])
            data["dynamic"] = flatten_fields(stored)
        return {"entity_id": entity_id, "data": data}

    async def query(self, ctx: CallContext, payload: dict[str, Any]) -> dict[str, Any]:
        filters = mapping_arg(payload, "filters")
        check_filters(filters, QUERY_FILTERS)
        limit, offset = page_args(payload)
        include_dynamic = flag_arg(payload, "include_dynamic", False)
        include_relationships = flag_arg(payload, "include_relationships", False)
        status = optional_str(filters, "status")
        if status is not None:
            _status(status)

        entities, total = await self.store.query_entities(
            ctx.organization_id,
            entity_type=optional_str(filters, "entity_type"),
            status=status,
            search=optional_str(filters, "search"),
            smart_code_prefix=optional_str(filters, "smart_code_prefix"),
            limit=limit,
            offset=offset,
        )
        items = [entity.to_dict() for entity in entities]
        entity_ids = [entity.id for entity in entities]

        if include_dynamic and entities:
            fields = await self.store.get_dynamic_fields(ctx.organization_id, entity_ids)
            by_entity: dict[str, list[Any]] = {}
            for item in fields:
                by_entity.setdefault(item.entity_id, []).append(item)
            for data in items:
                data["dynamic"] = flatten_fields(by_entity.get(data["id"], []))

        if include_relationships and entities:
            edges = await self.store.get_outgoing_relationships(ctx.organization_id, entity_ids)
            for data in items:
                data["relationships"] = _group_by_type(edges[data["id"]])

        return {"data": {"items": items, "total": total, "limit": limit, "offset": offset}}

    async def delete(self, ctx: CallContext, payload: dict[str, Any]) -> dict[str, Any]:
        """Hard delete an unreferenced entity.

        Referenced entities must be retired by setting status to inactive or
        archived instead.
        """
        entity_id = require_str(payload, "entity_id")
        entity: Entity | None = await self.store.get_entity(ctx.organization_id, entity_id)
        if entity is None:
            raise _not_found(entity_id)

        deps = await self.store.get_entity_dependencies(ctx.organization_id, entity_id)
        if deps.total:
            raise ConflictError(
                ENTITY_HAS_DEPENDENCIES,
                f"entity {entity_id} is referenced by {deps.total} rows",
                hint="Set status to inactive or archived instead of deleting",
                context={"dependencies": deps.to_dict()},
            )

        if not await self.store.delete_entity(ctx.organization_id, entity_id):
            raise _not_found(entity_id)

        logger.info(
            "Entity deleted",
            extra={"organization_id": ctx.organization_id, "entity_id": entity_id},
        )
        return {"entity_id": entity_id, "deleted": True}
