"""
Dynamic Data Batch Writer.

Upserts N typed fields on one entity in a single unit of work. Each field
spec names its field_type and carries exactly one value, either as
``value`` or as the matching ``field_value_<type>`` key:

    {"field_name": "phone", "field_type": "text", "field_value_text": "555-0100"}
    {"field_name": "price", "field_type": "number", "value": 45}

Invariants:
    - Conflict key is (organization_id, entity_id, field_name); last write wins
    - A field is never partially typed: the value must fit field_type and no
      other value column may be populated
    - The whole batch is rejected before any write if one field is invalid
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from ..schema.types import FieldType, FieldValue, VALUE_COLUMNS, make_field_value
from ..store import DynamicField, DynamicFieldInput
from .base import CallContext, Orchestrator
from .errors import (
    ENTITY_NOT_FOUND,
    FIELD_NOT_FOUND,
    FIELD_TYPE_INVALID,
    FIELD_TYPE_VALUE_MISMATCH,
    PAYLOAD_INVALID,
    NotFoundError,
    ValidationError,
    require,
    require_str,
)


def parse_field_value(spec: dict[str, Any], field_name: str) -> FieldValue:
    """Build a typed value from one field spec.

    Raises:
        ValidationError: FIELD_TYPE_INVALID or FIELD_TYPE_VALUE_MISMATCH
    """
    raw_type = spec.get("field_type", spec.get("type"))
    try:
        field_type = FieldType.from_str(raw_type)
    except ValueError:
        raise ValidationError(
            FIELD_TYPE_INVALID,
            f"{field_name}: unknown field_type {raw_type!r}",
            hint=f"Use one of: {', '.join(kind.value for kind in FieldType)}",
        ) from None

    populated = [column for column in VALUE_COLUMNS if spec.get(column) is not None]
    if "value" in spec and spec["value"] is not None:
        if populated:
            raise ValidationError(
                FIELD_TYPE_VALUE_MISMATCH,
                f"{field_name}: both value and {', '.join(populated)} given",
            )
        raw = spec["value"]
    else:
        stray = [column for column in populated if column != field_type.column]
        if stray:
            raise ValidationError(
                FIELD_TYPE_VALUE_MISMATCH,
                f"{field_name}: field_type {field_type.value} but {', '.join(stray)} is populated",
                hint=f"Populate only {field_type.column}",
            )
        if field_type.column not in populated:
            raise ValidationError(
                FIELD_TYPE_VALUE_MISMATCH,
                f"{field_name}: field_type {field_type.value} requires {field_type.column}",
            )
        raw = spec[field_type.column]

    try:
        return make_field_value(field_type, raw)
    except ValueError as e:
        raise ValidationError(FIELD_TYPE_VALUE_MISMATCH, f"{field_name}: {e}") from None


def parse_field_specs(
    raw: Any,
    default_smart_code: str | None,
    orchestrator: Orchestrator,
) -> list[DynamicFieldInput]:
    """Parse a list of field specs or a {field_name: spec} mapping."""
    if raw is None:
        return []
    specs: Iterable[dict[str, Any]]
    if isinstance(raw, dict):
        specs = []
        for name, spec in raw.items():
            if not isinstance(spec, dict):
                raise ValidationError(PAYLOAD_INVALID, f"dynamic field {name!r} must be an object")
            specs.append({**spec, "field_name": name})
    elif isinstance(raw, list):
        specs = raw
    else:
        raise ValidationError(PAYLOAD_INVALID, "fields must be a list or an object")

    parsed: dict[str, DynamicFieldInput] = {}
    for spec in specs:
        if not isinstance(spec, dict):
            raise ValidationError(PAYLOAD_INVALID, "each field must be an object")
        name = require_str(spec, "field_name")
        smart_code = spec.get("smart_code") or default_smart_code
        orchestrator.smart_codes.check(smart_code, f"fields.{name}.smart_code")
        # Later specs for the same name win, matching the storage conflict rule
        parsed[name] = DynamicFieldInput(
            field_name=name,
            value=parse_field_value(spec, name),
            smart_code=smart_code,
        )
    return list(parsed.values())


def flatten_fields(fields: Iterable[DynamicField]) -> dict[str, Any]:
    """{field_name: plain value} for one entity."""
    return {item.field_name: item.value.value for item in fields}


class DynamicDataOrchestrator(Orchestrator):
    """BATCH / READ / DELETE over core_dynamic_data."""

    resource = "dynamic-data"
    actions = {
        "BATCH": "batch",
        "READ": "read",
        "DELETE": "delete",
    }
    write_actions = frozenset({"BATCH", "DELETE"})

    async def _require_entity(self, ctx: CallContext, entity_id: str) -> None:
        if await self.store.get_entity(ctx.organization_id, entity_id) is None:
            raise NotFoundError(ENTITY_NOT_FOUND, f"entity {entity_id} not found")

    async def batch(self, ctx: CallContext, payload: dict[str, Any]) -> dict[str, Any]:
        entity_id = require_str(payload, "entity_id")
        default_smart_code = payload.get("smart_code")
        fields = parse_field_specs(require(payload, "fields"), default_smart_code, self)
        await self._require_entity(ctx, entity_id)

        written = await self.store.upsert_dynamic_fields(
            ctx.organization_id, entity_id, fields, ctx.actor_user_id
        )
        return {
            "entity_id": entity_id,
            "data": {"items": [item.to_dict() for item in written], "count": len(written)},
        }

    async def read(self, ctx: CallContext, payload: dict[str, Any]) -> dict[str, Any]:
        entity_id = require_str(payload, "entity_id")
        field_names = payload.get("field_names")
        if field_names is not None and not isinstance(field_names, list):
            raise ValidationError(PAYLOAD_INVALID, "field_names must be a list")
        await self._require_entity(ctx, entity_id)

        fields = await self.store.get_dynamic_fields(ctx.organization_id, [entity_id], field_names)
        return {
            "entity_id": entity_id,
            "data": {
                "items": [item.to_dict() for item in fields],
                "values": flatten_fields(fields),
            },
        }

    async def delete(self, ctx: CallContext, payload: dict[str, Any]) -> dict[str, Any]:
        entity_id = require_str(payload, "entity_id")
        field_name = require_str(payload, "field_name")
        await self._require_entity(ctx, entity_id)

        if not await self.store.delete_dynamic_field(ctx.organization_id, entity_id, field_name):
            raise NotFoundError(FIELD_NOT_FOUND, f"field {field_name!r} not found")
        return {"entity_id": entity_id, "field_name": field_name, "deleted": True}
