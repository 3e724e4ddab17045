"""
Shared orchestrator plumbing.

Every orchestrator receives a CallContext (who is calling, for which
organization) and an action-specific payload dict, and returns the
action-specific success fields. Failures are raised as HeraError.

Invariants:
    - ctx.organization_id is always set (the dispatcher enforces ORG_REQUIRED)
    - A payload organization_id, when present, must equal ctx.organization_id
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, ClassVar

from ..schema.smart_code import SmartCodeRegistry, validate
from ..schema.types import parse_iso_date
from ..store import UniversalStore
from .errors import (
    ORG_MISMATCH,
    PAYLOAD_INVALID,
    UNKNOWN_ACTION,
    AuthorizationError,
    ValidationError,
    smart_code_invalid,
)

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100
MAX_PAGE_SIZE = 1000


@dataclass(frozen=True)
class CallContext:
    """Caller identity for one RPC call.

    Attributes:
        organization_id: Tenant the call is scoped to
        actor_user_id: Actor stamped on writes
    """

    organization_id: str
    actor_user_id: str | None = None


@dataclass(frozen=True)
class SmartCodePolicy:
    """How orchestrators gate smart codes before writing.

    Attributes:
        strict: Require the HERA prefix
        registry: When set, unknown domains are rejected
    """

    strict: bool = True
    registry: SmartCodeRegistry | None = None

    def check(self, code: Any, where: str = "smart_code") -> str:
        """Return code unchanged or raise SMART_CODE_INVALID."""
        result = validate(code, strict=self.strict, registry=self.registry)
        if not result:
            raise smart_code_invalid(result.reason, where)
        return code


Handler = Callable[[CallContext, dict[str, Any]], Awaitable[dict[str, Any]]]


class Orchestrator:
    """Base class mapping action names to handler coroutines.

    Subclasses fill ``actions`` with ACTION -> method name and list the
    actions that write in ``write_actions``.
    """

    resource: ClassVar[str] = ""
    actions: ClassVar[dict[str, str]] = {}
    write_actions: ClassVar[frozenset[str]] = frozenset()

    def __init__(self, store: UniversalStore, smart_codes: SmartCodePolicy | None = None) -> None:
        self.store = store
        self.smart_codes = smart_codes or SmartCodePolicy()

    def supports(self, action: str) -> bool:
        return action in self.actions

    def is_write(self, action: str) -> bool:
        return action in self.write_actions

    async def handle(
        self, ctx: CallContext, action: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        method_name = self.actions.get(action)
        if method_name is None:
            raise ValidationError(
                UNKNOWN_ACTION,
                f"{self.resource} does not support action {action!r}",
                hint=f"Supported actions: {', '.join(sorted(self.actions))}",
            )
        handler: Handler = getattr(self, method_name)
        self.check_payload_org(ctx, payload)
        return await handler(ctx, payload)

    @staticmethod
    def check_payload_org(ctx: CallContext, payload: dict[str, Any]) -> None:
        """Reject payloads that name a different organization than the caller."""
        claimed = payload.get("organization_id")
        if claimed is not None and claimed != ctx.organization_id:
            raise AuthorizationError(
                ORG_MISMATCH,
                "payload organization_id does not match the caller organization",
            )


def page_args(payload: dict[str, Any]) -> tuple[int, int]:
    """Read limit/offset with bounds."""
    limit = payload.get("limit", DEFAULT_PAGE_SIZE)
    offset = payload.get("offset", 0)
    if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= MAX_PAGE_SIZE:
        raise ValidationError(PAYLOAD_INVALID, f"limit must be an integer in [1, {MAX_PAGE_SIZE}]")
    if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
        raise ValidationError(PAYLOAD_INVALID, "offset must be a non-negative integer")
    return limit, offset


def mapping_arg(payload: dict[str, Any], key: str) -> dict[str, Any]:
    """Read an optional JSON object argument."""
    value = payload.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationError(PAYLOAD_INVALID, f"{key} must be an object")
    return value


def optional_str(payload: dict[str, Any], key: str) -> str | None:
    """Read an optional string argument; other JSON types are rejected."""
    value = payload.get(key)
    if value is not None and not isinstance(value, str):
        raise ValidationError(PAYLOAD_INVALID, f"{key} must be a string")
    return value


def optional_date(payload: dict[str, Any], key: str) -> str | None:
    """Read an optional ISO date or datetime string."""
    value = optional_str(payload, key)
    if value is None:
        return None
    try:
        parse_iso_date(value)
    except ValueError:
        raise ValidationError(
            PAYLOAD_INVALID,
            f"{key} must be an ISO 8601 date or datetime",
            hint="e.g. 2024-03-01 or 2024-03-01T09:30:00+00:00",
        ) from None
    return value


def flag_arg(payload: dict[str, Any], key: str, default: bool) -> bool:
    value = payload.get(key, default)
    if not isinstance(value, bool):
        raise ValidationError(PAYLOAD_INVALID, f"{key} must be a boolean")
    return value


def check_filters(filters: dict[str, Any], allowed: frozenset[str]) -> None:
    unknown = sorted(set(filters) - allowed)
    if unknown:
        raise ValidationError(
            PAYLOAD_INVALID,
            f"unsupported filters: {', '.join(unknown)}",
            hint=f"Supported filters: {', '.join(sorted(allowed))}",
        )
