"""
Error taxonomy for the orchestrators.

Every orchestrator failure is raised as a HeraError subclass and rendered
by the dispatcher into the failure envelope:

    {"success": false, "error": <code>, "error_detail": ..., "error_hint": ...}

Kinds:
- ValidationError: bad smart code, missing organization, bad payload shape
- NotFoundError: absent or cross-tenant rows (indistinguishable)
- ConflictError: GL imbalance, referenced rows, duplicate keys
- AuthorizationError: organization mismatch between caller context and payload

Invariants:
    - Validation and conflict errors are raised before any write
    - NotFoundError details never mention another organization

How to change safely:
    - Error codes are part of the wire contract; add, never rename
"""

from __future__ import annotations

from typing import Any

# Validation
SMART_CODE_INVALID = "SMART_CODE_INVALID"
ORG_REQUIRED = "ORG_REQUIRED"
ACTOR_REQUIRED = "ACTOR_REQUIRED"
PAYLOAD_INVALID = "PAYLOAD_INVALID"
ENTITY_TYPE_REQUIRED = "ENTITY_TYPE_REQUIRED"
ENTITY_NAME_REQUIRED = "ENTITY_NAME_REQUIRED"
INVALID_STATUS = "INVALID_STATUS"
PATCH_FIELD_NOT_ALLOWED = "PATCH_FIELD_NOT_ALLOWED"
PAIR_MISSING_ENDPOINT = "PAIR_MISSING_ENDPOINT"
FIELD_TYPE_INVALID = "FIELD_TYPE_INVALID"
FIELD_TYPE_VALUE_MISMATCH = "FIELD_TYPE_VALUE_MISMATCH"
LINE_AMOUNT_REQUIRED = "LINE_AMOUNT_REQUIRED"
LINE_NUMBER_DUPLICATE = "LINE_NUMBER_DUPLICATE"
UNKNOWN_ACTION = "UNKNOWN_ACTION"

# Not found
ENTITY_NOT_FOUND = "ENTITY_NOT_FOUND"
RELATIONSHIP_NOT_FOUND = "RELATIONSHIP_NOT_FOUND"
TXN_NOT_FOUND = "TXN_NOT_FOUND"
ORG_NOT_FOUND = "ORG_NOT_FOUND"
FIELD_NOT_FOUND = "FIELD_NOT_FOUND"

# Conflict
GL_IMBALANCE = "GL_IMBALANCE"
GL_LINE_SIDE_REQUIRED = "GL_LINE_SIDE_REQUIRED"
ENTITY_HAS_DEPENDENCIES = "ENTITY_HAS_DEPENDENCIES"
ENTITY_CODE_DUPLICATE = "ENTITY_CODE_DUPLICATE"
ORG_DUPLICATE = "ORG_DUPLICATE"
TXN_NOT_DELETABLE = "TXN_NOT_DELETABLE"
TXN_ALREADY_REVERSED = "TXN_ALREADY_REVERSED"
INVALID_STATUS_TRANSITION = "INVALID_STATUS_TRANSITION"

# Authorization
ORG_MISMATCH = "ORG_MISMATCH"

INTERNAL_ERROR = "INTERNAL_ERROR"


class HeraError(Exception):
    """Base exception for all orchestrator failures.

    Attributes:
        code: Wire error code (e.g. GL_IMBALANCE)
        detail: Human-readable description
        hint: Optional suggestion for the caller
        context: Extra structured fields merged into the envelope
    """

    status_code = 500

    def __init__(
        self,
        code: str,
        detail: str | None = None,
        hint: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(detail or code)
        self.code = code
        self.detail = detail
        self.hint = hint
        self.context = context or {}

    def to_envelope(self) -> dict[str, Any]:
        envelope: dict[str, Any] = {"success": False, "error": self.code}
        if self.detail:
            envelope["error_detail"] = self.detail
        if self.hint:
            envelope["error_hint"] = self.hint
        envelope.update(self.context)
        return envelope


class ValidationError(HeraError):
    """Request content is invalid."""

    status_code = 400


class AuthorizationError(HeraError):
    """Caller context does not permit the request."""

    status_code = 403


class NotFoundError(HeraError):
    """Row absent or outside the caller's organization."""

    status_code = 404


class ConflictError(HeraError):
    """Request conflicts with stored state or a business invariant."""

    status_code = 409


def smart_code_invalid(reason: str | None, where: str = "smart_code") -> ValidationError:
    return ValidationError(
        SMART_CODE_INVALID,
        f"{where}: {reason}",
        hint="Use HERA.<DOMAIN>.<SEGMENT>...v<N> with uppercase segments",
    )


def require(payload: dict[str, Any], key: str, code: str = PAYLOAD_INVALID) -> Any:
    """Return payload[key] or raise ValidationError when missing or blank."""
    value = payload.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(code, f"{key} is required")
    return value


def require_str(payload: dict[str, Any], key: str, code: str = PAYLOAD_INVALID) -> str:
    """Like require(), but the value must also be a string."""
    value = require(payload, key, code)
    if not isinstance(value, str):
        raise ValidationError(PAYLOAD_INVALID, f"{key} must be a string")
    return value
