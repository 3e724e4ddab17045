"""
Request models for the RPC envelope.

    {"action": "CREATE", "actor_user_id": "...", "organization_id": "...", "payload": {...}}

organization_id and actor_user_id are optional at the model level so that
their absence is reported as ORG_REQUIRED / ACTOR_REQUIRED envelopes
rather than framework validation errors.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


class RpcRequest(BaseModel):
    """One RPC call."""

    action: str = Field(..., description="Action name, e.g. CREATE, QUERY, VOID")
    actor_user_id: str | None = Field(None, description="Actor stamped on writes")
    organization_id: str | None = Field(None, description="Tenant the call is scoped to")
    payload: dict[str, Any] = Field(default_factory=dict, description="Action-specific payload")

    @field_validator("action")
    @classmethod
    def normalize_action(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("organization_id", "actor_user_id")
    @classmethod
    def blank_to_none(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value
