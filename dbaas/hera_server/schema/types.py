"""
Core value types for the universal data model.

This module defines:
- FieldType and the FieldValue sum type for dynamic data
- Entity and transaction status vocabularies
- Well-known constants (platform organization, relationship types)

Invariants:
    - A FieldValue always carries exactly one typed value
    - Only the store maps FieldValue to the parallel field_value_* columns
    - The platform organization is an ordinary tenant id, not a bypass

How to change safely:
    - New field types need a new value class and a new storage column
    - Status values are append-only; stored rows keep old values forever
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, ClassVar, Union

PLATFORM_ORGANIZATION_ID = "00000000-0000-0000-0000-000000000000"

MEMBER_OF = "MEMBER_OF"
HAS_ROLE = "HAS_ROLE"


class FieldType(Enum):
    """Dynamic field types and their storage columns."""

    TEXT = "text"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    JSON = "json"

    @property
    def column(self) -> str:
        return f"field_value_{self.value}"

    @classmethod
    def from_str(cls, value: str) -> FieldType:
        """Convert string representation to FieldType.

        Raises:
            ValueError: If value is not a valid field type
        """
        if isinstance(value, str):
            for kind in cls:
                if kind.value == value.lower():
                    return kind
        valid = [k.value for k in cls]
        raise ValueError(f"Invalid field type '{value}'. Valid types: {valid}")


VALUE_COLUMNS: tuple[str, ...] = tuple(kind.column for kind in FieldType)


@dataclass(frozen=True)
class TextValue:
    value: str
    field_type: ClassVar[FieldType] = FieldType.TEXT


@dataclass(frozen=True)
class NumberValue:
    value: float
    field_type: ClassVar[FieldType] = FieldType.NUMBER


@dataclass(frozen=True)
class BooleanValue:
    value: bool
    field_type: ClassVar[FieldType] = FieldType.BOOLEAN


@dataclass(frozen=True)
class DateValue:
    """ISO-8601 date or datetime, kept in the caller's textual form."""

    value: str
    field_type: ClassVar[FieldType] = FieldType.DATE


@dataclass(frozen=True)
class JsonValue:
    value: Any
    field_type: ClassVar[FieldType] = FieldType.JSON


FieldValue = Union[TextValue, NumberValue, BooleanValue, DateValue, JsonValue]


def parse_iso_date(value: str) -> None:
    """Raise ValueError unless value is an ISO date or datetime."""
    try:
        date.fromisoformat(value)
        return
    except ValueError:
        pass
    datetime.fromisoformat(value.replace("Z", "+00:00"))


def make_field_value(field_type: FieldType, raw: Any) -> FieldValue:
    """Build a FieldValue from a raw caller value.

    Raises:
        ValueError: If raw does not fit field_type
    """
    if field_type is FieldType.TEXT:
        if not isinstance(raw, str):
            raise ValueError(f"text field requires a string, got {type(raw).__name__}")
        return TextValue(raw)

    if field_type is FieldType.NUMBER:
        if isinstance(raw, bool) or not isinstance(raw, (int, float)):
            raise ValueError(f"number field requires a number, got {type(raw).__name__}")
        return NumberValue(float(raw))

    if field_type is FieldType.BOOLEAN:
        if not isinstance(raw, bool):
            raise ValueError(f"boolean field requires a boolean, got {type(raw).__name__}")
        return BooleanValue(raw)

    if field_type is FieldType.DATE:
        if isinstance(raw, date):
            return DateValue(raw.isoformat())
        if not isinstance(raw, str):
            raise ValueError(f"date field requires an ISO date string, got {type(raw).__name__}")
        parse_iso_date(raw)
        return DateValue(raw)

    try:
        json.dumps(raw)
    except (TypeError, ValueError) as e:
        raise ValueError(f"json field value is not serializable: {e}") from e
    return JsonValue(raw)


def field_value_to_columns(value: FieldValue) -> dict[str, Any]:
    """Map a FieldValue onto all five storage columns (unused ones NULL)."""
    columns: dict[str, Any] = dict.fromkeys(VALUE_COLUMNS)
    if isinstance(value, JsonValue):
        columns[value.field_type.column] = json.dumps(value.value)
    elif isinstance(value, BooleanValue):
        columns[value.field_type.column] = int(value.value)
    else:
        columns[value.field_type.column] = value.value
    return columns


def field_value_from_columns(field_type: FieldType, row: Any) -> FieldValue:
    """Rebuild a FieldValue from a storage row."""
    raw = row[field_type.column]
    if field_type is FieldType.TEXT:
        return TextValue(raw)
    if field_type is FieldType.NUMBER:
        return NumberValue(float(raw))
    if field_type is FieldType.BOOLEAN:
        return BooleanValue(bool(raw))
    if field_type is FieldType.DATE:
        return DateValue(raw)
    return JsonValue(json.loads(raw))


class EntityStatus(Enum):
    """Entity lifecycle status. Transitions are unrestricted at the store level."""

    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"


class TransactionStatus(Enum):
    """Transaction lifecycle: draft -> pending -> completed -> voided (terminal)."""

    DRAFT = "draft"
    PENDING = "pending"
    COMPLETED = "completed"
    VOIDED = "voided"


# Forward transitions allowed through UPDATE; VOID has its own operation.
ALLOWED_STATUS_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    TransactionStatus.DRAFT: frozenset({TransactionStatus.PENDING, TransactionStatus.COMPLETED}),
    TransactionStatus.PENDING: frozenset({TransactionStatus.DRAFT, TransactionStatus.COMPLETED}),
    TransactionStatus.COMPLETED: frozenset(),
    TransactionStatus.VOIDED: frozenset(),
}


class GlSide(Enum):
    """Debit/credit tag for GL lines."""

    DR = "DR"
    CR = "CR"
