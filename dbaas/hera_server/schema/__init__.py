"""
Schema module for HERA.

This module provides the vocabulary shared by every layer:
- Smart code parsing, validation and classification
- Dynamic field types and the FieldValue sum type
- Entity and transaction status enums

Invariants:
    - Smart code validation is pure and never raises
    - Field values are typed at the application layer; storage columns stay internal

How to change safely:
    - Register new smart code domains instead of loosening the grammar
    - Append new status values; never rename stored ones
"""

from .smart_code import (
    DEFAULT_DOMAINS,
    SmartCode,
    SmartCodeClass,
    SmartCodeRegistry,
    SmartCodeValidation,
    classify,
    validate,
)
from .types import (
    HAS_ROLE,
    MEMBER_OF,
    PLATFORM_ORGANIZATION_ID,
    BooleanValue,
    DateValue,
    EntityStatus,
    FieldType,
    FieldValue,
    GlSide,
    JsonValue,
    NumberValue,
    TextValue,
    TransactionStatus,
    make_field_value,
)

__all__ = [
    # Smart codes
    "DEFAULT_DOMAINS",
    "SmartCode",
    "SmartCodeClass",
    "SmartCodeRegistry",
    "SmartCodeValidation",
    "classify",
    "validate",
    # Field values
    "FieldType",
    "FieldValue",
    "TextValue",
    "NumberValue",
    "BooleanValue",
    "DateValue",
    "JsonValue",
    "make_field_value",
    # Statuses and constants
    "EntityStatus",
    "TransactionStatus",
    "GlSide",
    "PLATFORM_ORGANIZATION_ID",
    "MEMBER_OF",
    "HAS_ROLE",
]
