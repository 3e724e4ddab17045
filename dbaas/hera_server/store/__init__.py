"""
Store module for HERA.

This module owns the relational persistence of the six universal tables.
It knows nothing about smart code rules, GL balance or RPC envelopes;
those live in the orchestrators.

Invariants:
    - Every method takes organization_id and filters on it
    - Transaction reads go through transaction_visibility()
"""

from .universal_store import (
    DuplicateKeyError,
    DynamicField,
    DynamicFieldInput,
    Entity,
    EntityDependencies,
    Organization,
    Relationship,
    StatusChangedError,
    StoreError,
    Transaction,
    TransactionLine,
    UniversalStore,
    utc_now,
)
from .visibility import DEFAULT_INCLUDE_DELETED, transaction_visibility

__all__ = [
    "UniversalStore",
    "StoreError",
    "DuplicateKeyError",
    "StatusChangedError",
    "Organization",
    "Entity",
    "EntityDependencies",
    "DynamicField",
    "DynamicFieldInput",
    "Relationship",
    "Transaction",
    "TransactionLine",
    "utc_now",
    "DEFAULT_INCLUDE_DELETED",
    "transaction_visibility",
]
