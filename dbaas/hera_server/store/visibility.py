"""
Transaction visibility predicate.

Voided transactions are soft-deleted: the rows stay for the audit trail but
normal reads must not see them. Every read path (the direct store primitive,
the orchestrator, query pages, update/void/delete lookups) builds its WHERE
clause through transaction_visibility() so the two read modes can never
disagree.

Invariants:
    - include_deleted=False hides transaction_status = 'voided'
    - include_deleted=True applies no status filter
"""

from __future__ import annotations

from typing import Any

from ..schema.types import TransactionStatus

DEFAULT_INCLUDE_DELETED = False


def transaction_visibility(
    include_deleted: bool = DEFAULT_INCLUDE_DELETED,
    alias: str | None = None,
) -> tuple[str, list[Any]]:
    """Build the visibility predicate for universal_transactions.

    Args:
        include_deleted: Whether voided transactions are visible (audit mode)
        alias: Optional table alias used in the enclosing query

    Returns:
        Tuple of (sql_fragment, params) safe to AND into a WHERE clause
    """
    if include_deleted:
        return "1 = 1", []
    column = f"{alias}.transaction_status" if alias else "transaction_status"
    return f"{column} != ?", [TransactionStatus.VOIDED.value]
