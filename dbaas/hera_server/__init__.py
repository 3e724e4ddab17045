"""
HERA Server - Universal entity/relationship/transaction store.

This package implements the multi-tenant "six universal tables" core:
- Entities with typed dynamic fields as the only business object shape
- Typed, directed relationships between entities
- Transactions with ordered lines, GL balance enforcement and void semantics
- Smart codes classifying every record for business-rule dispatch

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌─────────────────┐
    │   Client    │────▶│  HTTP API   │────▶│  RpcDispatcher  │
    │   (SDK)     │     │  (FastAPI)  │     │   (envelopes)   │
    └─────────────┘     └─────────────┘     └────────┬────────┘
                                                     │
                        ┌──────────────┬─────────────┼──────────────┐
                        ▼              ▼             ▼              ▼
                   ┌─────────┐   ┌──────────┐  ┌───────────┐  ┌──────────┐
                   │ Entity  │   │ Relation │  │Transaction│  │ Dynamic  │
                   │  Orch.  │   │  Orch.   │  │   Orch.   │  │  Writer  │
                   └────┬────┘   └────┬─────┘  └─────┬─────┘  └────┬─────┘
                        └─────────────┴──────┬───────┴─────────────┘
                                             ▼
                                    ┌─────────────────┐
                                    │ UniversalStore  │
                                    │ (SQLite, 6 tbl) │
                                    └─────────────────┘

Invariants:
    - Every read and write is filtered by organization_id
    - Cross-tenant lookups are indistinguishable from missing records
    - Validation and conflict errors are raised before any write
    - Voided transactions are hidden unless include_deleted is requested

How to change safely:
    - New business concepts are new rows and smart codes, never new tables
    - Keep the transaction visibility predicate in store/visibility.py
    - Add new actions to the dispatcher tables, don't overload existing ones
"""

from ._version import __version__

__all__ = ["__version__"]
