"""
Orchestration module for HERA.

This module enforces the business invariants on top of the store:
- EntityOrchestrator: entities and their dynamic data
- RelationshipOrchestrator: typed edges, membership and role flows
- TransactionOrchestrator: headers and lines, GL balance, void, reverse
- DynamicDataOrchestrator: batch upsert of typed fields
- OrganizationOrchestrator: tenant registry

Invariants:
    - Every call is scoped by CallContext.organization_id
    - Failures are raised as HeraError subclasses, never returned
"""

from .base import CallContext, Orchestrator, SmartCodePolicy
from .dynamic_data import DynamicDataOrchestrator
from .entities import EntityOrchestrator
from .errors import (
    AuthorizationError,
    ConflictError,
    HeraError,
    NotFoundError,
    ValidationError,
)
from .organizations import OrganizationOrchestrator
from .relationships import RelationshipOrchestrator
from .transactions import TransactionOrchestrator

__all__ = [
    "CallContext",
    "Orchestrator",
    "SmartCodePolicy",
    "EntityOrchestrator",
    "RelationshipOrchestrator",
    "TransactionOrchestrator",
    "DynamicDataOrchestrator",
    "OrganizationOrchestrator",
    "HeraError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "AuthorizationError",
]
