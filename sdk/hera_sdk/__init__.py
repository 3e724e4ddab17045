"""
HERA Python SDK - Client library for the HERA universal API.

This SDK wraps the RPC envelope used by every HERA endpoint:
- HeraClient for connecting to the server
- Typed errors mapped from failure envelopes
- ClientSettings loaded from HERA_* environment variables

Example:
    >>> from hera_sdk import HeraClient
    >>>
    >>> async with HeraClient("http://localhost:8080", organization_id="org-1",
    ...                       actor_user_id="user-1") as hera:
    ...     txn = await hera.create_transaction(
    ...         {"transaction_type": "sale", "smart_code": "HERA.SALES.ORDER.TXN.STANDARD.v1"},
    ...         [{"line_type": "item", "quantity": 1, "unit_amount": 99}],
    ...     )

Invariants:
    - All calls require organization_id
    - Failure envelopes raise, success envelopes are returned as dicts

Version: 1.0.0
"""

__version__ = "1.0.0"

from .client import HeraClient
from .errors import (
    AuthorizationError,
    ConflictError,
    ConnectionError,
    HeraApiError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from .settings import ClientSettings

__all__ = [
    "__version__",
    "HeraClient",
    "ClientSettings",
    "HeraApiError",
    "ConnectionError",
    "ValidationError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
]
