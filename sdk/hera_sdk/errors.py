"""
Error types for HERA SDK.

This module defines all exception types raised by the SDK:
- HeraApiError: Base exception
- ConnectionError: Server unreachable or transport failure
- ValidationError: The server rejected the request content (400)
- AuthorizationError: Organization mismatch (403)
- NotFoundError: Record absent or outside the organization (404)
- ConflictError: Business invariant or duplicate key (409)
- ServerError: Unexpected server failure (5xx)

Invariants:
    - All errors inherit from HeraApiError
    - code is the server's wire error code (e.g. GL_IMBALANCE)
"""

from __future__ import annotations

from typing import Any


class HeraApiError(Exception):
    """Base exception for all HERA SDK errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        hint: Optional suggestion returned by the server
        details: Additional envelope fields
        status_code: HTTP status, when one was received
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        hint: str | None = None,
        details: dict[str, Any] | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "HERA_ERROR"
        self.hint = hint
        self.details = details or {}
        self.status_code = status_code


class ConnectionError(HeraApiError):
    """Failed to reach the HERA server.

    Raised when:
    - Server is unreachable
    - Connection times out
    """

    def __init__(self, message: str, base_url: str | None = None) -> None:
        super().__init__(message, code="CONNECTION_ERROR", details={"base_url": base_url})
        self.base_url = base_url


class ValidationError(HeraApiError):
    """Request content was rejected.

    Raised when:
    - Smart code is invalid
    - Required fields are missing
    - Dynamic field value does not match its field_type
    """


class AuthorizationError(HeraApiError):
    """Caller context does not permit the request (ORG_MISMATCH)."""


class NotFoundError(HeraApiError):
    """Record absent or outside the caller's organization."""


class ConflictError(HeraApiError):
    """Request conflicts with stored state.

    Raised when:
    - GL lines do not balance
    - Entity still has dependencies
    - Transaction is not deletable or already reversed
    """


class ServerError(HeraApiError):
    """Unexpected server failure."""


_BY_STATUS: dict[int, type[HeraApiError]] = {
    400: ValidationError,
    403: AuthorizationError,
    404: NotFoundError,
    409: ConflictError,
}


def error_from_envelope(status_code: int, body: dict[str, Any]) -> HeraApiError:
    """Build the typed exception for a failure envelope."""
    code = body.get("error")
    message = body.get("error_detail") or code or f"HTTP {status_code}"
    details = {
        k: v for k, v in body.items() if k not in ("success", "error", "error_detail", "error_hint")
    }
    if status_code >= 500:
        error_cls: type[HeraApiError] = ServerError
    else:
        error_cls = _BY_STATUS.get(status_code, HeraApiError)
    return error_cls(
        message,
        code=code,
        hint=body.get("error_hint"),
        details=details,
        status_code=status_code,
    )
