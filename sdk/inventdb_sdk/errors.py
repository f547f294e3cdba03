"""
Error types for InventDB SDK.

This module defines the SDK error hierarchy:
- InventDbError: Base exception
- ConnectionError: Server unreachable or transport failure
- ValidationError: Server rejected the payload
- NotFoundError: Record, audit entry or snapshot doesn't exist
- AccessDeniedError: Caller's role doesn't allow the operation
- SnapshotError: Snapshot or import payload is corrupt
- ApiError: Any other non-2xx response

All errors include:
- Clear error message (the server's "error" field when present)
- Error code (the server's "error_code" field when present)
- HTTP status

Invariants:
    - All errors inherit from InventDbError
    - Error messages are human-readable
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class InventDbError(Exception):
    """Base exception for all InventDB SDK errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
        status: HTTP status of the failed response, if any
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        status: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "INVENTDB_ERROR"
        self.details = details or {}
        self.status = status

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (code={self.code}, details={self.details})"
        return f"{self.message} (code={self.code})"


class ConnectionError(InventDbError):
    """Failed to reach the server.

    Raised when:
    - Server is unreachable
    - Request timed out
    - Client used before connect()
    """

    def __init__(self, message: str, base_url: Optional[str] = None) -> None:
        super().__init__(message, code="CONNECTION_ERROR", details={"base_url": base_url})
        self.base_url = base_url


class ValidationError(InventDbError):
    """Payload validation failed on the server.

    Attributes:
        collection: Collection the payload was for, if reported
        errors: Per-field error messages
    """

    def __init__(
        self,
        message: str,
        collection: Optional[str] = None,
        errors: Optional[List[str]] = None,
        status: Optional[int] = 400,
    ) -> None:
        super().__init__(
            message,
            code="VALIDATION_FAILED",
            details={"collection": collection, "errors": errors or []},
            status=status,
        )
        self.collection = collection
        self.errors = errors or []


class NotFoundError(InventDbError):
    """Resource not found.

    Raised when:
    - Record id doesn't exist in the collection
    - Collection name is unknown
    - Snapshot or audit entry doesn't exist
    """

    def __init__(
        self,
        message: str,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="NOT_FOUND",
            details={"resource_type": resource_type, "resource_id": resource_id},
            status=404,
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class AccessDeniedError(InventDbError):
    """The request's role may not perform the operation."""

    def __init__(self, message: str, role: Optional[str] = None) -> None:
        super().__init__(message, code="ACCESS_DENIED", details={"role": role}, status=403)
        self.role = role


class SnapshotError(InventDbError):
    """Snapshot or import payload is unreadable or structurally invalid."""

    def __init__(self, message: str, name: Optional[str] = None) -> None:
        super().__init__(message, code="SNAPSHOT_CORRUPT", details={"name": name}, status=422)
        self.name = name


class ApiError(InventDbError):
    """Unexpected error response from the server."""
