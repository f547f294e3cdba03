"""
Error types for InventDB Server.

This module defines the error taxonomy shared by the store, the snapshot
manager and the HTTP layer:
- InventDbError: Base exception
- NotFoundError: Record id or snapshot name does not exist
- ValidationFailedError: Missing or malformed fields
- ConflictOrStaleError: Reserved for concurrent-edit detection
- SnapshotCorruptError: Unreadable or structurally invalid snapshot/import
- RetentionPruneFailedError: Pruning an old snapshot failed (logged only)
- AccessDeniedError: Caller's role does not allow the operation

Invariants:
    - All errors inherit from InventDbError
    - Each error carries a stable code and an HTTP status
    - Raising any of these means durable state is unchanged
"""

from __future__ import annotations

from typing import Any


class InventDbError(Exception):
    """Base exception for all InventDB errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
        http_status: Status code used by the HTTP layer
    """

    http_status = 500

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "INVENTDB_ERROR"
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to the JSON error body."""
        return {"error": self.message, "error_code": self.code, "details": self.details}


class NotFoundError(InventDbError):
    """Operation targets a record id or snapshot name that does not exist."""

    http_status = 404

    def __init__(self, kind: str, key: str) -> None:
        super().__init__(
            f"{kind} not found: {key}",
            code="NOT_FOUND",
            details={"kind": kind, "key": key},
        )
        self.kind = kind
        self.key = key


class ValidationFailedError(InventDbError):
    """Payload validation failed.

    Raised when:
    - A required field is missing or blank
    - A field value has the wrong type or enum value
    - A field is not part of the collection schema
    - The collection name is unknown
    """

    http_status = 400

    def __init__(
        self,
        message: str,
        errors: list[str] | None = None,
        collection: str | None = None,
    ) -> None:
        super().__init__(
            message,
            code="VALIDATION_FAILED",
            details={"collection": collection, "errors": errors or []},
        )
        self.errors = errors or []
        self.collection = collection


class ConflictOrStaleError(InventDbError):
    """Concurrent edit detected.

    Reserved: the store currently applies last-committed-wins and never
    raises this.
    """

    http_status = 409

    def __init__(self, message: str) -> None:
        super().__init__(message, code="CONFLICT")


class SnapshotCorruptError(InventDbError):
    """Snapshot or import payload is unreadable or structurally invalid."""

    http_status = 422

    def __init__(self, message: str, name: str | None = None) -> None:
        super().__init__(message, code="SNAPSHOT_CORRUPT", details={"name": name})
        self.name = name


class RetentionPruneFailedError(InventDbError):
    """Deleting an old snapshot during retention failed.

    Never propagated to the caller that triggered the prune.
    """

    def __init__(self, name: str, reason: str) -> None:
        super().__init__(
            f"Failed to prune snapshot {name}: {reason}",
            code="RETENTION_PRUNE_FAILED",
            details={"name": name},
        )
        self.name = name


class AccessDeniedError(InventDbError):
    """Caller's role does not allow the operation."""

    http_status = 403

    def __init__(self, role: str, operation: str) -> None:
        super().__init__(
            f"Access denied: role '{role}' cannot {operation}",
            code="ACCESS_DENIED",
            details={"role": role, "operation": operation},
        )
        self.role = role
        self.operation = operation
