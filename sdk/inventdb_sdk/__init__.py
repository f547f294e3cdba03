"""
InventDB Python SDK - Client library for the InventDB inventory service.

This SDK wraps the InventDB HTTP API:
- InventClient for records, audit history, snapshots and import/export
- Error types mirroring the server's error codes

Example:
    >>> from sdk.inventdb_sdk import InventClient
    >>>
    >>> async with InventClient("http://localhost:3001", actor="alice") as db:
    ...     await db.create("employees", {"name": "Alice", "department": "IT"})

Version: 0.4.0
"""

__version__ = "0.4.0"

from .client import InventClient, error_from_response
from .errors import (
    AccessDeniedError,
    ApiError,
    ConnectionError,
    InventDbError,
    NotFoundError,
    SnapshotError,
    ValidationError,
)

__all__ = [
    # Version
    "__version__",
    # Client
    "InventClient",
    "error_from_response",
    # Errors
    "InventDbError",
    "ConnectionError",
    "ValidationError",
    "NotFoundError",
    "AccessDeniedError",
    "SnapshotError",
    "ApiError",
]
