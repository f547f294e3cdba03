"""
Storage layer for InventDB.

This module provides:
- CollectionStore: Audited SQLite store for every collection
- AuditLog: Append-only, queryable history of mutations
- diff_records: Field-level diff used for updates and restore previews
- WriteGate: Shared/exclusive gate separating mutations from restore
"""

from .audit_log import AuditEntry, AuditLog
from .collection_store import CollectionStore, Record, StoreImage, image_from_data
from .diff import FieldChange, diff_payloads, diff_records
from .gate import WriteGate

__all__ = [
    "AuditEntry",
    "AuditLog",
    "CollectionStore",
    "FieldChange",
    "Record",
    "StoreImage",
    "WriteGate",
    "diff_payloads",
    "diff_records",
    "image_from_data",
]
