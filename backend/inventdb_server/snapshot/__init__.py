"""
Snapshot catalog for InventDB.

This module provides:
- SnapshotManager: Create, list, restore, import, compare and prune snapshots
- S3SnapshotExporter: Off-site copies of created snapshots
"""

from .exporter import S3SnapshotExporter
from .manager import (
    CollectionDiff,
    ImportResult,
    SnapshotManager,
    SnapshotMeta,
    compare_images,
)

__all__ = [
    "CollectionDiff",
    "ImportResult",
    "S3SnapshotExporter",
    "SnapshotManager",
    "SnapshotMeta",
    "compare_images",
]
