"""
InventDB Server - audited inventory store with live fan-out and backups.

This package implements the storage core of the inventory application:
- Typed collections (devices, network devices, storage items, employees,
  multi-function devices, server equipment)
- An append-only audit log written in the same transaction as each mutation
- A change notifier that fans out commit events to connected observers
- Point-in-time snapshots with retention, restore and bulk import

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌──────────────────┐
    │   Client    │────▶│  HTTP / WS  │────▶│ CollectionStore  │
    │ (UI / SDK)  │     │   (aiohttp) │     │  + Diff + Audit  │
    └─────────────┘     └──────▲──────┘     └────────┬─────────┘
                               │                     │ commit
                               │                     ▼
                        ┌──────┴──────┐     ┌──────────────────┐
                        │  Notifier   │◀────│  SQLite (one DB) │
                        └─────────────┘     └────────┬─────────┘
                                                     │ consistent read
                                                     ▼
                                            ┌──────────────────┐
                                            │ SnapshotManager  │──▶ backups/*.json (──▶ S3)
                                            └──────────────────┘

Invariants:
    - A mutation and its audit entries commit together or not at all
    - Events are published only after the commit is durable
    - Restore and import replace every collection atomically
    - Snapshots are immutable once written

How to change safely:
    - Add collection fields additively; old snapshots must still restore
    - Keep the snapshot JSON layout backward compatible
    - Never publish before commit

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
