"""
Snapshot catalog for InventDB.

The SnapshotManager owns the backup directory: it creates point-in-time
JSON snapshots of the whole store, prunes old ones, restores them, and
applies external dumps.

Snapshot format:
    <backup_dir>/<name>.json

    {
        "name": "backup-1700000000000",
        "created_at": 1700000000000,
        "timestamp": "2023-11-14T22:13:20+00:00",
        "store_version": 42,
        "data": {"devices": [...], ..., "history": [...]}
    }

Older snapshots without created_at/store_version are still readable;
their creation time is taken from the ISO timestamp or the file mtime.

Invariants:
    - Capture is one SQLite read transaction; writers are never paused
    - Files are written to a temp path and renamed into place
    - Restore and import validate before touching the live store, then
      replace everything in one transaction
    - created_at is strictly greater than any existing snapshot's
    - Retention runs after every create; prune failures never fail it
    - Only this class writes to the backup directory

How to change safely:
    - Add new document fields, don't remove existing ones
    - Keep reading snapshots written by older versions
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..errors import (
    NotFoundError,
    RetentionPruneFailedError,
    SnapshotCorruptError,
    ValidationFailedError,
)
from ..schema.collections import COLLECTIONS
from ..store.collection_store import CollectionStore, StoreImage, image_from_data
from ..store.diff import FieldChange, diff_payloads

if TYPE_CHECKING:
    from .exporter import S3SnapshotExporter

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


def _now_ms() -> int:
    return int(time.time() * 1000)


def _iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()


def _parse_iso_ms(value: Any) -> int | None:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


@dataclass
class SnapshotMeta:
    """Catalog entry for one snapshot.

    Attributes:
        name: Unique snapshot name
        created_at: Creation time (Unix ms)
        size: File size in bytes
        checksum: SHA-256 of the file contents
        store_version: Store version the snapshot was captured at
        counts: Records per collection (and history entries)
    """

    name: str
    created_at: int
    size: int
    checksum: str
    store_version: int | None = None
    counts: dict[str, int] = field(default_factory=dict)

    @property
    def filename(self) -> str:
        return f"{self.name}.json"

    @property
    def timestamp(self) -> str:
        return _iso(self.created_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "filename": self.filename,
            "timestamp": self.timestamp,
            "created_at": self.created_at,
            "size": self.size,
            "checksum": self.checksum,
            "store_version": self.store_version,
            "counts": self.counts,
        }


@dataclass
class ImportResult:
    """Outcome of import_external.

    Attributes:
        backup: Pre-import snapshot of the replaced contents, if one was taken
        counts: Records imported per collection (and history entries)
        missing: Expected keys absent from the payload (imported as empty)
        store_version: Store version after the import
    """

    backup: SnapshotMeta | None
    counts: dict[str, int]
    missing: list[str]
    store_version: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": "ok",
            "message": "Database imported successfully",
            "backupCreated": self.backup.filename if self.backup else None,
            "tablesImported": len(self.counts) - len(self.missing),
            "counts": self.counts,
            "missing": self.missing,
            "store_version": self.store_version,
        }


@dataclass
class CollectionDiff:
    """What restoring a snapshot would do to one collection.

    Attributes:
        added: Ids present in the snapshot but not live
        removed: Ids live but absent from the snapshot
        changed: Per-id field changes for records present in both
    """

    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    changed: dict[str, list[FieldChange]] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.changed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "added": self.added,
            "removed": self.removed,
            "changed": {
                rid: [change.to_dict() for change in changes]
                for rid, changes in self.changed.items()
            },
        }


class SnapshotManager:
    """Creates, lists, restores and prunes store snapshots.

    Example:
        >>> manager = SnapshotManager(store, "/var/lib/inventdb/backups")
        >>> meta = await manager.create_snapshot("before-audit")
        >>> await manager.restore("before-audit")
    """

    def __init__(
        self,
        store: CollectionStore,
        backup_dir: str,
        max_snapshots: int = 10,
        pre_import_backup: bool = True,
        exporter: S3SnapshotExporter | None = None,
    ) -> None:
        """Initialize the snapshot manager.

        Args:
            store: Store to capture from and restore into
            backup_dir: Directory holding snapshot files
            max_snapshots: Retention limit (N most recent kept)
            pre_import_backup: Snapshot live contents before import_external
            exporter: Optional off-site exporter for created snapshots
        """
        if max_snapshots < 1:
            raise ValueError("max_snapshots must be at least 1")
        self.store = store
        self.backup_dir = Path(backup_dir)
        self.max_snapshots = max_snapshots
        self.pre_import_backup = pre_import_backup
        self.exporter = exporter

        self._catalog_lock = asyncio.Lock()
        self._running = False
        self._auto_count = 0

    @staticmethod
    def normalize_name(name: str) -> str:
        """Validate a snapshot name; a trailing .json is accepted and dropped.

        Raises:
            ValidationFailedError: If the name is not a safe file stem
        """
        if isinstance(name, str) and name.endswith(".json"):
            name = name[: -len(".json")]
        if not isinstance(name, str) or not _NAME_RE.match(name):
            raise ValidationFailedError(
                "Invalid snapshot name",
                errors=["use letters, digits, '.', '_' or '-' (max 128 chars)"],
            )
        return name

    def _path(self, name: str) -> Path:
        return self.backup_dir / f"{name}.json"

    @staticmethod
    def _write_file(path: Path, document: dict[str, Any]) -> bytes:
        """Serialize to a temp file and rename it into place. Returns the body."""
        body = json.dumps(document, indent=2, ensure_ascii=False).encode("utf-8")
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            with open(tmp_path, "wb") as f:
                f.write(body)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()
        return body

    @staticmethod
    def _read_file(path: Path) -> tuple[bytes, Any]:
        body = path.read_bytes()
        return body, json.loads(body)

    def _meta_from_document(self, name: str, path: Path, body: bytes, doc: Any) -> SnapshotMeta:
        created_at = None
        store_version = None
        counts: dict[str, int] = {}
        if isinstance(doc, dict):
            raw_created = doc.get("created_at")
            if isinstance(raw_created, int) and not isinstance(raw_created, bool):
                created_at = raw_created
            else:
                created_at = _parse_iso_ms(doc.get("timestamp"))
            if isinstance(doc.get("store_version"), int):
                store_version = doc["store_version"]
            data = doc.get("data")
            if isinstance(data, dict):
                counts = {k: len(v) for k, v in data.items() if isinstance(v, list)}
        if created_at is None:
            created_at = int(path.stat().st_mtime * 1000)
        return SnapshotMeta(
            name=name,
            created_at=created_at,
            size=len(body),
            checksum=hashlib.sha256(body).hexdigest(),
            store_version=store_version,
            counts=counts,
        )

    async def _load(self, name: str) -> tuple[SnapshotMeta, dict[str, Any]]:
        """Read and structurally check a snapshot document.

        Raises:
            NotFoundError: If the snapshot does not exist
            SnapshotCorruptError: If it cannot be parsed
        """
        name = self.normalize_name(name)
        path = self._path(name)
        if not path.exists():
            raise NotFoundError("snapshot", name)

        loop = asyncio.get_running_loop()
        try:
            body, doc = await loop.run_in_executor(None, self._read_file, path)
        except (OSError, ValueError) as e:
            raise SnapshotCorruptError(f"Snapshot {name} is unreadable: {e}", name=name) from e

        if not isinstance(doc, dict) or not isinstance(doc.get("data"), dict):
            raise SnapshotCorruptError(f"Snapshot {name} has no data object", name=name)

        return self._meta_from_document(name, path, body, doc), doc

    async def create_snapshot(self, name: str | None = None) -> SnapshotMeta:
        """Capture the whole store into a new snapshot.

        Args:
            name: Snapshot name (defaults to ``backup-<unix ms>``)

        Returns:
            Metadata of the created snapshot

        Raises:
            ValidationFailedError: If the name is invalid or already taken
        """
        name = self.normalize_name(name or f"backup-{_now_ms()}")
        path = self._path(name)

        async with self._catalog_lock:
            if path.exists():
                raise ValidationFailedError(
                    f"Snapshot already exists: {name}", errors=["snapshot names are unique"]
                )

            # created_at orders the catalog; keep it strictly increasing
            existing = await self.list_snapshots()
            image = await self.store.capture()
            created_at = _now_ms()
            if existing:
                created_at = max(created_at, existing[0].created_at + 1)
            document = {
                "name": name,
                "created_at": created_at,
                "timestamp": _iso(created_at),
                "store_version": image.store_version,
                "data": image.to_data(),
            }

            loop = asyncio.get_running_loop()
            body = await loop.run_in_executor(None, self._write_file, path, document)
            meta = SnapshotMeta(
                name=name,
                created_at=created_at,
                size=len(body),
                checksum=hashlib.sha256(body).hexdigest(),
                store_version=image.store_version,
                counts=image.counts(),
            )

            logger.info(
                "Created snapshot",
                extra={
                    "snapshot": name,
                    "size_bytes": meta.size,
                    "store_version": image.store_version,
                },
            )

            await self._prune()

        if self.exporter is not None:
            await self.exporter.export_best_effort(meta, body)

        return meta

    async def list_snapshots(self) -> list[SnapshotMeta]:
        """All snapshots, newest first. Unreadable files are skipped."""
        if not self.backup_dir.exists():
            return []

        loop = asyncio.get_running_loop()
        metas = []
        for path in self.backup_dir.glob("*.json"):
            name = path.stem
            try:
                body, doc = await loop.run_in_executor(None, self._read_file, path)
            except (OSError, ValueError) as e:
                logger.warning(
                    "Skipping unreadable snapshot",
                    extra={"snapshot": name, "error": str(e)},
                )
                continue
            metas.append(self._meta_from_document(name, path, body, doc))

        metas.sort(key=lambda m: (m.created_at, m.name), reverse=True)
        return metas

    async def get_meta(self, name: str) -> SnapshotMeta:
        meta, _ = await self._load(name)
        return meta

    async def read_snapshot_file(self, name: str) -> tuple[SnapshotMeta, bytes]:
        """Metadata and raw file body, read under the catalog lock.

        Raises:
            NotFoundError: If the snapshot does not exist
            SnapshotCorruptError: If it cannot be parsed
        """
        name = self.normalize_name(name)
        path = self._path(name)
        async with self._catalog_lock:
            if not path.exists():
                raise NotFoundError("snapshot", name)
            loop = asyncio.get_running_loop()
            try:
                body, doc = await loop.run_in_executor(None, self._read_file, path)
            except (OSError, ValueError) as e:
                raise SnapshotCorruptError(f"Snapshot {name} is unreadable: {e}", name=name) from e
        return self._meta_from_document(name, path, body, doc), body

    async def read_snapshot_contents(self, name: str) -> dict[str, list[dict[str, Any]]]:
        """Collections (and history) stored in a snapshot.

        Raises:
            NotFoundError: If the snapshot does not exist
            SnapshotCorruptError: If it cannot be parsed
        """
        _, doc = await self._load(name)
        return doc["data"]

    async def restore(self, name: str) -> SnapshotMeta:
        """Replace the live store with a snapshot's contents.

        The snapshot is loaded and validated before the write gate is
        taken, so a missing or corrupt snapshot blocks nothing and changes
        nothing. The snapshot's history replaces the live audit log.

        Raises:
            NotFoundError: If the snapshot does not exist
            SnapshotCorruptError: If it is unreadable or invalid
        """
        meta, doc = await self._load(name)
        try:
            image, missing = image_from_data(doc["data"])
        except ValueError as e:
            raise SnapshotCorruptError(f"Snapshot {meta.name} is invalid: {e}", name=meta.name) from e

        if missing:
            logger.warning(
                "Snapshot lacks collections, restoring them empty",
                extra={"snapshot": meta.name, "missing": missing},
            )

        version = await self.store.replace_all(image, action="restore")
        logger.info(
            "Restored snapshot",
            extra={"snapshot": meta.name, "store_version": version, "counts": image.counts()},
        )
        return meta

    async def delete_snapshot(self, name: str) -> None:
        """Permanently delete a snapshot. The live store is unaffected.

        Raises:
            NotFoundError: If the snapshot does not exist
        """
        name = self.normalize_name(name)
        path = self._path(name)
        async with self._catalog_lock:
            if not path.exists():
                raise NotFoundError("snapshot", name)
            path.unlink()
        logger.info("Deleted snapshot", extra={"snapshot": name})

    async def import_external(self, payload: Any) -> ImportResult:
        """Replace the live store with an external dump.

        Accepts a bare dump ``{collection: [...]}`` or an envelope with a
        ``data`` key. Missing collections are imported as empty with a
        warning. A ``pre-import-backup-<ms>`` snapshot is taken first
        unless disabled.

        Raises:
            SnapshotCorruptError: If the payload is structurally invalid
        """
        data = payload
        if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
            data = payload["data"]

        try:
            image, missing = image_from_data(data)
        except ValueError as e:
            raise SnapshotCorruptError(f"Invalid import payload: {e}") from e

        if missing:
            logger.warning("Missing tables in import", extra={"missing": missing})

        backup = None
        if self.pre_import_backup:
            backup = await self.create_snapshot(f"pre-import-backup-{_now_ms()}")

        version = await self.store.replace_all(image, action="replace")
        logger.info(
            "Imported external dump",
            extra={
                "counts": image.counts(),
                "missing": missing,
                "pre_import_backup": backup.name if backup else None,
            },
        )
        return ImportResult(
            backup=backup,
            counts=image.counts(),
            missing=missing,
            store_version=version,
        )

    async def compare(self, name: str) -> dict[str, CollectionDiff]:
        """Preview what restoring a snapshot would change, per collection.

        Display only: restore itself always replaces wholesale.
        """
        meta, doc = await self._load(name)
        try:
            target, _ = image_from_data(doc["data"])
        except ValueError as e:
            raise SnapshotCorruptError(f"Snapshot {meta.name} is invalid: {e}", name=meta.name) from e
        live = await self.store.capture()
        return compare_images(live, target)

    async def _prune(self) -> list[str]:
        """Delete the oldest snapshots beyond the retention limit.

        Called with the catalog lock held. Failures are logged and skipped.
        """
        snapshots = await self.list_snapshots()
        pruned = []
        for meta in snapshots[self.max_snapshots:]:
            try:
                self._path(meta.name).unlink()
            except OSError as e:
                error = RetentionPruneFailedError(meta.name, str(e))
                logger.warning(error.message, extra={"snapshot": meta.name})
                continue
            pruned.append(meta.name)

        if pruned:
            logger.info(
                "Pruned old snapshots",
                extra={"pruned": pruned, "max_snapshots": self.max_snapshots},
            )
        return pruned

    async def run_auto_backups(self, interval_seconds: float) -> None:
        """Create ``auto-backup-<ms>`` snapshots every interval until stopped."""
        if self._running:
            logger.warning("Automatic backups already running")
            return

        self._running = True
        logger.info("Starting automatic backups", extra={"interval_seconds": interval_seconds})
        try:
            while self._running:
                await asyncio.sleep(interval_seconds)
                if not self._running:
                    break
                try:
                    await self.create_snapshot(f"auto-backup-{_now_ms()}")
                    self._auto_count += 1
                except Exception as e:
                    logger.error(f"Automatic backup failed: {e}", exc_info=True)
        except asyncio.CancelledError:
            logger.info("Automatic backups cancelled")
        finally:
            self._running = False

    def stop_auto_backups(self) -> None:
        self._running = False

    def stats(self) -> dict[str, Any]:
        return {
            "auto_backups_running": self._running,
            "auto_backups_created": self._auto_count,
            "max_snapshots": self.max_snapshots,
        }


def compare_images(live: StoreImage, target: StoreImage) -> dict[str, CollectionDiff]:
    """Per-collection differences between the live image and a target image."""
    result = {}
    for name, cdef in COLLECTIONS.items():
        live_by_id = {r["id"]: r for r in live.collections.get(name, [])}
        target_by_id = {r["id"]: r for r in target.collections.get(name, [])}

        diff = CollectionDiff(
            added=sorted(set(target_by_id) - set(live_by_id)),
            removed=sorted(set(live_by_id) - set(target_by_id)),
        )
        for rid in sorted(set(live_by_id) & set(target_by_id)):
            changes = diff_payloads(cdef, live_by_id[rid], target_by_id[rid])
            if changes:
                diff.changed[rid] = changes
        result[name] = diff
    return result
