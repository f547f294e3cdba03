"""
Backup CLI tool for InventDB.

This tool manages the snapshot catalog without a running server:
- list: Show snapshots, newest first
- create: Capture the store into a new snapshot
- show: Print a snapshot's contents as JSON
- restore: Replace the store with a snapshot
- delete: Remove a snapshot
- export: Upload a snapshot to S3
- import: Replace the store with an external JSON dump

Usage:
    inventdb-backup list
    inventdb-backup create --name before-inventory
    inventdb-backup restore before-inventory
    inventdb-backup import db.json

Directories default to DATA_DIR and BACKUP_DIR from the environment.

Invariants:
    - Restore and import only replace the store after validating the input
    - Exit code is non-zero on any failure
    - Connected browsers are not notified; stop the server before
      restore or import so no client keeps stale state

How to change safely:
    - Add new commands, don't modify existing ones
    - Keep output format stable for scripts
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from ..config import BackupConfig, S3Config, StorageConfig
from ..errors import InventDbError, SnapshotCorruptError
from ..snapshot.exporter import S3SnapshotExporter
from ..snapshot.manager import SnapshotManager, SnapshotMeta
from ..store.collection_store import CollectionStore

logger = logging.getLogger(__name__)


def _format_size(size: int) -> str:
    for unit in ("B", "KB", "MB"):
        if size < 1024:
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"


class BackupCLI:
    """Snapshot operations against a local data and backup directory.

    Example:
        >>> cli = BackupCLI("./data", "./backups")
        >>> await cli.open()
        >>> snapshots = await cli.list()
    """

    def __init__(
        self,
        data_dir: str,
        backup_dir: str,
        db_filename: str = "inventory.db",
        max_snapshots: int = 10,
        pre_import_backup: bool = True,
    ) -> None:
        self.store = CollectionStore(data_dir=data_dir, db_filename=db_filename)
        self.manager = SnapshotManager(
            store=self.store,
            backup_dir=backup_dir,
            max_snapshots=max_snapshots,
            pre_import_backup=pre_import_backup,
        )

    async def open(self) -> None:
        await self.store.initialize()

    async def list(self) -> list[SnapshotMeta]:
        return await self.manager.list_snapshots()

    async def create(self, name: str | None = None) -> SnapshotMeta:
        return await self.manager.create_snapshot(name)

    async def show(self, name: str) -> dict[str, Any]:
        return await self.manager.read_snapshot_contents(name)

    async def restore(self, name: str) -> SnapshotMeta:
        return await self.manager.restore(name)

    async def delete(self, name: str) -> None:
        await self.manager.delete_snapshot(name)

    async def import_file(self, path: str) -> Any:
        """Import a JSON dump file.

        Raises:
            SnapshotCorruptError: If the file is not valid JSON or not a dump
        """
        try:
            payload = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise SnapshotCorruptError(f"Cannot read import file {path}: {e}") from e
        return await self.manager.import_external(payload)

    async def export(self, name: str, s3_config: S3Config) -> str:
        """Upload an existing snapshot to S3."""
        meta, body = await self.manager.read_snapshot_file(name)
        exporter = S3SnapshotExporter(s3_config)
        await exporter.start()
        try:
            return await exporter.export(meta, body)
        finally:
            await exporter.stop()


async def run(args: argparse.Namespace) -> int:
    """Execute one parsed command. Returns the process exit code."""
    cli = BackupCLI(
        data_dir=args.data_dir,
        backup_dir=args.backup_dir,
        db_filename=args.db_filename,
        max_snapshots=args.max_snapshots,
        pre_import_backup=not getattr(args, "no_backup", False),
    )
    await cli.open()

    if args.command == "list":
        snapshots = await cli.list()
        if args.json:
            print(json.dumps([m.to_dict() for m in snapshots], indent=2))
        elif not snapshots:
            print("No snapshots")
        else:
            for meta in snapshots:
                print(f"{meta.name:<40} {meta.timestamp:<34} {_format_size(meta.size):>10}")

    elif args.command == "create":
        meta = await cli.create(args.name)
        print(f"Created snapshot {meta.name} ({_format_size(meta.size)})")

    elif args.command == "show":
        contents = await cli.show(args.name)
        output = json.dumps(contents, indent=2, ensure_ascii=False)
        if args.output:
            Path(args.output).write_text(output, encoding="utf-8")
            print(f"Snapshot written to {args.output}", file=sys.stderr)
        else:
            print(output)

    elif args.command == "restore":
        meta = await cli.restore(args.name)
        print(f"Restored snapshot {meta.name} (taken {meta.timestamp})")

    elif args.command == "delete":
        await cli.delete(args.name)
        print(f"Deleted snapshot {args.name}")

    elif args.command == "export":
        s3_config = S3Config.from_env()
        if args.bucket:
            s3_config = S3Config(
                enabled=True,
                bucket=args.bucket,
                region=s3_config.region,
                endpoint_url=args.endpoint or s3_config.endpoint_url,
                snapshot_prefix=s3_config.snapshot_prefix,
                access_key_id=s3_config.access_key_id,
                secret_access_key=s3_config.secret_access_key,
            )
        key = await cli.export(args.name, s3_config)
        print(f"Exported snapshot to s3://{s3_config.bucket}/{key}")

    elif args.command == "import":
        result = await cli.import_file(args.file)
        if result.missing:
            print(f"Missing tables (imported empty): {', '.join(result.missing)}")
        if result.backup:
            print(f"Pre-import backup: {result.backup.name}")
        total = sum(result.counts.values())
        print(f"Imported {total} rows into {len(result.counts)} tables")

    return 0


def build_parser() -> argparse.ArgumentParser:
    storage = StorageConfig.from_env()
    backup = BackupConfig.from_env()

    parser = argparse.ArgumentParser(description="InventDB snapshot management tool")
    parser.add_argument("--data-dir", default=storage.data_dir, help="Directory of the store")
    parser.add_argument("--db-filename", default=storage.db_filename, help="Store file name")
    parser.add_argument("--backup-dir", default=backup.backup_dir, help="Snapshot directory")
    parser.add_argument(
        "--max-snapshots",
        type=int,
        default=backup.max_snapshots,
        help="Retention limit applied after create",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser("list", help="List snapshots, newest first")
    list_parser.add_argument("--json", action="store_true", help="Print JSON")

    create_parser = subparsers.add_parser("create", help="Create a snapshot")
    create_parser.add_argument("--name", help="Snapshot name (default backup-<ms>)")

    show_parser = subparsers.add_parser("show", help="Print snapshot contents")
    show_parser.add_argument("name", help="Snapshot name")
    show_parser.add_argument("--output", "-o", help="Output file (default: stdout)")

    restore_parser = subparsers.add_parser("restore", help="Restore a snapshot")
    restore_parser.add_argument("name", help="Snapshot name")

    delete_parser = subparsers.add_parser("delete", help="Delete a snapshot")
    delete_parser.add_argument("name", help="Snapshot name")

    export_parser = subparsers.add_parser("export", help="Upload a snapshot to S3")
    export_parser.add_argument("name", help="Snapshot name")
    export_parser.add_argument("--bucket", help="S3 bucket (default S3_BUCKET)")
    export_parser.add_argument("--endpoint", help="S3 endpoint URL (for MinIO)")

    import_parser = subparsers.add_parser("import", help="Import a JSON dump")
    import_parser.add_argument("file", help="Path to the dump")
    import_parser.add_argument(
        "--no-backup", action="store_true", help="Skip the pre-import snapshot"
    )

    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for the backup tool."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    try:
        code = asyncio.run(run(args))
    except InventDbError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
