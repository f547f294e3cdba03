"""
Audited collection store for InventDB.

This module manages the single SQLite database that holds:
- Records of every collection with their JSON payloads
- The audit log (see audit_log.py)
- A store-wide version counter bumped by every write transaction

Every mutation persists the record and appends its audit entries in one
SQLite transaction, then publishes a ChangeEvent once the transaction has
committed and the locks are released.

Invariants:
    - One SQLite file holds every collection and the audit log
    - A record write and its audit entries commit as a unit
    - Mutations on one collection are serialized by that collection's lock;
      an update diffs against the previous writer's committed result
    - Every mutation holds the write gate in shared mode; replace_all holds
      it exclusively
    - Reads see committed state only

How to change safely:
    - Schema migrations must be backward compatible
    - Never publish before COMMIT
    - Keep replace_all a single transaction

Table schema:
    records:
        - collection TEXT
        - record_id TEXT
        - data_json TEXT (payload without id/created_at/updated_at)
        - created_at INTEGER (Unix ms)
        - updated_at INTEGER (Unix ms)
        - PRIMARY KEY (collection, record_id)

    store_meta:
        - key TEXT PRIMARY KEY
        - value INTEGER
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..errors import NotFoundError, ValidationFailedError
from ..notify.notifier import ChangeEvent, ChangeNotifier
from ..schema.collections import ALL_COLLECTIONS, COLLECTIONS, HISTORY, get_collection
from ..schema.types import RESERVED_FIELDS
from .audit_log import AuditEntry, AuditLog
from .diff import diff_records
from .gate import WriteGate

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Record:
    """One stored record.

    Attributes:
        collection: Owning collection
        id: Record id, unique within the collection
        data: Field values (never contains reserved fields)
        created_at: Creation timestamp (Unix ms)
        updated_at: Last modification timestamp (Unix ms)
    """

    collection: str
    id: str
    data: dict[str, Any]
    created_at: int
    updated_at: int

    def to_dict(self) -> dict[str, Any]:
        """Flat form used on the wire and in snapshots."""
        result = dict(self.data)
        result["id"] = self.id
        result["created_at"] = self.created_at
        result["updated_at"] = self.updated_at
        return result

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Record:
        return cls(
            collection=row["collection"],
            id=row["record_id"],
            data=json.loads(row["data_json"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class StoreImage:
    """Every collection plus the audit log, as seen by one read transaction.

    Attributes:
        collections: Flat record dicts per collection name
        history: Audit entries in seq order
        store_version: Store version the image was read at
        captured_at: Capture time (Unix ms)
    """

    collections: dict[str, list[dict[str, Any]]]
    history: list[AuditEntry] = field(default_factory=list)
    store_version: int = 0
    captured_at: int = 0

    def to_data(self) -> dict[str, Any]:
        """Dump form: ``{collection: [record...], "history": [entry...]}``."""
        data: dict[str, Any] = {name: list(records) for name, records in self.collections.items()}
        data[HISTORY] = [entry.to_dict() for entry in self.history]
        return data

    def counts(self) -> dict[str, int]:
        result = {name: len(records) for name, records in self.collections.items()}
        result[HISTORY] = len(self.history)
        return result


def _coerce_ms(value: Any, fallback: int) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return fallback
    return int(value)


def _normalize_record(collection: str, raw: Any, now: int) -> dict[str, Any]:
    if not isinstance(raw, dict):
        raise ValueError(f"{collection}: record must be an object, got {type(raw).__name__}")
    rid = raw.get("id")
    if rid is None or rid == "":
        rid = uuid.uuid4().hex
    elif isinstance(rid, bool) or not isinstance(rid, (str, int)):
        raise ValueError(f"{collection}: invalid record id {rid!r}")
    record = {k: v for k, v in raw.items() if k not in RESERVED_FIELDS}
    record["id"] = str(rid)
    record["created_at"] = _coerce_ms(raw.get("created_at"), now)
    record["updated_at"] = _coerce_ms(raw.get("updated_at"), record["created_at"])
    return record


def image_from_data(data: Any) -> tuple[StoreImage, list[str]]:
    """Build a StoreImage from a dump, checking its structure.

    Record values are kept as they are; only the shape is checked. Ids are
    kept in their string form and generated where missing.

    Args:
        data: ``{collection: [record...], "history": [entry...]}``

    Returns:
        Tuple of (image, names of expected keys that were missing)

    Raises:
        ValueError: If the dump is structurally invalid
    """
    if not isinstance(data, dict):
        raise ValueError(f"dump must be an object, got {type(data).__name__}")

    now = _now_ms()
    missing = []
    collections: dict[str, list[dict[str, Any]]] = {}
    for name in COLLECTIONS:
        raw_records = data.get(name)
        if raw_records is None:
            missing.append(name)
            collections[name] = []
            continue
        if not isinstance(raw_records, list):
            raise ValueError(f"{name}: expected a list, got {type(raw_records).__name__}")
        records = [_normalize_record(name, raw, now) for raw in raw_records]
        ids = [r["id"] for r in records]
        if len(ids) != len(set(ids)):
            raise ValueError(f"{name}: duplicate record ids")
        collections[name] = records

    raw_history = data.get(HISTORY)
    if raw_history is None:
        missing.append(HISTORY)
        raw_history = []
    if not isinstance(raw_history, list):
        raise ValueError(f"{HISTORY}: expected a list, got {type(raw_history).__name__}")
    history = [AuditEntry.from_dict(entry) for entry in raw_history]

    return StoreImage(collections=collections, history=history, captured_at=now), missing


class CollectionStore:
    """SQLite-backed store for every collection and its audit log.

    This class provides:
    - Record CRUD with schema validation
    - Atomic audit logging of every change
    - Post-commit change notification
    - Consistent whole-store capture and wholesale replace

    Thread safety:
        Each database connection is created per-operation.
        SQLite handles concurrent access via WAL mode.

    Example:
        >>> store = CollectionStore("/var/lib/inventdb", notifier=notifier)
        >>> await store.initialize()
        >>> record = await store.create("devices", {"name": "PC-1", "model": "X"}, actor="alice")
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        data_dir: str,
        db_filename: str = "inventory.db",
        notifier: ChangeNotifier | None = None,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        history_limit: int = 100,
        reject_noop_updates: bool = False,
    ) -> None:
        """Initialize the collection store.

        Args:
            data_dir: Directory for the SQLite database file
            db_filename: Database file name
            notifier: Change notifier to publish committed changes to
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            history_limit: Default audit query window
            reject_noop_updates: Raise on updates that change nothing
        """
        self.data_dir = Path(data_dir)
        self.db_path = self.data_dir / db_filename
        self.notifier = notifier
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.reject_noop_updates = reject_noop_updates
        self.gate = WriteGate()
        self.audit = AuditLog(self._get_connection, default_limit=history_limit)
        self._locks: dict[str, asyncio.Lock] = {}
        self._initialized = False

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection to the store database.

        Yields:
            SQLite connection in autocommit mode (explicit transactions)
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        finally:
            conn.close()

    @staticmethod
    @contextmanager
    def _write_transaction(conn: sqlite3.Connection) -> Iterator[None]:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS records (
                collection TEXT NOT NULL,
                record_id TEXT NOT NULL,
                data_json TEXT NOT NULL DEFAULT '{}',
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                PRIMARY KEY (collection, record_id)
            );

            CREATE INDEX IF NOT EXISTS idx_records_created
                ON records(collection, created_at DESC);

            CREATE TABLE IF NOT EXISTS store_meta (
                key TEXT PRIMARY KEY,
                value INTEGER NOT NULL
            );

            INSERT OR IGNORE INTO store_meta (key, value) VALUES ('store_version', 0);

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)
        AuditLog.create_schema(conn)

    async def initialize(self) -> None:
        """Create the database file and schema if they don't exist."""
        with self._get_connection() as conn:
            self._create_schema(conn)
        self._initialized = True
        logger.info("Initialized collection store", extra={"db_path": str(self.db_path)})

    async def close(self) -> None:
        """Release the store. Connections are per-operation, so nothing is held."""
        self._initialized = False

    def _lock_for(self, collection: str) -> asyncio.Lock:
        lock = self._locks.get(collection)
        if lock is None:
            lock = self._locks[collection] = asyncio.Lock()
        return lock

    @staticmethod
    def _bump_version(conn: sqlite3.Connection) -> int:
        conn.execute("UPDATE store_meta SET value = value + 1 WHERE key = 'store_version'")
        return conn.execute(
            "SELECT value FROM store_meta WHERE key = 'store_version'"
        ).fetchone()[0]

    def _publish(self, event: ChangeEvent) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.publish(event)
        except Exception:
            logger.exception(
                "Change notification failed",
                extra={"collection": event.collection, "action": event.action},
            )

    @staticmethod
    def _check_payload(collection: str, data: Any) -> None:
        if not isinstance(data, dict):
            raise ValidationFailedError(
                "Payload must be a JSON object",
                errors=[f"got {type(data).__name__}"],
                collection=collection,
            )

    async def store_version(self) -> int:
        """Current store version (number of committed write transactions)."""
        with self._get_connection() as conn:
            row = conn.execute("SELECT value FROM store_meta WHERE key = 'store_version'").fetchone()
            return row[0] if row else 0

    async def create(
        self,
        collection: str,
        data: dict[str, Any],
        actor: str = "anonymous",
    ) -> Record:
        """Create a record.

        Args:
            collection: Collection name
            data: Field values; id/created_at/updated_at are ignored
            actor: User recorded in the audit log

        Returns:
            The created Record

        Raises:
            ValidationFailedError: If the payload does not match the schema
        """
        cdef = get_collection(collection)
        self._check_payload(collection, data)
        payload = cdef.clean(data)
        errors = cdef.validate(payload)
        if errors:
            raise ValidationFailedError(
                f"Invalid {collection} record", errors=errors, collection=collection
            )
        payload = cdef.apply_defaults(payload)

        record_id = uuid.uuid4().hex
        now = _now_ms()
        record = Record(collection, record_id, payload, now, now)

        async with self.gate.shared(), self._lock_for(collection):
            with self._get_connection() as conn, self._write_transaction(conn):
                conn.execute(
                    """
                    INSERT INTO records (collection, record_id, data_json, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (collection, record_id, json.dumps(payload), now, now),
                )
                AuditLog.append(
                    conn,
                    [
                        AuditEntry(
                            collection=collection,
                            record_id=record_id,
                            action="create",
                            new_value=record.to_dict(),
                            user=actor,
                        )
                    ],
                )
                version = self._bump_version(conn)

        logger.debug(
            "Created record",
            extra={
                "collection": collection,
                "record_id": record_id,
                "actor": actor,
                "store_version": version,
            },
        )
        self._publish(ChangeEvent(collection, "create", record_id, record.to_dict()))
        return record

    async def get(self, collection: str, record_id: str) -> Record:
        """Get a record by id.

        Raises:
            NotFoundError: If the record does not exist
        """
        get_collection(collection)
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM records WHERE collection = ? AND record_id = ?",
                (collection, record_id),
            ).fetchone()
        if row is None:
            raise NotFoundError(collection, record_id)
        return Record.from_row(row)

    async def list(self, collection: str) -> list[Record]:
        """All records of a collection, newest first."""
        get_collection(collection)
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                SELECT * FROM records WHERE collection = ?
                ORDER BY created_at DESC, rowid DESC
                """,
                (collection,),
            )
            return [Record.from_row(row) for row in cursor.fetchall()]

    async def count(self, collection: str) -> int:
        get_collection(collection)
        with self._get_connection() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM records WHERE collection = ?", (collection,)
            ).fetchone()[0]

    async def update(
        self,
        collection: str,
        record_id: str,
        partial: dict[str, Any],
        actor: str = "anonymous",
    ) -> Record:
        """Merge a partial payload into a record.

        The diff is computed against the committed record while holding the
        collection lock, so concurrent updates apply in commit order. An
        update that changes nothing returns the current record without an
        audit entry or event, unless reject_noop_updates is set.

        Args:
            collection: Collection name
            record_id: Record id
            partial: Fields to change; reserved fields are ignored
            actor: User recorded in the audit log

        Returns:
            The record after the update

        Raises:
            NotFoundError: If the record does not exist
            ValidationFailedError: If the partial payload is invalid, or it
                changes nothing and reject_noop_updates is set
        """
        cdef = get_collection(collection)
        self._check_payload(collection, partial)
        payload = cdef.clean(partial)
        errors = cdef.validate(payload, partial=True)
        if errors:
            raise ValidationFailedError(
                f"Invalid {collection} update", errors=errors, collection=collection
            )

        async with self.gate.shared(), self._lock_for(collection):
            with self._get_connection() as conn, self._write_transaction(conn):
                row = conn.execute(
                    "SELECT * FROM records WHERE collection = ? AND record_id = ?",
                    (collection, record_id),
                ).fetchone()
                if row is None:
                    raise NotFoundError(collection, record_id)

                current = Record.from_row(row)
                changes = diff_records(cdef, current.data, payload)
                if not changes:
                    if self.reject_noop_updates:
                        raise ValidationFailedError(
                            "Update changes no fields", collection=collection
                        )
                    return current

                merged = dict(current.data)
                for change in changes:
                    merged[change.field] = change.new
                now = max(_now_ms(), current.updated_at)

                conn.execute(
                    """
                    UPDATE records SET data_json = ?, updated_at = ?
                    WHERE collection = ? AND record_id = ?
                    """,
                    (json.dumps(merged), now, collection, record_id),
                )
                AuditLog.append(
                    conn,
                    [
                        AuditEntry(
                            collection=collection,
                            record_id=record_id,
                            action="update",
                            field_name=change.field,
                            old_value=change.old,
                            new_value=change.new,
                            user=actor,
                        )
                        for change in changes
                    ],
                )
                version = self._bump_version(conn)

        record = Record(collection, record_id, merged, current.created_at, now)
        logger.debug(
            "Updated record",
            extra={
                "collection": collection,
                "record_id": record_id,
                "fields": [c.field for c in changes],
                "actor": actor,
                "store_version": version,
            },
        )
        self._publish(ChangeEvent(collection, "update", record_id, record.to_dict()))
        return record

    async def delete(
        self,
        collection: str,
        record_id: str,
        actor: str = "anonymous",
    ) -> Record:
        """Delete a record.

        Returns:
            The record as it was before deletion

        Raises:
            NotFoundError: If the record does not exist
        """
        get_collection(collection)

        async with self.gate.shared(), self._lock_for(collection):
            with self._get_connection() as conn, self._write_transaction(conn):
                row = conn.execute(
                    "SELECT * FROM records WHERE collection = ? AND record_id = ?",
                    (collection, record_id),
                ).fetchone()
                if row is None:
                    raise NotFoundError(collection, record_id)

                record = Record.from_row(row)
                conn.execute(
                    "DELETE FROM records WHERE collection = ? AND record_id = ?",
                    (collection, record_id),
                )
                AuditLog.append(
                    conn,
                    [
                        AuditEntry(
                            collection=collection,
                            record_id=record_id,
                            action="delete",
                            old_value=record.to_dict(),
                            user=actor,
                        )
                    ],
                )
                version = self._bump_version(conn)

        logger.debug(
            "Deleted record",
            extra={
                "collection": collection,
                "record_id": record_id,
                "actor": actor,
                "store_version": version,
            },
        )
        self._publish(ChangeEvent(collection, "delete", record_id, record.to_dict()))
        return record

    async def capture(self, include_history: bool = True) -> StoreImage:
        """Read every collection and the audit log in one read transaction.

        With ``include_history=False`` the audit log is not read and the
        image carries an empty history.

        In WAL mode the transaction reads one committed version of the
        database, so writers are never paused and no collection can
        reflect a write that another collection misses.
        """
        with self._get_connection() as conn:
            conn.execute("BEGIN")
            try:
                version = conn.execute(
                    "SELECT value FROM store_meta WHERE key = 'store_version'"
                ).fetchone()[0]
                collections: dict[str, list[dict[str, Any]]] = {name: [] for name in COLLECTIONS}
                cursor = conn.execute(
                    "SELECT * FROM records ORDER BY collection, created_at DESC, rowid DESC"
                )
                for row in cursor.fetchall():
                    record = Record.from_row(row)
                    collections.setdefault(record.collection, []).append(record.to_dict())
                history = AuditLog.read_all(conn) if include_history else []
            finally:
                conn.execute("COMMIT")

        return StoreImage(
            collections=collections,
            history=history,
            store_version=version,
            captured_at=_now_ms(),
        )

    async def dump(self) -> dict[str, Any]:
        """Whole store as plain data (the db.json export)."""
        image = await self.capture()
        return image.to_data()

    async def replace_all(self, image: StoreImage, action: str = "restore") -> int:
        """Replace every collection and the audit log in one transaction.

        Holds the write gate exclusively, so in-flight mutations finish
        first and new ones wait until the replace commits. On any failure
        the transaction rolls back and the live store is untouched.

        Args:
            image: Validated contents to install
            action: Action of the wildcard event published after commit

        Returns:
            Store version after the replace
        """
        async with self.gate.exclusive():
            with self._get_connection() as conn, self._write_transaction(conn):
                conn.execute("DELETE FROM records")
                for name, records in image.collections.items():
                    # images list newest first; insert oldest first so rowids match list()
                    for raw in reversed(records):
                        conn.execute(
                            """
                            INSERT INTO records (collection, record_id, data_json,
                                                 created_at, updated_at)
                            VALUES (?, ?, ?, ?, ?)
                            """,
                            (
                                name,
                                str(raw["id"]),
                                json.dumps(
                                    {k: v for k, v in raw.items() if k not in RESERVED_FIELDS}
                                ),
                                raw["created_at"],
                                raw["updated_at"],
                            ),
                        )
                AuditLog.replace(conn, image.history)
                version = self._bump_version(conn)

        logger.info(
            "Replaced store contents",
            extra={"action": action, "counts": image.counts(), "store_version": version},
        )
        self._publish(ChangeEvent(ALL_COLLECTIONS, action))
        return version

    async def get_stats(self) -> dict[str, int]:
        """Row counts per collection plus the audit log size."""
        with self._get_connection() as conn:
            counts = {name: 0 for name in COLLECTIONS}
            cursor = conn.execute(
                "SELECT collection, COUNT(*) AS n FROM records GROUP BY collection"
            )
            for row in cursor.fetchall():
                counts[row["collection"]] = row["n"]
            counts[HISTORY] = conn.execute("SELECT COUNT(*) FROM audit_log").fetchone()[0]
        return counts
