"""
Append-only audit log of record mutations.

The log lives in the same SQLite file as the records so that a mutation
and its audit entries commit in one transaction. Callers never write to
the log directly: the collection store appends inside its own write
transaction, and only a full restore or import replaces the log.

Invariants:
    - seq is assigned by SQLite AUTOINCREMENT and never reused, even
      after a restore brings back older entries
    - timestamp is non-decreasing in seq order
    - Entries are immutable once committed

Table schema:
    audit_log:
        - seq INTEGER PRIMARY KEY AUTOINCREMENT
        - collection TEXT
        - record_id TEXT
        - action TEXT (create | update | delete)
        - field_name TEXT (update entries only)
        - old_value TEXT (JSON)
        - new_value TEXT (JSON)
        - user TEXT
        - timestamp INTEGER (Unix ms)
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from collections.abc import Callable, Iterable
from contextlib import AbstractContextManager
from dataclasses import dataclass
from typing import Any

from ..errors import NotFoundError

logger = logging.getLogger(__name__)

ACTIONS = ("create", "update", "delete")

AUDIT_SCHEMA = """
    CREATE TABLE IF NOT EXISTS audit_log (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        collection TEXT NOT NULL,
        record_id TEXT NOT NULL,
        action TEXT NOT NULL,
        field_name TEXT,
        old_value TEXT,
        new_value TEXT,
        user TEXT NOT NULL,
        timestamp INTEGER NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_audit_record
        ON audit_log(collection, record_id, seq DESC);
"""


@dataclass(frozen=True)
class AuditEntry:
    """One committed change.

    Attributes:
        seq: Global commit sequence (None until appended)
        collection: Collection of the changed record
        record_id: Id of the changed record
        action: create, update or delete
        field_name: Changed field (update entries only)
        old_value: Value before the change
        new_value: Value after the change
        user: Acting user
        timestamp: Commit time (Unix ms)
    """

    collection: str
    record_id: str
    action: str
    user: str
    field_name: str | None = None
    old_value: Any = None
    new_value: Any = None
    timestamp: int = 0
    seq: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "seq": self.seq,
            "collection": self.collection,
            "record_id": self.record_id,
            "action": self.action,
            "field_name": self.field_name,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "user": self.user,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> AuditEntry:
        return cls(
            seq=row["seq"],
            collection=row["collection"],
            record_id=row["record_id"],
            action=row["action"],
            field_name=row["field_name"],
            old_value=_decode(row["old_value"]),
            new_value=_decode(row["new_value"]),
            user=row["user"],
            timestamp=row["timestamp"],
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuditEntry:
        """Parse an entry from a snapshot or an imported dump.

        Older dumps name the collection ``table_name`` and the sequence
        ``id``; both spellings are accepted.

        Raises:
            ValueError: If the entry lacks a collection, record id or action
        """
        if not isinstance(data, dict):
            raise ValueError(f"history entry must be an object, got {type(data).__name__}")
        collection = data.get("collection", data.get("table_name"))
        record_id = data.get("record_id")
        action = data.get("action")
        if not collection or record_id is None or not action:
            raise ValueError("history entry requires collection, record_id and action")
        seq = data.get("seq", data.get("id"))
        if isinstance(seq, bool) or not isinstance(seq, int) or seq < 1:
            seq = None
        return cls(
            seq=seq,
            collection=str(collection),
            record_id=str(record_id),
            action=str(action),
            field_name=data.get("field_name"),
            old_value=data.get("old_value"),
            new_value=data.get("new_value"),
            user=str(data.get("user") or "unknown"),
            timestamp=_coerce_timestamp(data.get("timestamp")),
        )


def _encode(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value)


def _decode(raw: str | None) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        # Rows written by older versions stored bare strings
        return raw


def _coerce_timestamp(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return 0


class AuditLog:
    """Queryable, append-only history of mutations.

    Example:
        >>> log = AuditLog(store.connect)
        >>> entries = await log.query(collection="devices", record_id=rid)
    """

    def __init__(
        self,
        connect: Callable[[], AbstractContextManager[sqlite3.Connection]],
        default_limit: int = 100,
    ) -> None:
        """Initialize the audit log.

        Args:
            connect: Factory yielding a configured SQLite connection
            default_limit: Window size for queries without an explicit limit
        """
        self._connect = connect
        self.default_limit = default_limit

    @staticmethod
    def create_schema(conn: sqlite3.Connection) -> None:
        conn.executescript(AUDIT_SCHEMA)

    @staticmethod
    def append(conn: sqlite3.Connection, entries: Iterable[AuditEntry]) -> list[AuditEntry]:
        """Append entries inside the caller's open write transaction.

        Timestamps are clamped to the latest committed timestamp so the
        log stays non-decreasing even if the wall clock steps back.

        Returns:
            The entries as committed, with seq and timestamp assigned
        """
        row = conn.execute("SELECT MAX(timestamp) FROM audit_log").fetchone()
        last = row[0] or 0
        now = max(int(time.time() * 1000), last)

        committed = []
        for entry in entries:
            if entry.action not in ACTIONS:
                raise ValueError(f"Invalid audit action: {entry.action}")
            cursor = conn.execute(
                """
                INSERT INTO audit_log (collection, record_id, action, field_name,
                                       old_value, new_value, user, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.collection,
                    entry.record_id,
                    entry.action,
                    entry.field_name,
                    _encode(entry.old_value),
                    _encode(entry.new_value),
                    entry.user,
                    now,
                ),
            )
            committed.append(
                AuditEntry(
                    seq=cursor.lastrowid,
                    collection=entry.collection,
                    record_id=entry.record_id,
                    action=entry.action,
                    field_name=entry.field_name,
                    old_value=entry.old_value,
                    new_value=entry.new_value,
                    user=entry.user,
                    timestamp=now,
                )
            )
        return committed

    @staticmethod
    def replace(conn: sqlite3.Connection, entries: Iterable[AuditEntry]) -> int:
        """Replace the whole log inside the caller's transaction.

        Entries keep their seq where they carry a unique one; AUTOINCREMENT
        keeps later appends above every seq ever used.

        Returns:
            Number of entries written
        """
        conn.execute("DELETE FROM audit_log")
        count = 0
        used: set[int] = set()
        for entry in sorted(entries, key=lambda e: (e.seq is None, e.seq or 0)):
            seq = entry.seq if entry.seq is not None and entry.seq not in used else None
            if seq is not None:
                used.add(seq)
            conn.execute(
                """
                INSERT INTO audit_log (seq, collection, record_id, action, field_name,
                                       old_value, new_value, user, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    seq,
                    entry.collection,
                    entry.record_id,
                    entry.action,
                    entry.field_name,
                    _encode(entry.old_value),
                    _encode(entry.new_value),
                    entry.user,
                    entry.timestamp,
                ),
            )
            count += 1
        return count

    @staticmethod
    def read_all(conn: sqlite3.Connection) -> list[AuditEntry]:
        """All entries in seq order, using the caller's connection."""
        cursor = conn.execute("SELECT * FROM audit_log ORDER BY seq")
        return [AuditEntry.from_row(row) for row in cursor.fetchall()]

    async def query(
        self,
        collection: str | None = None,
        record_id: str | None = None,
        limit: int | None = None,
    ) -> list[AuditEntry]:
        """Query history, newest first.

        Args:
            collection: Restrict to one collection
            record_id: Restrict to one record (requires collection)
            limit: Maximum entries (defaults to the configured window)

        Returns:
            Matching entries ordered by seq descending
        """
        limit = self.default_limit if limit is None else max(1, int(limit))

        sql = "SELECT * FROM audit_log"
        clauses = []
        params: list[Any] = []
        if collection:
            clauses.append("collection = ?")
            params.append(collection)
        if record_id:
            clauses.append("record_id = ?")
            params.append(record_id)
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY seq DESC LIMIT ?"
        params.append(limit)

        with self._connect() as conn:
            cursor = conn.execute(sql, params)
            return [AuditEntry.from_row(row) for row in cursor.fetchall()]

    async def get(self, seq: int) -> AuditEntry:
        """Fetch one entry by seq.

        Raises:
            NotFoundError: If no entry has that seq
        """
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM audit_log WHERE seq = ?", (seq,)).fetchone()
        if row is None:
            raise NotFoundError("audit entry", str(seq))
        return AuditEntry.from_row(row)

    async def count(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM audit_log").fetchone()[0]
