"""SQLite persistence layer for Cloudfiles.

The database plays the part of the host content system's key-value store: named option slots
(the thumbnail queue lives in one), time-bounded locks, single-shot scheduled events, and the
item table with each item's metadata record and per-item flags.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Callable
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def _utcnow() -> str:
    """Return the current UTC timestamp in ISO format."""

    return datetime.now(timezone.utc).strftime(ISO_FORMAT)


def _offset(seconds: float) -> str:
    return (datetime.now(timezone.utc) + timedelta(seconds=seconds)).strftime(ISO_FORMAT)


def parse_timestamp(value: str) -> datetime:
    """Parse a stored timestamp back into an aware datetime."""

    return datetime.strptime(value, ISO_FORMAT).replace(tzinfo=timezone.utc)


@dataclass(slots=True)
class ItemRecord:
    """One media item as known to the host."""

    id: int
    mime_type: str
    attached_file: Optional[str]
    title: Optional[str]
    metadata: Optional[dict[str, Any]]
    created_at: str
    updated_at: str


class Database:
    """SQLite-backed storage for Cloudfiles state."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = (path or Path.cwd() / "cloudfiles.sqlite").resolve()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Provide a SQLite connection with foreign keys enabled."""

        connection = sqlite3.connect(self.path, check_same_thread=False, timeout=30.0)
        connection.row_factory = sqlite3.Row
        try:
            connection.execute("PRAGMA foreign_keys = ON")
            yield connection
        finally:
            connection.close()

    def initialize(self) -> None:
        """Create tables if they do not exist."""

        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.connect() as connection:
            connection.executescript(
                """
                CREATE TABLE IF NOT EXISTS options (
                    name TEXT PRIMARY KEY,
                    value_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS locks (
                    name TEXT PRIMARY KEY,
                    owner TEXT NOT NULL,
                    acquired_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS events (
                    hook TEXT PRIMARY KEY,
                    run_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS items (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    mime_type TEXT NOT NULL,
                    attached_file TEXT,
                    title TEXT,
                    metadata_json TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS item_flags (
                    item_id INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (item_id, name),
                    FOREIGN KEY(item_id) REFERENCES items(id) ON DELETE CASCADE
                );

                CREATE INDEX IF NOT EXISTS idx_items_mime_type ON items(mime_type);
                """
            )
            connection.commit()

    # Options ---------------------------------------------------------------------------------

    def get_option(self, name: str, default: Any = None) -> Any:
        """Return the decoded value stored in a named slot."""

        with self.connect() as connection:
            row = connection.execute(
                "SELECT value_json FROM options WHERE name = ?", (name,)
            ).fetchone()
        if row is None:
            return default
        return json.loads(row["value_json"])

    def update_option(self, name: str, value: Any) -> None:
        """Replace the value stored in a named slot."""

        with self.connect() as connection:
            connection.execute(
                """
                INSERT INTO options (name, value_json, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    value_json = excluded.value_json,
                    updated_at = excluded.updated_at
                """,
                (name, json.dumps(value), _utcnow()),
            )
            connection.commit()

    def mutate_option(self, name: str, mutator: Callable[[Any], Any], default: Any = None) -> Any:
        """Read-modify-write a named slot inside one write transaction; return the new value."""

        with self.connect() as connection:
            connection.execute("BEGIN IMMEDIATE")
            row = connection.execute(
                "SELECT value_json FROM options WHERE name = ?", (name,)
            ).fetchone()
            current = default if row is None else json.loads(row["value_json"])
            updated = mutator(current)
            connection.execute(
                """
                INSERT INTO options (name, value_json, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    value_json = excluded.value_json,
                    updated_at = excluded.updated_at
                """,
                (name, json.dumps(updated), _utcnow()),
            )
            connection.commit()
        return updated

    # Locks -----------------------------------------------------------------------------------

    def acquire_lock(self, name: str, owner: str, ttl_seconds: float) -> bool:
        """Take the named lock unless a live holder exists; expired holders are replaced."""

        now = _utcnow()
        expires = _offset(ttl_seconds)
        with self.connect() as connection:
            connection.execute("BEGIN IMMEDIATE")
            row = connection.execute(
                "SELECT owner, expires_at FROM locks WHERE name = ?", (name,)
            ).fetchone()
            if row is not None and row["expires_at"] > now:
                connection.rollback()
                return False
            connection.execute(
                """
                INSERT INTO locks (name, owner, acquired_at, expires_at) VALUES (?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    owner = excluded.owner,
                    acquired_at = excluded.acquired_at,
                    expires_at = excluded.expires_at
                """,
                (name, owner, now, expires),
            )
            connection.commit()
        return True

    def release_lock(self, name: str, owner: str) -> bool:
        """Release the lock if `owner` still holds it."""

        with self.connect() as connection:
            cursor = connection.execute(
                "DELETE FROM locks WHERE name = ? AND owner = ?", (name, owner)
            )
            connection.commit()
            return cursor.rowcount > 0

    def lock_holder(self, name: str) -> Optional[str]:
        """Return the current live holder of a lock, if any."""

        with self.connect() as connection:
            row = connection.execute(
                "SELECT owner, expires_at FROM locks WHERE name = ?", (name,)
            ).fetchone()
        if row is None or row["expires_at"] <= _utcnow():
            return None
        return row["owner"]

    # Scheduled events ------------------------------------------------------------------------

    def schedule_event(self, hook: str, delay_seconds: float) -> str:
        """Schedule a single run of `hook`, replacing any existing schedule."""

        run_at = _offset(delay_seconds)
        with self.connect() as connection:
            connection.execute(
                """
                INSERT INTO events (hook, run_at) VALUES (?, ?)
                ON CONFLICT(hook) DO UPDATE SET run_at = excluded.run_at
                """,
                (hook, run_at),
            )
            connection.commit()
        return run_at

    def next_scheduled(self, hook: str) -> Optional[str]:
        """Return when `hook` is next due, or None if it is not scheduled."""

        with self.connect() as connection:
            row = connection.execute("SELECT run_at FROM events WHERE hook = ?", (hook,)).fetchone()
        return row["run_at"] if row else None

    def pop_due_event(self, hook: str) -> bool:
        """Consume the schedule for `hook` if it is due now."""

        with self.connect() as connection:
            cursor = connection.execute(
                "DELETE FROM events WHERE hook = ? AND run_at <= ?", (hook, _utcnow())
            )
            connection.commit()
            return cursor.rowcount > 0

    def clear_event(self, hook: str) -> None:
        with self.connect() as connection:
            connection.execute("DELETE FROM events WHERE hook = ?", (hook,))
            connection.commit()

    # Items -----------------------------------------------------------------------------------

    def add_item(
        self,
        *,
        mime_type: str,
        attached_file: Optional[str],
        title: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ItemRecord:
        """Insert a new item and return it."""

        timestamp = _utcnow()
        with self.connect() as connection:
            cursor = connection.execute(
                """
                INSERT INTO items (mime_type, attached_file, title, metadata_json, created_at,
                                   updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    mime_type,
                    attached_file,
                    title,
                    json.dumps(metadata) if metadata is not None else None,
                    timestamp,
                    timestamp,
                ),
            )
            item_id = cursor.lastrowid
            connection.commit()
        return ItemRecord(
            id=int(item_id),
            mime_type=mime_type,
            attached_file=attached_file,
            title=title,
            metadata=metadata,
            created_at=timestamp,
            updated_at=timestamp,
        )

    def get_item(self, item_id: int) -> Optional[ItemRecord]:
        with self.connect() as connection:
            row = connection.execute(
                """
                SELECT id, mime_type, attached_file, title, metadata_json, created_at, updated_at
                FROM items WHERE id = ?
                """,
                (item_id,),
            ).fetchone()
        return _row_to_item(row) if row else None

    def list_item_ids(
        self,
        *,
        limit: Optional[int] = None,
        offset: int = 0,
        mime_type: Optional[str] = None,
    ) -> list[int]:
        """Return item ids in ascending order, optionally filtered by MIME type or prefix."""

        sql = "SELECT id FROM items"
        params: list[Any] = []
        if mime_type:
            if mime_type.endswith("/"):
                sql += " WHERE mime_type LIKE ?"
                params.append(f"{mime_type}%")
            else:
                sql += " WHERE mime_type = ?"
                params.append(mime_type)
        sql += " ORDER BY id ASC LIMIT ? OFFSET ?"
        params.extend([-1 if limit is None else limit, max(0, offset)])

        with self.connect() as connection:
            rows = connection.execute(sql, params).fetchall()
        return [int(row["id"]) for row in rows]

    def count_items(self) -> int:
        with self.connect() as connection:
            value = connection.execute("SELECT COUNT(*) FROM items").fetchone()[0]
        return int(value)

    def get_metadata(self, item_id: int) -> Optional[dict[str, Any]]:
        """Return the item's metadata record, or None if absent."""

        with self.connect() as connection:
            row = connection.execute(
                "SELECT metadata_json FROM items WHERE id = ?", (item_id,)
            ).fetchone()
        if row is None or row["metadata_json"] is None:
            return None
        return json.loads(row["metadata_json"])

    def update_metadata(self, item_id: int, metadata: dict[str, Any]) -> None:
        with self.connect() as connection:
            connection.execute(
                "UPDATE items SET metadata_json = ?, updated_at = ? WHERE id = ?",
                (json.dumps(metadata), _utcnow(), item_id),
            )
            connection.commit()

    def update_attached_file(self, item_id: int, attached_file: str) -> None:
        with self.connect() as connection:
            connection.execute(
                "UPDATE items SET attached_file = ?, updated_at = ? WHERE id = ?",
                (attached_file, _utcnow(), item_id),
            )
            connection.commit()

    def delete_item(self, item_id: int) -> bool:
        with self.connect() as connection:
            cursor = connection.execute("DELETE FROM items WHERE id = ?", (item_id,))
            connection.commit()
            return cursor.rowcount > 0

    # Item flags ------------------------------------------------------------------------------

    def set_flag(self, item_id: int, name: str, value: str = "1") -> bool:
        """Set a per-item marker; returns False when the item does not exist."""

        with self.connect() as connection:
            cursor = connection.execute(
                """
                INSERT INTO item_flags (item_id, name, value, updated_at)
                SELECT ?, ?, ?, ? WHERE EXISTS (SELECT 1 FROM items WHERE id = ?)
                ON CONFLICT(item_id, name) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (item_id, name, value, _utcnow(), item_id),
            )
            connection.commit()
            return cursor.rowcount > 0

    def get_flag(self, item_id: int, name: str) -> Optional[str]:
        with self.connect() as connection:
            row = connection.execute(
                "SELECT value FROM item_flags WHERE item_id = ? AND name = ?", (item_id, name)
            ).fetchone()
        return row["value"] if row else None

    def delete_flag(self, item_id: int, name: str) -> None:
        with self.connect() as connection:
            connection.execute(
                "DELETE FROM item_flags WHERE item_id = ? AND name = ?", (item_id, name)
            )
            connection.commit()


def _row_to_item(row: sqlite3.Row) -> ItemRecord:
    metadata_json = row["metadata_json"]
    return ItemRecord(
        id=int(row["id"]),
        mime_type=row["mime_type"],
        attached_file=row["attached_file"],
        title=row["title"],
        metadata=json.loads(metadata_json) if metadata_json else None,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
