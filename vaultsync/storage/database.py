"""SQLite connection factory and schema for the vault tables."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

logger = logging.getLogger("vaultsync.storage.database")

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    username TEXT NOT NULL UNIQUE,
    password_hash TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS auth_tokens (
    token_hash TEXT PRIMARY KEY,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS vaults (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL UNIQUE,
    current_version_id INTEGER REFERENCES vault_versions(id),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS vault_versions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    vault_id INTEGER NOT NULL REFERENCES vaults(id),
    object_key TEXT NOT NULL UNIQUE,
    checksum TEXT NOT NULL,
    size_bytes INTEGER NOT NULL,
    content_modified_at TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_vault_versions_vault_created
    ON vault_versions(vault_id, created_at);

CREATE TRIGGER IF NOT EXISTS vault_versions_immutable
BEFORE UPDATE ON vault_versions
BEGIN
    SELECT RAISE(ABORT, 'vault versions are immutable');
END;

CREATE TRIGGER IF NOT EXISTS vault_versions_append_only
BEFORE DELETE ON vault_versions
BEGIN
    SELECT RAISE(ABORT, 'vault versions cannot be deleted');
END;

CREATE TRIGGER IF NOT EXISTS vaults_current_version_owned
BEFORE UPDATE OF current_version_id ON vaults
WHEN NEW.current_version_id IS NOT NULL
    AND (SELECT vault_id FROM vault_versions WHERE id = NEW.current_version_id) IS NOT NEW.id
BEGIN
    SELECT RAISE(ABORT, 'current version must belong to the vault');
END;
"""


def to_db_timestamp(value: datetime) -> str:
    """Serialize a datetime as a sortable UTC ISO string."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Database:
    """Opens short-lived SQLite connections against one database file.

    Every call gets its own connection so worker threads never share one;
    writers serialize on ``BEGIN IMMEDIATE``.
    """

    def __init__(self, db_path: Path, timeout: float = 30.0):
        self.db_path = Path(db_path)
        self.timeout = timeout

    def initialize(self) -> None:
        """Create the database file and tables."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._open()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA)
        finally:
            conn.close()
        logger.info("Database ready at %s", self.db_path)

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Yield an autocommit connection for reads."""
        conn = self._open()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection inside ``BEGIN IMMEDIATE``; commit on success, roll back on error."""
        conn = self._open()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()


__all__ = ["Database", "SCHEMA", "from_db_timestamp", "to_db_timestamp"]
