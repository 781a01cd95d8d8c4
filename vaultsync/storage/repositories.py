"""Repositories for the ``vaults`` and ``vault_versions`` tables.

Every method takes the connection to run on, so the versioning service decides
which calls share a transaction.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import List, Optional, Tuple

from ..errors import VaultNotFoundError, VersionNotFoundError
from ..models import Vault, VaultVersion, utcnow
from .database import from_db_timestamp, to_db_timestamp

logger = logging.getLogger("vaultsync.storage.repositories")

_VERSION_COLUMNS = (
    "id, vault_id, object_key, checksum, size_bytes, content_modified_at, created_at"
)


def _row_to_vault(row: sqlite3.Row) -> Vault:
    return Vault(
        id=row["id"],
        user_id=row["user_id"],
        current_version_id=row["current_version_id"],
        created_at=from_db_timestamp(row["created_at"]),
        updated_at=from_db_timestamp(row["updated_at"]),
    )


def _row_to_version(row: sqlite3.Row, prefix: str = "") -> VaultVersion:
    return VaultVersion(
        id=row[f"{prefix}id"],
        vault_id=row[f"{prefix}vault_id"],
        object_key=row[f"{prefix}object_key"],
        checksum=row[f"{prefix}checksum"],
        size_bytes=row[f"{prefix}size_bytes"],
        content_modified_at=from_db_timestamp(row[f"{prefix}content_modified_at"]),
        created_at=from_db_timestamp(row[f"{prefix}created_at"]),
    )


class VaultRepository:
    """Owns ``Vault`` rows and their current-version pointer."""

    def get_by_user(self, conn: sqlite3.Connection, user_id: int) -> Vault:
        row = conn.execute(
            "SELECT id, user_id, current_version_id, created_at, updated_at "
            "FROM vaults WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        if row is None:
            raise VaultNotFoundError()
        return _row_to_vault(row)

    def get_with_current_version(
        self,
        conn: sqlite3.Connection,
        user_id: int,
    ) -> Tuple[Vault, Optional[VaultVersion]]:
        """Fetch the user's vault joined with its current version (None before first upload)."""
        row = conn.execute(
            """
            SELECT
                v.id, v.user_id, v.current_version_id, v.created_at, v.updated_at,
                vv.id AS vv_id, vv.vault_id AS vv_vault_id, vv.object_key AS vv_object_key,
                vv.checksum AS vv_checksum, vv.size_bytes AS vv_size_bytes,
                vv.content_modified_at AS vv_content_modified_at,
                vv.created_at AS vv_created_at
            FROM vaults v
            LEFT JOIN vault_versions vv ON vv.id = v.current_version_id
            WHERE v.user_id = ?
            """,
            (user_id,),
        ).fetchone()
        if row is None:
            raise VaultNotFoundError()

        vault = _row_to_vault(row)
        current = _row_to_version(row, prefix="vv_") if row["vv_id"] is not None else None
        return vault, current

    def create(self, conn: sqlite3.Connection, user_id: int) -> Vault:
        now = utcnow()
        cursor = conn.execute(
            "INSERT INTO vaults (user_id, current_version_id, created_at, updated_at) "
            "VALUES (?, NULL, ?, ?)",
            (user_id, to_db_timestamp(now), to_db_timestamp(now)),
        )
        logger.debug("Created vault %s for user %s", cursor.lastrowid, user_id)
        return Vault(
            id=cursor.lastrowid,
            user_id=user_id,
            current_version_id=None,
            created_at=now,
            updated_at=now,
        )

    def update_current_version(
        self,
        conn: sqlite3.Connection,
        vault_id: int,
        version_id: int,
    ) -> None:
        cursor = conn.execute(
            "UPDATE vaults SET current_version_id = ?, updated_at = ? WHERE id = ?",
            (version_id, to_db_timestamp(utcnow()), vault_id),
        )
        if cursor.rowcount == 0:
            raise VaultNotFoundError()


class VersionRepository:
    """Owns the append-only ``VaultVersion`` rows."""

    def create(
        self,
        conn: sqlite3.Connection,
        vault_id: int,
        object_key: str,
        checksum: str,
        size_bytes: int,
        content_modified_at: datetime,
    ) -> VaultVersion:
        now = utcnow()
        cursor = conn.execute(
            "INSERT INTO vault_versions "
            "(vault_id, object_key, checksum, size_bytes, content_modified_at, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                vault_id,
                object_key,
                checksum,
                size_bytes,
                to_db_timestamp(content_modified_at),
                to_db_timestamp(now),
            ),
        )
        return VaultVersion(
            id=cursor.lastrowid,
            vault_id=vault_id,
            object_key=object_key,
            checksum=checksum,
            size_bytes=size_bytes,
            content_modified_at=content_modified_at,
            created_at=now,
        )

    def get(self, conn: sqlite3.Connection, version_id: int) -> VaultVersion:
        row = conn.execute(
            f"SELECT {_VERSION_COLUMNS} FROM vault_versions WHERE id = ?",
            (version_id,),
        ).fetchone()
        if row is None:
            raise VersionNotFoundError()
        return _row_to_version(row)

    def list_by_vault(
        self,
        conn: sqlite3.Connection,
        vault_id: int,
        limit: int,
        offset: int,
    ) -> List[VaultVersion]:
        """Newest first; ``id`` breaks ties between rows recorded in the same instant."""
        rows = conn.execute(
            f"SELECT {_VERSION_COLUMNS} FROM vault_versions WHERE vault_id = ? "
            "ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
            (vault_id, limit, offset),
        ).fetchall()
        return [_row_to_version(row) for row in rows]

    def count_by_vault(self, conn: sqlite3.Connection, vault_id: int) -> int:
        row = conn.execute(
            "SELECT COUNT(*) AS total FROM vault_versions WHERE vault_id = ?",
            (vault_id,),
        ).fetchone()
        return int(row["total"])


__all__ = ["VaultRepository", "VersionRepository"]
