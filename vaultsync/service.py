"""Vault versioning service: upload, metadata, listing, download and rollback."""

from __future__ import annotations

import hashlib
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import BinaryIO, Iterator, List, Optional, Tuple

from .errors import (
    ConflictError,
    ForbiddenError,
    InternalError,
    MalformedInputError,
    UploadFailedError,
    VaultNotFoundError,
    VaultSyncError,
)
from .models import VaultVersion, truncate_to_seconds
from .storage.blobs import BlobNotFoundError, BlobStore, BlobStoreError
from .storage.database import Database
from .storage.repositories import VaultRepository, VersionRepository

logger = logging.getLogger("vaultsync.service")

DEFAULT_CONTENT_TYPE = "application/octet-stream"


class HashingReader:
    """File-like wrapper that feeds every byte read through SHA-256."""

    def __init__(self, stream: BinaryIO):
        self._stream = stream
        self._hash = hashlib.sha256()
        self.bytes_read = 0

    def read(self, size: int = -1) -> bytes:
        chunk = self._stream.read(size)
        if chunk:
            self._hash.update(chunk)
            self.bytes_read += len(chunk)
        return chunk

    def hexdigest(self) -> str:
        return self._hash.hexdigest()


@contextmanager
def _database_errors(operation: str, user_id: int) -> Iterator[None]:
    """Translate raw SQLite failures into ``InternalError`` without leaking their text."""
    try:
        yield
    except sqlite3.Error:
        logger.exception("Database failure during %s for user %s", operation, user_id)
        raise InternalError()


class VaultVersioningService:
    """Orchestrates the blob store and both repositories.

    The service is the only writer of ``vaults.current_version_id``.
    """

    def __init__(
        self,
        database: Database,
        blob_store: BlobStore,
        vault_repo: Optional[VaultRepository] = None,
        version_repo: Optional[VersionRepository] = None,
        *,
        reject_stale_uploads: bool = False,
    ):
        self.database = database
        self.blob_store = blob_store
        self.vault_repo = vault_repo or VaultRepository()
        self.version_repo = version_repo or VersionRepository()
        self.reject_stale_uploads = reject_stale_uploads

    def get_vault_metadata(self, user_id: int) -> VaultVersion:
        """Return the current version; ``VaultNotFoundError`` if there is none yet."""
        with _database_errors("metadata lookup", user_id):
            with self.database.connect() as conn:
                _, current = self.vault_repo.get_with_current_version(conn, user_id)
        if current is None:
            logger.info("Vault for user %s has no current version", user_id)
            raise VaultNotFoundError()
        return current

    def upload_vault(
        self,
        user_id: int,
        stream: BinaryIO,
        size_bytes: int,
        content_type: str,
        content_modified_at: datetime,
    ) -> VaultVersion:
        """Store a new immutable version and make it current.

        The blob is written before the transaction opens; the version insert and
        the pointer move commit together or not at all. Returns the version that
        is current afterwards.
        """
        if size_bytes is None or size_bytes <= 0:
            raise MalformedInputError("size must be a positive integer")

        modified_at = truncate_to_seconds(content_modified_at)
        object_key = f"user_{user_id}/vault_{uuid.uuid4().hex}.kdbx"
        reader = HashingReader(stream)

        try:
            self.blob_store.put(
                object_key, reader, size_bytes, content_type or DEFAULT_CONTENT_TYPE
            )
        except (BlobStoreError, OSError):
            logger.exception("Blob upload failed for user %s (key %s)", user_id, object_key)
            raise UploadFailedError()

        checksum = reader.hexdigest()
        logger.info(
            "Stored blob %s for user %s (%d bytes, sha256 %s)",
            object_key, user_id, size_bytes, checksum,
        )

        created: Optional[VaultVersion] = None
        try:
            with _database_errors("upload", user_id):
                with self.database.transaction() as conn:
                    try:
                        vault, current = self.vault_repo.get_with_current_version(conn, user_id)
                    except VaultNotFoundError:
                        vault, current = self.vault_repo.create(conn, user_id), None
                        logger.info("Created vault %s for user %s", vault.id, user_id)

                    if self.reject_stale_uploads and current is not None:
                        if self._is_identical(current, modified_at, checksum):
                            logger.info(
                                "Upload for user %s matches current version %s; nothing to record",
                                user_id, current.id,
                            )
                            self._discard_blob(object_key)
                            return current
                        self._check_not_stale(current, modified_at, checksum, user_id)

                    created = self.version_repo.create(
                        conn,
                        vault_id=vault.id,
                        object_key=object_key,
                        checksum=checksum,
                        size_bytes=size_bytes,
                        content_modified_at=modified_at,
                    )
                    self.vault_repo.update_current_version(conn, vault.id, created.id)
        except VaultSyncError as exc:
            self._discard_blob(object_key)
            if isinstance(exc, (ConflictError, InternalError)):
                raise
            logger.error("Unexpected failure recording upload for user %s: %s", user_id, exc)
            raise InternalError()

        logger.info("User %s vault now at version %s", user_id, created.id)
        return created

    @staticmethod
    def _is_identical(current: VaultVersion, modified_at: datetime, checksum: str) -> bool:
        return current.content_modified_at == modified_at and current.checksum == checksum

    @staticmethod
    def _check_not_stale(
        current: VaultVersion,
        modified_at: datetime,
        checksum: str,
        user_id: int,
    ) -> None:
        if modified_at < current.content_modified_at:
            logger.warning(
                "Rejecting stale upload for user %s (%s older than %s)",
                user_id, modified_at, current.content_modified_at,
            )
            raise ConflictError()
        if modified_at == current.content_modified_at and checksum != current.checksum:
            logger.warning(
                "Rejecting diverging upload for user %s (same timestamp, different checksum)",
                user_id,
            )
            raise ConflictError()

    def _discard_blob(self, object_key: str) -> None:
        """Best-effort removal of a blob no version row references."""
        try:
            self.blob_store.delete(object_key)
        except (BlobStoreError, OSError) as exc:
            logger.warning("Could not remove orphaned blob %s: %s", object_key, exc)

    def download_vault(
        self,
        user_id: int,
        version_id: Optional[int] = None,
    ) -> Tuple[BinaryIO, VaultVersion]:
        """Open a read stream for the current version, or for ``version_id`` if given.

        The caller owns the returned stream and must close it.
        """
        if version_id is None:
            version = self.get_vault_metadata(user_id)
        else:
            version = self._owned_version(user_id, version_id)

        try:
            stream = self.blob_store.get(version.object_key)
        except BlobNotFoundError:
            logger.error(
                "Blob %s for version %s (user %s) is missing", version.object_key, version.id, user_id
            )
            raise VaultNotFoundError()
        except (BlobStoreError, OSError):
            logger.exception("Failed to open blob %s for user %s", version.object_key, user_id)
            raise InternalError()

        logger.info("Serving version %s to user %s", version.id, user_id)
        return stream, version

    def list_versions(self, user_id: int, limit: int, offset: int) -> List[VaultVersion]:
        """Versions newest first; a user without a vault gets an empty list."""
        if limit < 0 or offset < 0:
            raise MalformedInputError("limit and offset must not be negative")
        with _database_errors("version listing", user_id):
            with self.database.connect() as conn:
                try:
                    vault = self.vault_repo.get_by_user(conn, user_id)
                except VaultNotFoundError:
                    return []
                return self.version_repo.list_by_vault(conn, vault.id, limit, offset)

    def count_versions(self, user_id: int) -> int:
        with _database_errors("version count", user_id):
            with self.database.connect() as conn:
                try:
                    vault = self.vault_repo.get_by_user(conn, user_id)
                except VaultNotFoundError:
                    return 0
                return self.version_repo.count_by_vault(conn, vault.id)

    def rollback_to_version(self, user_id: int, version_id: int) -> None:
        """Point the user's vault at an existing version it owns.

        Raises ``VaultNotFoundError`` when the user has no vault,
        ``VersionNotFoundError`` when the version does not exist and
        ``ForbiddenError`` when it belongs to another vault.
        """
        with _database_errors("rollback", user_id):
            with self.database.transaction() as conn:
                vault = self.vault_repo.get_by_user(conn, user_id)
                version = self.version_repo.get(conn, version_id)
                if version.vault_id != vault.id:
                    logger.warning(
                        "User %s attempted rollback to version %s of vault %s",
                        user_id, version_id, version.vault_id,
                    )
                    raise ForbiddenError("version belongs to another vault")
                self.vault_repo.update_current_version(conn, vault.id, version.id)
        logger.info("User %s rolled back to version %s", user_id, version_id)

    def _owned_version(self, user_id: int, version_id: int) -> VaultVersion:
        with _database_errors("version lookup", user_id):
            with self.database.connect() as conn:
                vault = self.vault_repo.get_by_user(conn, user_id)
                version = self.version_repo.get(conn, version_id)
        if version.vault_id != vault.id:
            raise ForbiddenError("version belongs to another vault")
        return version


__all__ = [
    "DEFAULT_CONTENT_TYPE",
    "HashingReader",
    "VaultVersioningService",
]
