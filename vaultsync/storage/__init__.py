"""Persistence for vault metadata (SQLite) and vault contents (blob store)."""

from __future__ import annotations

from .blobs import BlobNotFoundError, BlobStore, BlobStoreError, FilesystemBlobStore
from .database import Database
from .repositories import VaultRepository, VersionRepository

__all__ = [
    "BlobNotFoundError",
    "BlobStore",
    "BlobStoreError",
    "Database",
    "FilesystemBlobStore",
    "VaultRepository",
    "VersionRepository",
]
