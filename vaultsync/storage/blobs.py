"""Blob store contract and a filesystem-backed implementation."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Protocol

logger = logging.getLogger("vaultsync.storage.blobs")

CHUNK_SIZE = 64 * 1024


class BlobStoreError(Exception):
    """Raised when the blob store cannot complete a put/get/delete."""


class BlobNotFoundError(BlobStoreError):
    """Raised when no object exists under the requested key."""


class BlobStore(Protocol):
    """Content storage addressed by opaque object keys."""

    def put(self, key: str, stream: BinaryIO, size: int, content_type: str) -> None:
        ...

    def get(self, key: str) -> BinaryIO:
        ...

    def delete(self, key: str) -> None:
        ...


class FilesystemBlobStore:
    """Stores each object as a file under ``root``.

    Objects are written to a temporary file and moved into place only after the
    full declared size has been received, so a key never points at partial data.
    Existing objects are never overwritten.
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def initialize(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def _path_for(self, key: str) -> Path:
        parts = PurePosixPath(key).parts
        if not parts or PurePosixPath(key).is_absolute() or any(p in ("..", ".") for p in parts):
            raise BlobStoreError(f"Invalid object key '{key}'")
        return self.root.joinpath(*parts)

    def put(self, key: str, stream: BinaryIO, size: int, content_type: str) -> None:
        target = self._path_for(key)
        if target.exists():
            raise BlobStoreError(f"Object '{key}' already exists")
        target.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=".upload-")
        written = 0
        try:
            with os.fdopen(fd, "wb") as handle:
                while True:
                    chunk = stream.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    written += len(chunk)
                    if written > size:
                        raise BlobStoreError(
                            f"Object '{key}' exceeds declared size of {size} bytes"
                        )
                    handle.write(chunk)
                handle.flush()
                os.fsync(handle.fileno())
            if written != size:
                raise BlobStoreError(
                    f"Object '{key}' is {written} bytes, expected {size}"
                )
            os.replace(tmp_name, target)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

        logger.info("Stored object '%s' (%d bytes, %s)", key, written, content_type)

    def get(self, key: str) -> BinaryIO:
        target = self._path_for(key)
        try:
            return open(target, "rb")
        except FileNotFoundError as exc:
            raise BlobNotFoundError(f"Object '{key}' not found") from exc
        except OSError as exc:
            raise BlobStoreError(f"Failed to open object '{key}': {exc}") from exc

    def delete(self, key: str) -> None:
        target = self._path_for(key)
        try:
            target.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise BlobStoreError(f"Failed to delete object '{key}': {exc}") from exc
        logger.info("Deleted object '%s'", key)


__all__ = [
    "BlobNotFoundError",
    "BlobStore",
    "BlobStoreError",
    "FilesystemBlobStore",
]
