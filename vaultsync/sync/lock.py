"""Exclusive advisory lock held next to the local vault file."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import IO, Optional

logger = logging.getLogger("vaultsync.sync.lock")

LOCK_SUFFIX = ".lock"


def _try_lock_windows(handle: IO[bytes]) -> bool:
    import msvcrt
    try:
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
    except OSError:
        return False
    return True


def _unlock_windows(handle: IO[bytes]) -> None:
    import msvcrt
    handle.seek(0)
    msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)


def _try_lock_unix(handle: IO[bytes]) -> bool:
    import fcntl
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        return False
    return True


def _unlock_unix(handle: IO[bytes]) -> None:
    import fcntl
    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


if os.name == "nt":
    _try_lock = _try_lock_windows
    _unlock = _unlock_windows
else:
    _try_lock = _try_lock_unix
    _unlock = _unlock_unix


def lock_path_for(vault_path: Path) -> Path:
    vault_path = Path(vault_path)
    return vault_path.with_name(vault_path.name + LOCK_SUFFIX)


class VaultLock:
    """Single-writer lock for one vault file.

    ``acquire`` never blocks: a second process gets ``False`` and is expected
    to continue in read-only mode.
    """

    def __init__(self, vault_path: Path):
        self.vault_path = Path(vault_path)
        self.path = lock_path_for(self.vault_path)
        self._handle: Optional[IO[bytes]] = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def acquire(self) -> bool:
        if self._handle is not None:
            return True
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.path, "a+b")
        if not _try_lock(handle):
            handle.close()
            logger.warning("Vault %s is locked by another process", self.vault_path)
            return False
        self._handle = handle
        logger.info("Acquired lock %s", self.path)
        return True

    def release(self) -> None:
        if self._handle is None:
            return
        try:
            _unlock(self._handle)
        except OSError as exc:
            logger.warning("Failed to unlock %s: %s", self.path, exc)
        finally:
            self._handle.close()
            self._handle = None
        logger.info("Released lock %s", self.path)

    def __enter__(self) -> "VaultLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()


__all__ = ["LOCK_SUFFIX", "VaultLock", "lock_path_for"]
