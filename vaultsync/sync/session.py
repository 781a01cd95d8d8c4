"""Explicit client session: server, credentials, lock and write mode."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional

from .lock import VaultLock

logger = logging.getLogger("vaultsync.sync.session")


@dataclass(frozen=True)
class SyncSession:
    """Everything one sync attempt needs, passed explicitly instead of shared.

    Instances are immutable; login, logout and server changes return a new
    session so an attempt in flight keeps seeing the values it started with.
    """

    vault_path: Path
    server_url: str = ""
    token: Optional[str] = None
    username: Optional[str] = None
    lock: Optional[VaultLock] = None
    read_only: bool = False

    @property
    def authenticated(self) -> bool:
        return bool(self.token)

    @property
    def can_upload(self) -> bool:
        return not self.read_only

    def with_server(self, server_url: str) -> "SyncSession":
        # Tokens belong to one server.
        return replace(self, server_url=server_url.rstrip("/"), token=None, username=None)

    def with_login(self, username: str, token: str) -> "SyncSession":
        return replace(self, username=username, token=token)

    def logged_out(self) -> "SyncSession":
        return replace(self, token=None, username=None)

    def to_dict(self) -> Dict[str, Any]:
        """Persisted fields only; the lock and write mode belong to the process."""
        return {
            "server_url": self.server_url,
            "token": self.token,
            "username": self.username,
        }


def open_session(vault_path: Path, server_url: str = "") -> SyncSession:
    """Take the vault lock; if another process holds it, fall back to read-only."""
    lock = VaultLock(vault_path)
    acquired = lock.acquire()
    if not acquired:
        logger.warning("Continuing in read-only mode: uploads are disabled")
    return SyncSession(
        vault_path=Path(vault_path),
        server_url=server_url.rstrip("/"),
        lock=lock if acquired else None,
        read_only=not acquired,
    )


class SessionStore:
    """Keeps server URL and token between runs in a 0600 JSON file."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self, session: SyncSession) -> SyncSession:
        """Overlay stored fields onto ``session``; unreadable files are ignored."""
        if not self.path.exists():
            return session
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable session file %s: %s", self.path, exc)
            return session
        if not isinstance(data, dict):
            return session
        return replace(
            session,
            server_url=str(data.get("server_url") or session.server_url).rstrip("/"),
            token=data.get("token") or None,
            username=data.get("username") or None,
        )

    def save(self, session: SyncSession) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(session.to_dict(), handle, indent=2)
        try:
            self.path.chmod(0o600)
        except OSError:
            pass

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


__all__ = ["SessionStore", "SyncSession", "open_session"]
