"""Sync client orchestrator: one sync attempt as an explicit state machine.

``Idle -> FetchingServerMeta -> FetchingLocalMeta -> Deciding`` and then one of
``Uploading``, ``Downloading``, ``ConflictPending`` or ``NoopDone`` before
returning to ``Idle``. Failures and cancellation return to ``Idle`` from any
state. The local vault file is only replaced after a download has been fully
received and verified.
"""

from __future__ import annotations

import hashlib
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from ..errors import (
    IntegrityError,
    ReadOnlyError,
    SyncCancelledError,
    UnauthorizedError,
    VaultSyncError,
)
from ..models import VaultVersion, format_rfc3339, truncate_to_seconds, utcnow
from .client import DownloadedVault, VaultAPIClient
from .decision import SyncAction, SyncBaseline, decide_sync_action
from .session import SyncSession

logger = logging.getLogger("vaultsync.sync.orchestrator")

ClientFactory = Callable[[str], VaultAPIClient]


class CredentialContainer(Protocol):
    """The external credential-file format; vault bytes are otherwise opaque."""

    def open(self, data: bytes, password: str) -> Any:
        """Decode ``data``; raise ``ValueError`` if it is not a readable vault."""

    def encode(self, decoded: Any, password: str) -> bytes:
        ...


class SyncState(str, Enum):
    IDLE = "idle"
    FETCHING_SERVER_META = "fetching_server_meta"
    FETCHING_LOCAL_META = "fetching_local_meta"
    DECIDING = "deciding"
    UPLOADING = "uploading"
    DOWNLOADING = "downloading"
    CONFLICT_PENDING = "conflict_pending"
    NOOP_DONE = "noop_done"


class SyncEvent(str, Enum):
    START = "start"
    SERVER_META_FETCHED = "server_meta_fetched"
    LOCAL_META_FETCHED = "local_meta_fetched"
    DECIDED_UPLOAD = "decided_upload"
    DECIDED_DOWNLOAD = "decided_download"
    DECIDED_NOOP = "decided_noop"
    DECIDED_CONFLICT = "decided_conflict"
    KEEP_LOCAL = "keep_local"
    KEEP_REMOTE = "keep_remote"
    TRANSFER_COMPLETE = "transfer_complete"
    FINISH = "finish"
    FAILED = "failed"
    CANCELLED = "cancelled"


TRANSITIONS: Dict[Tuple[SyncState, SyncEvent], SyncState] = {
    (SyncState.IDLE, SyncEvent.START): SyncState.FETCHING_SERVER_META,
    (SyncState.FETCHING_SERVER_META, SyncEvent.SERVER_META_FETCHED): SyncState.FETCHING_LOCAL_META,
    (SyncState.FETCHING_LOCAL_META, SyncEvent.LOCAL_META_FETCHED): SyncState.DECIDING,
    (SyncState.DECIDING, SyncEvent.DECIDED_UPLOAD): SyncState.UPLOADING,
    (SyncState.DECIDING, SyncEvent.DECIDED_DOWNLOAD): SyncState.DOWNLOADING,
    (SyncState.DECIDING, SyncEvent.DECIDED_NOOP): SyncState.NOOP_DONE,
    (SyncState.DECIDING, SyncEvent.DECIDED_CONFLICT): SyncState.CONFLICT_PENDING,
    (SyncState.CONFLICT_PENDING, SyncEvent.KEEP_LOCAL): SyncState.UPLOADING,
    (SyncState.CONFLICT_PENDING, SyncEvent.KEEP_REMOTE): SyncState.DOWNLOADING,
    # Explicit user choice outside a conflict (force push / pull).
    (SyncState.IDLE, SyncEvent.KEEP_LOCAL): SyncState.UPLOADING,
    (SyncState.IDLE, SyncEvent.KEEP_REMOTE): SyncState.DOWNLOADING,
    (SyncState.UPLOADING, SyncEvent.TRANSFER_COMPLETE): SyncState.IDLE,
    (SyncState.DOWNLOADING, SyncEvent.TRANSFER_COMPLETE): SyncState.IDLE,
    (SyncState.NOOP_DONE, SyncEvent.FINISH): SyncState.IDLE,
}
for _state in SyncState:
    if _state is not SyncState.IDLE:
        TRANSITIONS[(_state, SyncEvent.FAILED)] = SyncState.IDLE
        TRANSITIONS[(_state, SyncEvent.CANCELLED)] = SyncState.IDLE


class InvalidTransition(RuntimeError):
    def __init__(self, state: SyncState, event: SyncEvent):
        super().__init__(f"event '{event.value}' is not valid in state '{state.value}'")
        self.state = state
        self.event = event


def next_state(state: SyncState, event: SyncEvent) -> SyncState:
    """Pure transition lookup."""
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransition(state, event)


@dataclass
class SyncResult:
    """Outcome of one orchestrator call."""

    success: bool
    outcome: SyncState
    action: Optional[SyncAction] = None
    version_id: Optional[int] = None
    content_modified_at: Optional[datetime] = None
    message: str = ""
    error: Optional[VaultSyncError] = None
    states: List[SyncState] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "outcome": self.outcome.value,
            "action": self.action.value if self.action else None,
            "version_id": self.version_id,
            "content_modified_at": (
                format_rfc3339(self.content_modified_at) if self.content_modified_at else None
            ),
            "message": self.message,
            "states": [state.value for state in self.states],
        }


@dataclass
class PendingConflict:
    local_mod_time: datetime
    server_version: VaultVersion


def local_mod_time(path: Path) -> Optional[datetime]:
    """Last-modified time of the local vault in UTC, or None if it does not exist."""
    try:
        stamp = Path(path).stat().st_mtime
    except FileNotFoundError:
        return None
    return truncate_to_seconds(datetime.fromtimestamp(stamp, timezone.utc))


class SyncOrchestrator:
    """Drives sync attempts for one device.

    Every call takes the ``SyncSession`` to use and an optional cancellation
    event that is checked between steps.
    """

    def __init__(
        self,
        client_factory: ClientFactory,
        baseline_path: Path,
        container: Optional[CredentialContainer] = None,
        password_provider: Optional[Callable[[], str]] = None,
    ):
        self.client_factory = client_factory
        self.baseline_path = Path(baseline_path)
        self.container = container
        self.password_provider = password_provider
        self.pending: Optional[PendingConflict] = None
        self._state = SyncState.IDLE
        self._states: List[SyncState] = []
        self._lock = threading.RLock()

    @property
    def state(self) -> SyncState:
        return self._state

    def dispatch(self, event: SyncEvent) -> SyncState:
        with self._lock:
            new_state = next_state(self._state, event)
            logger.debug("%s --%s--> %s", self._state.value, event.value, new_state.value)
            self._state = new_state
            self._states.append(new_state)
            return new_state

    def baseline(self) -> Optional[SyncBaseline]:
        return SyncBaseline.load(self.baseline_path)

    # ------------------------------------------------------------------ sync

    def sync(self, session: SyncSession, cancel: Optional[threading.Event] = None) -> SyncResult:
        """Run one full attempt from ``Idle``."""
        cancel = cancel or threading.Event()
        self._begin()
        action: Optional[SyncAction] = None
        try:
            client = self._client_for(session)
            self.dispatch(SyncEvent.START)
            self._check_cancel(cancel)

            server_version = client.get_metadata(session.token)
            self.dispatch(SyncEvent.SERVER_META_FETCHED)
            self._check_cancel(cancel)

            local_time = local_mod_time(session.vault_path)
            self.dispatch(SyncEvent.LOCAL_META_FETCHED)

            action = decide_sync_action(
                local_time,
                server_version.content_modified_at if server_version else None,
                baseline=self.baseline(),
                server_version_id=server_version.id if server_version else None,
            )
            logger.info(
                "Sync decision: %s (local %s, server %s)",
                action.value,
                format_rfc3339(local_time) if local_time else "absent",
                format_rfc3339(server_version.content_modified_at) if server_version else "absent",
            )
            self._check_cancel(cancel)

            if action is SyncAction.NOOP:
                self.dispatch(SyncEvent.DECIDED_NOOP)
                self.dispatch(SyncEvent.FINISH)
                return self._result(
                    True,
                    SyncState.NOOP_DONE,
                    action,
                    version=server_version,
                    message="Already in sync." if server_version else "Nothing to sync yet.",
                )

            if action is SyncAction.CONFLICT:
                self.dispatch(SyncEvent.DECIDED_CONFLICT)
                self.pending = PendingConflict(local_time, server_version)
                return self._result(
                    False,
                    SyncState.CONFLICT_PENDING,
                    action,
                    version=server_version,
                    message="Local and server copies both changed; choose /keep-local or /keep-remote.",
                )

            if action is SyncAction.UPLOAD:
                self.dispatch(SyncEvent.DECIDED_UPLOAD)
                version = self._upload(session, client, cancel, local_time)
            else:
                self.dispatch(SyncEvent.DECIDED_DOWNLOAD)
                version = self._download(session, client, cancel, None)
            self.dispatch(SyncEvent.TRANSFER_COMPLETE)
            return self._result(True, self._transfer_state(action), action, version=version)
        except VaultSyncError as exc:
            return self._abort(exc, action)
        except OSError as exc:
            logger.exception("Local file error during sync")
            return self._abort(IntegrityError(f"local file error: {exc}"), action)

    def keep_local(self, session: SyncSession, cancel: Optional[threading.Event] = None) -> SyncResult:
        """Upload the local file, resolving a pending conflict if there is one."""
        cancel = cancel or threading.Event()
        pending = self.pending
        try:
            client = self._client_for(session)
            if not session.can_upload:
                raise ReadOnlyError()
            local_time = local_mod_time(session.vault_path)
            if local_time is None:
                raise IntegrityError(f"no local vault at {session.vault_path}")
        except VaultSyncError as exc:
            return self._refuse(exc, SyncAction.UPLOAD)

        if self._state is SyncState.IDLE:
            self._begin()
        try:
            if pending is not None and local_time <= pending.server_version.content_modified_at:
                # Keep-local must win even against a server that rejects stale uploads.
                local_time = self._touch(session.vault_path)
            self.dispatch(SyncEvent.KEEP_LOCAL)
            version = self._upload(session, client, cancel, local_time)
            self.dispatch(SyncEvent.TRANSFER_COMPLETE)
            self.pending = None
            return self._result(True, SyncState.UPLOADING, SyncAction.UPLOAD, version=version)
        except VaultSyncError as exc:
            return self._abort(exc, SyncAction.UPLOAD)
        except OSError as exc:
            logger.exception("Local file error during upload")
            return self._abort(IntegrityError(f"local file error: {exc}"), SyncAction.UPLOAD)

    def keep_remote(
        self,
        session: SyncSession,
        cancel: Optional[threading.Event] = None,
        version_id: Optional[int] = None,
    ) -> SyncResult:
        """Download the server copy (or ``version_id``) over the local file."""
        cancel = cancel or threading.Event()
        if self._state is SyncState.IDLE:
            self._begin()
        try:
            client = self._client_for(session)
            self.dispatch(SyncEvent.KEEP_REMOTE)
            version = self._download(session, client, cancel, version_id)
            self.dispatch(SyncEvent.TRANSFER_COMPLETE)
            self.pending = None
            return self._result(True, SyncState.DOWNLOADING, SyncAction.DOWNLOAD, version=version)
        except VaultSyncError as exc:
            return self._abort(exc, SyncAction.DOWNLOAD)
        except OSError as exc:
            logger.exception("Local file error during download")
            return self._abort(IntegrityError(f"local file error: {exc}"), SyncAction.DOWNLOAD)

    def abandon(self) -> None:
        """Drop a pending conflict or an interrupted attempt and return to ``Idle``."""
        with self._lock:
            if self._state is not SyncState.IDLE:
                self.dispatch(SyncEvent.CANCELLED)
            self.pending = None

    # ------------------------------------------------------------- transfers

    def _upload(
        self,
        session: SyncSession,
        client: VaultAPIClient,
        cancel: threading.Event,
        local_time: Optional[datetime],
    ) -> VaultVersion:
        if not session.can_upload:
            raise ReadOnlyError()
        if local_time is None:
            raise IntegrityError(f"no local vault at {session.vault_path}")
        self._check_cancel(cancel)

        version = client.upload(session.token, session.vault_path, local_time)
        self._save_baseline(version.id, version.content_modified_at, version.checksum)
        logger.info("Uploaded local vault as version %s", version.id)
        return version

    def _download(
        self,
        session: SyncSession,
        client: VaultAPIClient,
        cancel: threading.Event,
        version_id: Optional[int],
    ) -> DownloadedVault:
        self._check_cancel(cancel)
        downloaded = client.download(session.token, version_id)

        digest = hashlib.sha256(downloaded.content).hexdigest()
        if downloaded.checksum and digest != downloaded.checksum:
            logger.error(
                "Checksum mismatch for version %s: expected %s, got %s",
                downloaded.version_id, downloaded.checksum, digest,
            )
            raise IntegrityError("downloaded vault does not match its checksum")

        target = Path(session.vault_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".part")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(downloaded.content)
                handle.flush()
                os.fsync(handle.fileno())
            self._validate(downloaded.content)
            self._check_cancel(cancel)
            os.replace(tmp_name, target)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

        stamp = downloaded.content_modified_at.timestamp()
        os.utime(target, (stamp, stamp))
        self._save_baseline(downloaded.version_id, downloaded.content_modified_at, digest)
        logger.info("Replaced local vault with version %s", downloaded.version_id)
        return downloaded

    def _validate(self, content: bytes) -> None:
        if self.container is None:
            return
        password = self.password_provider() if self.password_provider else ""
        try:
            self.container.open(content, password)
        except ValueError as exc:
            logger.error("Downloaded vault could not be opened: %s", exc)
            raise IntegrityError("downloaded vault could not be opened with the current password")

    def _save_baseline(self, version_id: int, content_modified_at: datetime, checksum: str) -> None:
        SyncBaseline(version_id, content_modified_at, checksum).save(self.baseline_path)

    @staticmethod
    def _touch(path: Path) -> datetime:
        now = truncate_to_seconds(utcnow())
        stamp = now.timestamp()
        os.utime(path, (stamp, stamp))
        return now

    # --------------------------------------------------------------- helpers

    def _begin(self) -> None:
        with self._lock:
            if self._state is not SyncState.IDLE:
                raise InvalidTransition(self._state, SyncEvent.START)
            self._states = [SyncState.IDLE]

    def _client_for(self, session: SyncSession) -> VaultAPIClient:
        if not session.server_url:
            raise UnauthorizedError("no server configured; use /server <url>")
        if not session.authenticated:
            raise UnauthorizedError("not logged in; use /login <user>")
        return self.client_factory(session.server_url)

    @staticmethod
    def _check_cancel(cancel: threading.Event) -> None:
        if cancel.is_set():
            raise SyncCancelledError()

    @staticmethod
    def _transfer_state(action: SyncAction) -> SyncState:
        return SyncState.UPLOADING if action is SyncAction.UPLOAD else SyncState.DOWNLOADING

    def _refuse(self, exc: VaultSyncError, action: SyncAction) -> SyncResult:
        """Report a failed precondition; state and any pending conflict are kept."""
        logger.warning("Sync request refused: %s", exc.message)
        return SyncResult(
            success=False,
            outcome=self._state,
            action=action,
            message=exc.message,
            error=exc,
            states=[self._state],
        )

    def _abort(self, exc: VaultSyncError, action: Optional[SyncAction]) -> SyncResult:
        event = SyncEvent.CANCELLED if isinstance(exc, SyncCancelledError) else SyncEvent.FAILED
        with self._lock:
            if self._state is not SyncState.IDLE:
                self.dispatch(event)
            self.pending = None
        if event is SyncEvent.CANCELLED:
            logger.info("Sync attempt cancelled")
        else:
            logger.warning("Sync attempt failed: %s", exc.message)
        return SyncResult(
            success=False,
            outcome=SyncState.IDLE,
            action=action,
            message=exc.message,
            error=exc,
            states=list(self._states),
        )

    def _result(
        self,
        success: bool,
        outcome: SyncState,
        action: SyncAction,
        *,
        version: Any = None,
        message: str = "",
    ) -> SyncResult:
        version_id = None
        modified_at = None
        if isinstance(version, VaultVersion):
            version_id, modified_at = version.id, version.content_modified_at
        elif isinstance(version, DownloadedVault):
            version_id, modified_at = version.version_id, version.content_modified_at
        if not message:
            verb = "Uploaded" if action is SyncAction.UPLOAD else "Downloaded"
            message = f"{verb} version {version_id}."
        return SyncResult(
            success=success,
            outcome=outcome,
            action=action,
            version_id=version_id,
            content_modified_at=modified_at,
            message=message,
            states=list(self._states),
        )


__all__ = [
    "CredentialContainer",
    "InvalidTransition",
    "PendingConflict",
    "SyncEvent",
    "SyncOrchestrator",
    "SyncResult",
    "SyncState",
    "TRANSITIONS",
    "local_mod_time",
    "next_state",
]
