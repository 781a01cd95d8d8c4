"""Sync decision policy and the last-synced baseline checkpoint."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from ..models import format_rfc3339, parse_rfc3339, truncate_to_seconds

logger = logging.getLogger("vaultsync.sync.decision")


class SyncAction(str, Enum):
    UPLOAD = "upload"
    DOWNLOAD = "download"
    NOOP = "noop"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class SyncBaseline:
    """What both sides looked like after the last completed transfer."""

    version_id: int
    content_modified_at: datetime
    checksum: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version_id": self.version_id,
            "content_modified_at": format_rfc3339(self.content_modified_at),
            "checksum": self.checksum,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncBaseline":
        return cls(
            version_id=int(data["version_id"]),
            content_modified_at=parse_rfc3339(data["content_modified_at"]),
            checksum=str(data.get("checksum", "")),
        )

    @classmethod
    def load(cls, path: Path) -> Optional["SyncBaseline"]:
        """Read the checkpoint; a missing or unreadable file means no baseline."""
        if not path.exists():
            return None
        try:
            return cls.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring unreadable sync baseline %s: %s", path, exc)
            return None

    def save(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".tmp")
        tmp_path.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")
        os.replace(tmp_path, path)


def decide_sync_action(
    local_mod_time: Optional[datetime],
    server_mod_time: Optional[datetime],
    baseline: Optional[SyncBaseline] = None,
    server_version_id: Optional[int] = None,
) -> SyncAction:
    """Decide what one sync attempt should do.

    ``None`` for ``server_mod_time`` means the server has no version yet;
    ``None`` for ``local_mod_time`` means there is no local file. Times are
    compared at whole-second precision, the precision of the wire format.

    With a baseline, a side counts as changed when it moved away from the
    baseline; if both moved the result is ``CONFLICT``. Without one, the newer
    timestamp wins.
    """
    if server_mod_time is None:
        return SyncAction.UPLOAD if local_mod_time is not None else SyncAction.NOOP
    if local_mod_time is None:
        return SyncAction.DOWNLOAD

    local = truncate_to_seconds(local_mod_time)
    server = truncate_to_seconds(server_mod_time)
    if local == server:
        return SyncAction.NOOP

    if baseline is not None:
        synced_at = truncate_to_seconds(baseline.content_modified_at)
        local_changed = local != synced_at
        if server_version_id is not None:
            server_changed = server_version_id != baseline.version_id
        else:
            server_changed = server != synced_at

        if local_changed and server_changed:
            return SyncAction.CONFLICT
        if local_changed:
            return SyncAction.UPLOAD
        if server_changed:
            return SyncAction.DOWNLOAD

    return SyncAction.UPLOAD if local > server else SyncAction.DOWNLOAD


__all__ = ["SyncAction", "SyncBaseline", "decide_sync_action"]
