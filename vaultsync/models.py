"""Vault and vault version records shared by the server and the client."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_rfc3339(value: str) -> datetime:
    """Parse an RFC3339 timestamp into an aware UTC datetime.

    Raises ValueError when the value is empty, malformed or carries no offset.
    """
    raw = (value or "").strip()
    if not raw:
        raise ValueError("empty timestamp")
    if raw.endswith(("Z", "z")):
        raw = raw[:-1] + "+00:00"
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        raise ValueError(f"timestamp '{value}' has no UTC offset")
    return parsed.astimezone(timezone.utc)


def format_rfc3339(value: datetime) -> str:
    """Format a datetime as second-precision RFC3339 in UTC (``...Z``)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def truncate_to_seconds(value: datetime) -> datetime:
    """Drop sub-second precision; the wire format only carries whole seconds."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(microsecond=0)


def _parse_optional(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return parse_rfc3339(value)


@dataclass
class Vault:
    """One logical vault per user; points at its current version."""

    id: int
    user_id: int
    current_version_id: Optional[int]
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "current_version_id": self.current_version_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class VaultVersion:
    """An immutable record of one successful upload."""

    id: int
    vault_id: int
    object_key: str
    checksum: str
    size_bytes: int
    content_modified_at: datetime
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "vault_id": self.vault_id,
            "object_key": self.object_key,
            "checksum": self.checksum,
            "size": self.size_bytes,
            "content_modified_at": format_rfc3339(self.content_modified_at),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VaultVersion":
        return cls(
            id=int(data["id"]),
            vault_id=int(data["vault_id"]),
            object_key=str(data.get("object_key", "")),
            checksum=str(data.get("checksum") or ""),
            size_bytes=int(data.get("size") or 0),
            content_modified_at=parse_rfc3339(data["content_modified_at"]),
            created_at=_parse_optional(data.get("created_at")) or utcnow(),
        )


__all__ = [
    "Vault",
    "VaultVersion",
    "format_rfc3339",
    "parse_rfc3339",
    "truncate_to_seconds",
    "utcnow",
]
