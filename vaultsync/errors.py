"""Error taxonomy shared by the versioning service, the HTTP layer and the client."""

from __future__ import annotations

from typing import Optional


class VaultSyncError(Exception):
    """Base class for every classified vaultsync failure."""

    status_code: Optional[int] = 500
    default_message = "internal server error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class NotFoundError(VaultSyncError):
    status_code = 404
    default_message = "not found"


class VaultNotFoundError(NotFoundError):
    """No vault exists for the user, or it has no current version yet."""

    default_message = "vault not found"


class VersionNotFoundError(NotFoundError):
    default_message = "vault version not found"


class ConflictError(VaultSyncError):
    """The upload was rejected because the server holds newer or diverging content."""

    status_code = 409
    default_message = "version conflict: the server holds newer or different content"


class ForbiddenError(VaultSyncError):
    status_code = 403
    default_message = "forbidden"


class UnauthorizedError(VaultSyncError):
    status_code = 401
    default_message = "authentication required"


class MalformedInputError(VaultSyncError):
    status_code = 400
    default_message = "malformed request"


class UsernameTakenError(VaultSyncError):
    status_code = 409
    default_message = "username is already taken"


class InternalError(VaultSyncError):
    status_code = 500
    default_message = "internal server error"


class UploadFailedError(InternalError):
    default_message = "failed to store the uploaded vault"


class APIError(VaultSyncError):
    """Transport-level failure on the client (no HTTP status available)."""

    status_code = None
    default_message = "server unreachable"


class ReadOnlyError(VaultSyncError):
    """The vault lock is held elsewhere, so this process may not upload."""

    status_code = None
    default_message = "vault is open read-only; uploads are disabled"


class IntegrityError(VaultSyncError):
    status_code = None
    default_message = "downloaded vault failed verification"


class SyncCancelledError(VaultSyncError):
    status_code = None
    default_message = "sync cancelled"


_STATUS_TO_ERROR = {
    400: MalformedInputError,
    401: UnauthorizedError,
    403: ForbiddenError,
    404: NotFoundError,
    409: ConflictError,
}


def error_for_status(status_code: int, message: str = "") -> VaultSyncError:
    """Map an HTTP status code back onto the taxonomy (client side)."""
    error_cls = _STATUS_TO_ERROR.get(status_code, InternalError)
    if status_code >= 500 or error_cls is InternalError:
        return InternalError(message or f"server error (status {status_code})")
    return error_cls(message or None)


__all__ = [
    "APIError",
    "ConflictError",
    "ForbiddenError",
    "IntegrityError",
    "InternalError",
    "MalformedInputError",
    "NotFoundError",
    "ReadOnlyError",
    "SyncCancelledError",
    "UnauthorizedError",
    "UploadFailedError",
    "UsernameTakenError",
    "VaultNotFoundError",
    "VaultSyncError",
    "VersionNotFoundError",
    "error_for_status",
]
