"""HTTP route handlers for the vault API server.

Handlers only parse input and map ``VaultSyncError`` subclasses to status
codes; all decisions live in ``VaultVersioningService``.
"""

from __future__ import annotations

import functools
import json
import logging
import tempfile
from typing import Any, Awaitable, BinaryIO, Callable, Iterator, Optional

from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse

from ..errors import MalformedInputError, VaultSyncError
from ..models import format_rfc3339, parse_rfc3339, utcnow
from ..storage.blobs import CHUNK_SIZE

logger = logging.getLogger("vaultsync.server.routes")

MODIFIED_AT_HEADER = "X-Kdbx-Content-Modified-At"
VERSION_ID_HEADER = "X-Kdbx-Version-Id"
CHECKSUM_HEADER = "X-Kdbx-Checksum"
TOTAL_COUNT_HEADER = "X-Total-Count"
DOWNLOAD_FILENAME = "vault.kdbx"
# Upload bodies above this size spill from memory to a temporary file.
SPOOL_MEMORY_LIMIT = 8 * 1024 * 1024

Handler = Callable[[Request], Awaitable[Response]]


def _error_response(exc: VaultSyncError) -> JSONResponse:
    return JSONResponse({"error": exc.message}, status_code=exc.status_code or 500)


def classified(handler: Handler) -> Handler:
    """Turn ``VaultSyncError`` raised by a handler into its JSON error response."""

    @functools.wraps(handler)
    async def wrapper(request: Request) -> Response:
        try:
            return await handler(request)
        except VaultSyncError as exc:
            logger.info(
                "%s %s -> %s (%s)",
                request.method, request.url.path, exc.status_code, exc.message,
            )
            return _error_response(exc)

    return wrapper


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise MalformedInputError("invalid JSON")


def _positive_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise MalformedInputError(f"invalid {name}")
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise MalformedInputError(f"invalid {name}")
    if parsed <= 0 or (isinstance(value, float) and value != parsed):
        raise MalformedInputError(f"invalid {name}")
    return parsed


def _query_int(request: Request, name: str) -> Optional[int]:
    raw = request.query_params.get(name)
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        raise MalformedInputError(f"{name} must be an integer")


def _credentials(body: Any) -> tuple:
    if not isinstance(body, dict):
        raise MalformedInputError("expected a JSON object")
    username = body.get("username")
    password = body.get("password")
    if not isinstance(username, str) or not isinstance(password, str):
        raise MalformedInputError("username and password are required")
    return username, password


async def health_handler(request: Request) -> JSONResponse:
    """Unauthenticated liveness probe."""
    return JSONResponse({
        "status": "ok",
        "timestamp": utcnow().isoformat(),
        "service": "vaultsync",
    })


@classified
async def register_handler(request: Request) -> JSONResponse:
    server = request.app.state.vault_server
    username, password = _credentials(await _json_body(request))
    user_id = await run_in_threadpool(server.users.register, username, password)
    return JSONResponse({"id": user_id, "username": username.strip()}, status_code=201)


@classified
async def login_handler(request: Request) -> JSONResponse:
    server = request.app.state.vault_server
    username, password = _credentials(await _json_body(request))
    user_id = await run_in_threadpool(server.users.authenticate, username, password)
    token = await run_in_threadpool(server.tokens.issue, user_id)
    return JSONResponse({"token": token})


@classified
async def metadata_handler(request: Request) -> JSONResponse:
    """Current version metadata for the authenticated user."""
    service = request.app.state.vault_server.service
    version = await run_in_threadpool(service.get_vault_metadata, request.state.user_id)
    return JSONResponse(version.to_dict())


@classified
async def upload_handler(request: Request) -> JSONResponse:
    """Accept the raw vault bytes as the request body."""
    service = request.app.state.vault_server.service
    user_id = request.state.user_id

    raw_modified = request.headers.get(MODIFIED_AT_HEADER, "")
    if not raw_modified:
        raise MalformedInputError(f"missing {MODIFIED_AT_HEADER} header")
    try:
        modified_at = parse_rfc3339(raw_modified)
    except ValueError:
        raise MalformedInputError(f"{MODIFIED_AT_HEADER} must be an RFC3339 timestamp")

    raw_length = request.headers.get("content-length", "")
    try:
        size = int(raw_length)
    except ValueError:
        raise MalformedInputError("missing or invalid Content-Length")
    if size <= 0:
        raise MalformedInputError("missing or invalid Content-Length")

    content_type = request.headers.get("content-type") or "application/octet-stream"
    logger.info("Upload from user %s: %d bytes, modified %s", user_id, size, raw_modified)

    with tempfile.SpooledTemporaryFile(max_size=SPOOL_MEMORY_LIMIT) as spool:
        async for chunk in request.stream():
            spool.write(chunk)
        spool.seek(0)
        version = await run_in_threadpool(
            service.upload_vault, user_id, spool, size, content_type, modified_at
        )
    return JSONResponse(version.to_dict())


def _iter_blob(stream: BinaryIO) -> Iterator[bytes]:
    try:
        while True:
            chunk = stream.read(CHUNK_SIZE)
            if not chunk:
                break
            yield chunk
    finally:
        stream.close()


@classified
async def download_handler(request: Request) -> Response:
    """Stream the current version, or ``?version_id=N`` when given."""
    service = request.app.state.vault_server.service
    version_id = _query_int(request, "version_id")
    if version_id is not None and version_id <= 0:
        raise MalformedInputError("invalid version_id")

    stream, version = await run_in_threadpool(
        service.download_vault, request.state.user_id, version_id
    )
    headers = {
        "Content-Disposition": f'attachment; filename="{DOWNLOAD_FILENAME}"',
        "Content-Length": str(version.size_bytes),
        VERSION_ID_HEADER: str(version.id),
        MODIFIED_AT_HEADER: format_rfc3339(version.content_modified_at),
        CHECKSUM_HEADER: version.checksum,
    }
    return StreamingResponse(
        _iter_blob(stream),
        media_type="application/octet-stream",
        headers=headers,
    )


@classified
async def versions_handler(request: Request) -> JSONResponse:
    """Paginated version history, newest first."""
    server = request.app.state.vault_server
    user_id = request.state.user_id

    limit = _query_int(request, "limit") or 0
    offset = _query_int(request, "offset") or 0
    if limit <= 0 or limit > server.max_versions_page:
        limit = server.default_versions_page
    if offset < 0:
        offset = 0

    versions = await run_in_threadpool(server.service.list_versions, user_id, limit, offset)
    total = await run_in_threadpool(server.service.count_versions, user_id)
    return JSONResponse(
        [version.to_dict() for version in versions],
        headers={TOTAL_COUNT_HEADER: str(total)},
    )


@classified
async def rollback_handler(request: Request) -> Response:
    service = request.app.state.vault_server.service
    body = await _json_body(request)
    if not isinstance(body, dict):
        raise MalformedInputError("expected a JSON object")
    version_id = _positive_int(body.get("version_id"), "version_id")

    await run_in_threadpool(service.rollback_to_version, request.state.user_id, version_id)
    return Response(status_code=204)


__all__ = [
    "CHECKSUM_HEADER",
    "MODIFIED_AT_HEADER",
    "TOTAL_COUNT_HEADER",
    "VERSION_ID_HEADER",
    "classified",
    "download_handler",
    "health_handler",
    "login_handler",
    "metadata_handler",
    "register_handler",
    "rollback_handler",
    "upload_handler",
    "versions_handler",
]
