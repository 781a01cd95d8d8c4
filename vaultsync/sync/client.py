"""HTTP client for the vault API."""

from __future__ import annotations

import json
import logging
import socket
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from ..errors import (
    APIError,
    NotFoundError,
    VaultNotFoundError,
    VersionNotFoundError,
    error_for_status,
)
from ..models import VaultVersion, format_rfc3339, parse_rfc3339

logger = logging.getLogger("vaultsync.sync.client")

MODIFIED_AT_HEADER = "X-Kdbx-Content-Modified-At"
VERSION_ID_HEADER = "X-Kdbx-Version-Id"
CHECKSUM_HEADER = "X-Kdbx-Checksum"
TOTAL_COUNT_HEADER = "X-Total-Count"

# Anything shaped like ``urllib.request.urlopen``.
Opener = Callable[..., Any]


@dataclass
class DownloadedVault:
    """Bytes of one downloaded version plus the metadata headers that came with them."""

    content: bytes
    version_id: int
    content_modified_at: datetime
    checksum: str


class VaultAPIClient:
    """Thin wrapper over the vault HTTP API.

    The bearer token is passed per call by the caller's session; the client
    itself holds no mutable credentials.
    """

    def __init__(
        self,
        server_url: str,
        timeout: float = 30.0,
        opener: Optional[Opener] = None,
    ):
        self.server_url = server_url.rstrip("/")
        self.timeout = timeout
        self._opener = opener or urlopen

    def _request(
        self,
        method: str,
        path: str,
        *,
        token: Optional[str] = None,
        data: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
        query: Optional[Dict[str, Any]] = None,
    ) -> Tuple[int, Any, bytes]:
        url = f"{self.server_url}{path}"
        if query:
            url = f"{url}?{urlencode(query)}"
        all_headers = dict(headers or {})
        if token:
            all_headers["Authorization"] = f"Bearer {token}"

        req = Request(url, data=data, headers=all_headers, method=method)
        logger.debug("%s %s", method, url)
        try:
            with self._opener(req, timeout=self.timeout) as resp:
                return resp.status, resp.headers, resp.read()
        except HTTPError as e:
            raise self._classify_http_error(e) from e
        except URLError as e:
            logger.warning("Connection error on %s %s: %s", method, url, e.reason)
            raise APIError(f"connection error: {e.reason}") from e
        except (socket.timeout, TimeoutError) as e:
            logger.warning("Timed out on %s %s", method, url)
            raise APIError("request timed out") from e

    @staticmethod
    def _classify_http_error(error: HTTPError):
        message = ""
        try:
            body = error.read()
            payload = json.loads(body.decode("utf-8")) if body else {}
            if isinstance(payload, dict):
                message = str(payload.get("error", ""))
        except (ValueError, OSError):
            message = ""
        logger.info("Server answered %s: %s", error.code, message or error.reason)
        return error_for_status(error.code, message)

    def _json(self, method: str, path: str, payload: Dict[str, Any], token: Optional[str] = None) -> Any:
        _, _, body = self._request(
            method,
            path,
            token=token,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )
        return json.loads(body.decode("utf-8")) if body else None

    def health(self) -> Dict[str, Any]:
        _, _, body = self._request("GET", "/health")
        return json.loads(body.decode("utf-8"))

    def register(self, username: str, password: str) -> None:
        self._json("POST", "/api/register", {"username": username, "password": password})

    def login(self, username: str, password: str) -> str:
        """Return a bearer token for the credentials."""
        payload = self._json("POST", "/api/login", {"username": username, "password": password})
        token = (payload or {}).get("token")
        if not token:
            raise APIError("login response did not contain a token")
        return token

    def get_metadata(self, token: str) -> Optional[VaultVersion]:
        """Current server version, or ``None`` when the server has none yet."""
        try:
            _, _, body = self._request("GET", "/api/vault", token=token)
        except NotFoundError:
            return None
        return VaultVersion.from_dict(json.loads(body.decode("utf-8")))

    def upload(self, token: str, vault_path: Path, content_modified_at: datetime) -> VaultVersion:
        content = Path(vault_path).read_bytes()
        _, _, body = self._request(
            "POST",
            "/api/vault/upload",
            token=token,
            data=content,
            headers={
                "Content-Type": "application/octet-stream",
                "Content-Length": str(len(content)),
                MODIFIED_AT_HEADER: format_rfc3339(content_modified_at),
            },
        )
        version = VaultVersion.from_dict(json.loads(body.decode("utf-8")))
        logger.info("Uploaded %d bytes as version %s", len(content), version.id)
        return version

    def download(self, token: str, version_id: Optional[int] = None) -> DownloadedVault:
        query = {"version_id": version_id} if version_id is not None else None
        try:
            _, headers, body = self._request("GET", "/api/vault/download", token=token, query=query)
        except NotFoundError as e:
            missing = VersionNotFoundError if version_id is not None else VaultNotFoundError
            raise missing(e.message) from e

        try:
            downloaded = DownloadedVault(
                content=body,
                version_id=int(headers.get(VERSION_ID_HEADER)),
                content_modified_at=parse_rfc3339(headers.get(MODIFIED_AT_HEADER, "")),
                checksum=headers.get(CHECKSUM_HEADER, ""),
            )
        except (TypeError, ValueError) as e:
            raise APIError(f"download response is missing version headers: {e}") from e
        logger.info("Downloaded version %s (%d bytes)", downloaded.version_id, len(body))
        return downloaded

    def list_versions(self, token: str, limit: int = 20, offset: int = 0) -> Tuple[List[VaultVersion], int]:
        """Return one page of versions (newest first) and the total count."""
        _, headers, body = self._request(
            "GET",
            "/api/vault/versions",
            token=token,
            query={"limit": limit, "offset": offset},
        )
        versions = [VaultVersion.from_dict(item) for item in json.loads(body.decode("utf-8"))]
        try:
            total = int(headers.get(TOTAL_COUNT_HEADER, len(versions)))
        except ValueError:
            total = len(versions)
        return versions, total

    def rollback(self, token: str, version_id: int) -> None:
        self._json("POST", "/api/vault/rollback", {"version_id": version_id}, token=token)
        logger.info("Rolled back to version %s", version_id)


__all__ = ["DownloadedVault", "Opener", "VaultAPIClient"]
