"""Shared fixtures for server and client tests."""

from __future__ import annotations

import io
from pathlib import Path
from typing import Any, Callable, Iterator
from urllib.error import HTTPError
from urllib.parse import urlsplit

import pytest
from starlette.testclient import TestClient

from vaultsync.configuration import ConfigurationBundle
from vaultsync.server.app import VaultAPIServer
from vaultsync.service import VaultVersioningService
from vaultsync.storage import Database, FilesystemBlobStore


def make_bundle(data_dir: Path, **server_overrides) -> ConfigurationBundle:
    server = {
        "host": "127.0.0.1",
        "port": 8443,
        "database": "state/vaultsync.db",
        "blob_dir": "blobs",
        "token_ttl": 3600,
        "cors_origins": [],
        "reject_stale_uploads": False,
        "max_versions_page": 100,
        "default_versions_page": 20,
    }
    server.update(server_overrides)
    return ConfigurationBundle(
        data_dir=data_dir,
        status="ready",
        merged={
            "logging": {"level": "INFO", "structured": False},
            "ui": {"verbose": False},
            "server": server,
            "client": {
                "server_url": "",
                "vault_path": "vault.kdbx",
                "timeout": 5,
                "session_file": "state/session.json",
                "baseline_file": "state/sync_baseline.json",
            },
        },
    )


@pytest.fixture
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "state" / "vaultsync.db")
    db.initialize()
    return db


@pytest.fixture
def blob_store(tmp_path: Path) -> FilesystemBlobStore:
    store = FilesystemBlobStore(tmp_path / "blobs")
    store.initialize()
    return store


@pytest.fixture
def service(database: Database, blob_store: FilesystemBlobStore) -> VaultVersioningService:
    return VaultVersioningService(database, blob_store)


@pytest.fixture
def bundle(tmp_path: Path) -> ConfigurationBundle:
    return make_bundle(tmp_path / "server")


@pytest.fixture
def vault_server(bundle: ConfigurationBundle) -> VaultAPIServer:
    return VaultAPIServer(bundle)


@pytest.fixture
def api(vault_server: VaultAPIServer) -> Iterator[TestClient]:
    with TestClient(vault_server.create_app()) as client:
        yield client


@pytest.fixture
def login(api: TestClient) -> Callable[..., str]:
    """Register (if needed) and log in, returning a bearer token."""

    def _login(username: str = "alice", password: str = "correct horse") -> str:
        api.post("/api/register", json={"username": username, "password": password})
        response = api.post("/api/login", json={"username": username, "password": password})
        assert response.status_code == 200
        return response.json()["token"]

    return _login


class _ShimResponse:
    def __init__(self, status: int, headers: Any, body: bytes):
        self.status = status
        self.headers = headers
        self._body = body

    def read(self) -> bytes:
        return self._body

    def __enter__(self) -> "_ShimResponse":
        return self

    def __exit__(self, *_exc) -> None:
        return None


@pytest.fixture
def opener(api: TestClient) -> Callable[..., _ShimResponse]:
    """A ``urlopen`` replacement that routes requests into the Starlette app."""

    def _open(req, timeout=None):
        parts = urlsplit(req.full_url)
        path = parts.path + (f"?{parts.query}" if parts.query else "")
        response = api.request(
            req.get_method(),
            path,
            content=req.data,
            headers=dict(req.header_items()),
        )
        if response.status_code >= 400:
            raise HTTPError(
                req.full_url,
                response.status_code,
                response.reason_phrase,
                response.headers,
                io.BytesIO(response.content),
            )
        return _ShimResponse(response.status_code, response.headers, response.content)

    return _open
