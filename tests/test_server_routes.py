"""HTTP-level tests for the vault API."""

from __future__ import annotations

import hashlib
from typing import Callable, Dict

import pytest
from starlette.testclient import TestClient

from vaultsync.server.app import APIServerState, VaultAPIServer

T1 = "2024-05-01T10:00:00Z"
T2 = "2024-05-01T11:00:00Z"


def _auth(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _upload(api: TestClient, token: str, content: bytes, modified: str):
    return api.post(
        "/api/vault/upload",
        content=content,
        headers={
            **_auth(token),
            "Content-Type": "application/octet-stream",
            "X-Kdbx-Content-Modified-At": modified,
        },
    )


def test_health_is_public(api: TestClient):
    response = api.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_lifespan_marks_server_running(vault_server: VaultAPIServer):
    with TestClient(vault_server.create_app()):
        assert vault_server.state is APIServerState.RUNNING
    assert vault_server.state is APIServerState.STOPPED


def test_register_and_login(api: TestClient):
    created = api.post("/api/register", json={"username": "alice", "password": "pw"})
    assert created.status_code == 201
    assert created.json()["username"] == "alice"

    duplicate = api.post("/api/register", json={"username": "alice", "password": "pw"})
    assert duplicate.status_code == 409

    empty = api.post("/api/register", json={"username": "", "password": ""})
    assert empty.status_code == 400

    login = api.post("/api/login", json={"username": "alice", "password": "pw"})
    assert login.status_code == 200
    assert login.json()["token"]

    wrong = api.post("/api/login", json={"username": "alice", "password": "nope"})
    assert wrong.status_code == 401
    assert wrong.json() == {"error": "invalid username or password"}


def test_register_rejects_invalid_json(api: TestClient):
    response = api.post(
        "/api/register", content=b"{not json", headers={"Content-Type": "application/json"}
    )
    assert response.status_code == 400


@pytest.mark.parametrize(
    "method,path",
    [
        ("GET", "/api/vault"),
        ("POST", "/api/vault/upload"),
        ("GET", "/api/vault/download"),
        ("GET", "/api/vault/versions"),
        ("POST", "/api/vault/rollback"),
    ],
)
def test_vault_routes_require_bearer_token(api: TestClient, method: str, path: str):
    assert api.request(method, path).status_code == 401
    assert api.request(method, path, headers=_auth("bogus")).status_code == 401


def test_upload_then_metadata(api: TestClient, login: Callable[..., str]):
    token = login()
    assert api.get("/api/vault", headers=_auth(token)).status_code == 404

    content = b"k" * 100
    uploaded = _upload(api, token, content, T1)
    assert uploaded.status_code == 200

    metadata = api.get("/api/vault", headers=_auth(token))
    assert metadata.status_code == 200
    body = metadata.json()
    assert body["size"] == 100
    assert body["content_modified_at"] == T1
    assert body["checksum"] == hashlib.sha256(content).hexdigest()


def test_upload_validates_headers(api: TestClient, login: Callable[..., str]):
    token = login()

    missing_header = api.post("/api/vault/upload", content=b"data", headers=_auth(token))
    assert missing_header.status_code == 400

    bad_time = _upload(api, token, b"data", "last tuesday")
    assert bad_time.status_code == 400

    empty = _upload(api, token, b"", T1)
    assert empty.status_code == 400


def test_download_streams_vault_with_headers(api: TestClient, login: Callable[..., str]):
    token = login()
    assert api.get("/api/vault/download", headers=_auth(token)).status_code == 404

    _upload(api, token, b"first", T1)
    second = _upload(api, token, b"second", T2).json()

    response = api.get("/api/vault/download", headers=_auth(token))
    assert response.status_code == 200
    assert response.content == b"second"
    assert response.headers["content-disposition"] == 'attachment; filename="vault.kdbx"'
    assert response.headers["x-kdbx-version-id"] == str(second["id"])
    assert response.headers["x-kdbx-content-modified-at"] == T2
    assert response.headers["x-kdbx-checksum"] == hashlib.sha256(b"second").hexdigest()


def test_download_specific_version(api: TestClient, login: Callable[..., str]):
    token = login()
    first = _upload(api, token, b"first", T1).json()
    _upload(api, token, b"second", T2)

    response = api.get(f"/api/vault/download?version_id={first['id']}", headers=_auth(token))
    assert response.content == b"first"

    assert api.get("/api/vault/download?version_id=0", headers=_auth(token)).status_code == 400
    assert api.get("/api/vault/download?version_id=x", headers=_auth(token)).status_code == 400
    assert api.get("/api/vault/download?version_id=999", headers=_auth(token)).status_code == 404


def test_versions_listing_and_paging(api: TestClient, login: Callable[..., str]):
    token = login()
    empty = api.get("/api/vault/versions", headers=_auth(token))
    assert empty.status_code == 200
    assert empty.json() == []

    first = _upload(api, token, b"first", T1).json()
    second = _upload(api, token, b"second", T2).json()

    listed = api.get("/api/vault/versions?limit=10&offset=0", headers=_auth(token))
    assert [v["id"] for v in listed.json()] == [second["id"], first["id"]]
    assert listed.headers["x-total-count"] == "2"

    page = api.get("/api/vault/versions?limit=1&offset=1", headers=_auth(token))
    assert [v["id"] for v in page.json()] == [first["id"]]

    clamped = api.get("/api/vault/versions?limit=0&offset=-4", headers=_auth(token))
    assert len(clamped.json()) == 2

    assert api.get("/api/vault/versions?limit=ten", headers=_auth(token)).status_code == 400


def test_rollback_flow(api: TestClient, login: Callable[..., str]):
    token = login()
    first = _upload(api, token, b"first", T1).json()
    _upload(api, token, b"second", T2)

    response = api.post("/api/vault/rollback", json={"version_id": first["id"]}, headers=_auth(token))
    assert response.status_code == 204

    current = api.get("/api/vault", headers=_auth(token)).json()
    assert current["id"] == first["id"]
    assert current["content_modified_at"] == T1
    assert len(api.get("/api/vault/versions", headers=_auth(token)).json()) == 2


@pytest.mark.parametrize("payload", [{"version_id": 0}, {"version_id": "abc"}, {"version_id": True}, {}, []])
def test_rollback_rejects_invalid_ids(api: TestClient, login: Callable[..., str], payload):
    token = login()
    _upload(api, token, b"first", T1)

    response = api.post("/api/vault/rollback", json=payload, headers=_auth(token))
    assert response.status_code == 400


def test_rollback_to_missing_version(api: TestClient, login: Callable[..., str]):
    token = login()
    _upload(api, token, b"first", T1)

    response = api.post("/api/vault/rollback", json={"version_id": 999}, headers=_auth(token))
    assert response.status_code == 404


def test_cross_user_rollback_is_forbidden(api: TestClient, login: Callable[..., str]):
    alice = login("alice", "pw-a")
    bob = login("bob", "pw-b")
    alice_version = _upload(api, alice, b"alice", T1).json()
    bob_version = _upload(api, bob, b"bob", T1).json()

    response = api.post(
        "/api/vault/rollback", json={"version_id": bob_version["id"]}, headers=_auth(alice)
    )

    assert response.status_code == 403
    assert api.get("/api/vault", headers=_auth(alice)).json()["id"] == alice_version["id"]
    assert api.get("/api/vault", headers=_auth(bob)).json()["id"] == bob_version["id"]


def test_stale_upload_conflict_when_enabled(bundle):
    bundle.merged["server"]["reject_stale_uploads"] = True
    server = VaultAPIServer(bundle)

    with TestClient(server.create_app()) as api:
        api.post("/api/register", json={"username": "alice", "password": "pw"})
        token = api.post("/api/login", json={"username": "alice", "password": "pw"}).json()["token"]

        assert _upload(api, token, b"newer", T2).status_code == 200
        stale = _upload(api, token, b"older", T1)
        assert stale.status_code == 409
        assert "error" in stale.json()
        assert _upload(api, token, b"newer", T2).status_code == 200
        assert api.get("/api/vault/versions", headers=_auth(token)).headers["x-total-count"] == "1"


def test_cors_enabled_when_origins_configured(bundle):
    bundle.merged["server"]["cors_origins"] = ["http://localhost:3000"]
    server = VaultAPIServer(bundle)

    with TestClient(server.create_app()) as api:
        response = api.get("/health", headers={"Origin": "http://localhost:3000"})

    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"


def test_server_status_reports_configuration(vault_server: VaultAPIServer):
    status = vault_server.status()
    assert status["state"] == "stopped"
    assert status["port"] == 8443
    assert status["url"] is None
