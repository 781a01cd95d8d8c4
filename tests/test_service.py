"""Tests for the vault versioning service."""

from __future__ import annotations

import hashlib
import io
import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from vaultsync.errors import (
    ConflictError,
    ForbiddenError,
    InternalError,
    MalformedInputError,
    UploadFailedError,
    VaultNotFoundError,
    VersionNotFoundError,
)
from vaultsync.service import HashingReader, VaultVersioningService
from vaultsync.storage import BlobStoreError, Database, FilesystemBlobStore, VaultRepository

T1 = datetime(2024, 5, 1, 10, 0, 0, tzinfo=timezone.utc)
T2 = T1 + timedelta(hours=1)


def _upload(service: VaultVersioningService, user_id: int, content: bytes, modified: datetime):
    return service.upload_vault(
        user_id, io.BytesIO(content), len(content), "application/octet-stream", modified
    )


def _stored_blobs(blob_store: FilesystemBlobStore):
    return sorted(p for p in blob_store.root.rglob("*.kdbx"))


def test_hashing_reader_tracks_digest():
    reader = HashingReader(io.BytesIO(b"abcdef"))
    assert reader.read(4) == b"abcd"
    assert reader.read() == b"ef"
    assert reader.bytes_read == 6
    assert reader.hexdigest() == hashlib.sha256(b"abcdef").hexdigest()


def test_first_upload_creates_vault_and_current_version(service: VaultVersioningService):
    with pytest.raises(VaultNotFoundError):
        service.get_vault_metadata(1)

    content = b"x" * 100
    created = _upload(service, 1, content, T1)
    current = service.get_vault_metadata(1)

    assert current.id == created.id
    assert current.size_bytes == 100
    assert current.content_modified_at == T1
    assert current.checksum == hashlib.sha256(content).hexdigest()
    assert current.object_key.startswith("user_1/vault_")


def test_upload_truncates_modified_time_to_seconds(service: VaultVersioningService):
    created = _upload(service, 1, b"data", T1.replace(microsecond=123456))
    assert created.content_modified_at == T1


def test_two_uploads_list_newest_first(service: VaultVersioningService):
    first = _upload(service, 1, b"first", T1)
    second = _upload(service, 1, b"second", T2)

    versions = service.list_versions(1, limit=10, offset=0)

    assert [v.id for v in versions] == [second.id, first.id]
    assert versions[0].content_modified_at == T2
    assert service.get_vault_metadata(1).id == second.id
    assert service.count_versions(1) == 2


def test_version_ids_strictly_increase(service: VaultVersioningService):
    ids = [_upload(service, 1, f"v{i}".encode(), T1 + timedelta(minutes=i)).id for i in range(4)]
    assert ids == sorted(ids)
    assert len(set(ids)) == 4


def test_rollback_moves_pointer_and_keeps_history(service: VaultVersioningService):
    first = _upload(service, 1, b"first", T1)
    second = _upload(service, 1, b"second", T2)

    service.rollback_to_version(1, first.id)

    assert service.get_vault_metadata(1).content_modified_at == T1
    assert [v.id for v in service.list_versions(1, 10, 0)] == [second.id, first.id]


def test_rollback_twice_is_idempotent(service: VaultVersioningService):
    first = _upload(service, 1, b"first", T1)
    _upload(service, 1, b"second", T2)

    service.rollback_to_version(1, first.id)
    once = (service.get_vault_metadata(1), service.list_versions(1, 10, 0))
    service.rollback_to_version(1, first.id)
    twice = (service.get_vault_metadata(1), service.list_versions(1, 10, 0))

    assert once == twice


def test_rollback_to_other_users_version_is_forbidden(service: VaultVersioningService):
    mine = _upload(service, 1, b"mine", T1)
    theirs = _upload(service, 2, b"theirs", T1)

    with pytest.raises(ForbiddenError):
        service.rollback_to_version(1, theirs.id)

    assert service.get_vault_metadata(1).id == mine.id
    assert service.get_vault_metadata(2).id == theirs.id


def test_rollback_errors_for_missing_vault_or_version(service: VaultVersioningService):
    with pytest.raises(VaultNotFoundError):
        service.rollback_to_version(1, 1)

    _upload(service, 1, b"data", T1)
    with pytest.raises(VersionNotFoundError):
        service.rollback_to_version(1, 999)


def test_download_streams_current_or_requested_version(service: VaultVersioningService):
    first = _upload(service, 1, b"first", T1)
    _upload(service, 1, b"second", T2)

    stream, version = service.download_vault(1)
    with stream:
        assert stream.read() == b"second"
    assert version.content_modified_at == T2

    stream, version = service.download_vault(1, first.id)
    with stream:
        assert stream.read() == b"first"
    assert version.id == first.id


def test_download_of_foreign_version_is_forbidden(service: VaultVersioningService):
    _upload(service, 1, b"mine", T1)
    theirs = _upload(service, 2, b"theirs", T1)

    with pytest.raises(ForbiddenError):
        service.download_vault(1, theirs.id)


def test_download_without_vault_is_not_found(service: VaultVersioningService):
    with pytest.raises(VaultNotFoundError):
        service.download_vault(1)


def test_list_versions_without_vault_is_empty(service: VaultVersioningService):
    assert service.list_versions(1, 10, 0) == []
    assert service.count_versions(1) == 0


def test_list_versions_rejects_negative_paging(service: VaultVersioningService):
    with pytest.raises(MalformedInputError):
        service.list_versions(1, -1, 0)


@pytest.mark.parametrize("size", [0, -5])
def test_upload_requires_positive_size(service: VaultVersioningService, size: int):
    with pytest.raises(MalformedInputError):
        service.upload_vault(1, io.BytesIO(b""), size, "application/octet-stream", T1)


def test_storage_failure_aborts_before_database_writes(
    database: Database, blob_store: FilesystemBlobStore, monkeypatch: pytest.MonkeyPatch
):
    service = VaultVersioningService(database, blob_store)

    def broken_put(*_args, **_kwargs):
        raise BlobStoreError("disk full")

    monkeypatch.setattr(blob_store, "put", broken_put)

    with pytest.raises(UploadFailedError):
        _upload(service, 1, b"data", T1)
    with pytest.raises(VaultNotFoundError):
        service.get_vault_metadata(1)


def test_declared_size_mismatch_is_upload_failure(service: VaultVersioningService):
    with pytest.raises(UploadFailedError):
        service.upload_vault(1, io.BytesIO(b"short"), 50, "application/octet-stream", T1)


def test_pointer_update_failure_rolls_back_version_row(
    database: Database, blob_store: FilesystemBlobStore, monkeypatch: pytest.MonkeyPatch
):
    service = VaultVersioningService(database, blob_store)
    first = _upload(service, 1, b"first", T1)

    def failing_update(self, conn, vault_id, version_id):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(VaultRepository, "update_current_version", failing_update)

    with pytest.raises(InternalError) as excinfo:
        _upload(service, 1, b"second", T2)

    assert "locked" not in excinfo.value.message
    assert service.get_vault_metadata(1).id == first.id
    assert [v.id for v in service.list_versions(1, 10, 0)] == [first.id]
    assert _stored_blobs(blob_store) == [blob_store.root / first.object_key]


def test_upload_count_matches_version_rows(service: VaultVersioningService):
    for minute in range(5):
        _upload(service, 1, f"rev {minute}".encode(), T1 + timedelta(minutes=minute))
    assert service.count_versions(1) == 5
    assert len(service.list_versions(1, 100, 0)) == 5


def test_last_writer_wins_by_default(service: VaultVersioningService):
    _upload(service, 1, b"newer", T2)
    older = _upload(service, 1, b"older", T1)

    assert service.get_vault_metadata(1).id == older.id


def test_stale_upload_rejected_when_enabled(
    database: Database, blob_store: FilesystemBlobStore
):
    service = VaultVersioningService(database, blob_store, reject_stale_uploads=True)
    current = _upload(service, 1, b"newer", T2)

    with pytest.raises(ConflictError):
        _upload(service, 1, b"older", T1)
    with pytest.raises(ConflictError):
        _upload(service, 1, b"diverging", T2)

    assert service.get_vault_metadata(1).id == current.id
    assert service.count_versions(1) == 1
    assert len(_stored_blobs(blob_store)) == 1


def test_identical_reupload_is_noop_when_stale_checks_enabled(
    database: Database, blob_store: FilesystemBlobStore
):
    service = VaultVersioningService(database, blob_store, reject_stale_uploads=True)
    current = _upload(service, 1, b"same", T1)

    again = _upload(service, 1, b"same", T1)

    assert again.id == current.id
    assert service.count_versions(1) == 1
    assert len(_stored_blobs(blob_store)) == 1
