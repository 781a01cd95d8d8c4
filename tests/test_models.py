"""Tests for vault records and timestamp helpers."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from vaultsync.models import (
    VaultVersion,
    format_rfc3339,
    parse_rfc3339,
    truncate_to_seconds,
)


def test_parse_rfc3339_accepts_zulu_and_offsets():
    assert parse_rfc3339("2024-05-01T10:00:00Z") == datetime(2024, 5, 1, 10, tzinfo=timezone.utc)
    assert parse_rfc3339("2024-05-01T12:00:00+02:00") == datetime(2024, 5, 1, 10, tzinfo=timezone.utc)


@pytest.mark.parametrize("value", ["", "yesterday", "2024-05-01T10:00:00"])
def test_parse_rfc3339_rejects_bad_values(value: str):
    with pytest.raises(ValueError):
        parse_rfc3339(value)


def test_format_rfc3339_drops_fraction_and_normalizes_zone():
    value = datetime(2024, 5, 1, 12, 0, 0, 987654, tzinfo=timezone(timedelta(hours=2)))
    assert format_rfc3339(value) == "2024-05-01T10:00:00Z"


def test_truncate_to_seconds_treats_naive_values_as_utc():
    naive = datetime(2024, 5, 1, 10, 0, 0, 500000)
    assert truncate_to_seconds(naive) == datetime(2024, 5, 1, 10, tzinfo=timezone.utc)


def test_vault_version_json_uses_wire_names():
    modified = datetime(2024, 5, 1, 10, tzinfo=timezone.utc)
    version = VaultVersion(
        id=7,
        vault_id=3,
        object_key="user_1/vault_abc.kdbx",
        checksum="ab" * 32,
        size_bytes=100,
        content_modified_at=modified,
        created_at=modified,
    )

    payload = version.to_dict()

    assert payload["size"] == 100
    assert payload["content_modified_at"] == "2024-05-01T10:00:00Z"
    assert VaultVersion.from_dict(payload) == version
