"""Tests for the layered configuration loader."""

from __future__ import annotations

from pathlib import Path

import pytest

from vaultsync import configuration


def _prepare_repo_defaults(tmp_path: Path, content: str = "logging:\n  level: INFO\n") -> Path:
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    (config_dir / "10-default.yml").write_text(content, encoding="utf-8")
    return config_dir


def test_resolve_data_dir_uses_env_expansion(tmp_path: Path):
    env = {"VAULTSYNC_DATA_DIR": str(tmp_path / "data")}
    assert configuration.resolve_data_dir(env=env) == tmp_path / "data"


def test_resolve_data_dir_defaults_to_home():
    assert configuration.resolve_data_dir(env={}) == Path("~/.vaultsync").expanduser()


def test_load_runtime_configuration_merges_repo_and_data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    repo_dir = _prepare_repo_defaults(tmp_path, content="server:\n  port: 8443\n  host: 0.0.0.0\n")
    data_dir = tmp_path / "data"
    overrides_dir = data_dir / "config"
    overrides_dir.mkdir(parents=True)
    (overrides_dir / "20-overrides.yml").write_text("server:\n  port: 9000\n", encoding="utf-8")
    monkeypatch.setattr(configuration, "DEFAULT_CONFIG_DIR", repo_dir)

    bundle = configuration.load_runtime_configuration(data_dir, env={})

    assert bundle.status == "ready"
    assert bundle.section("server")["port"] == 9000
    assert bundle.section("server")["host"] == "0.0.0.0"
    assert bundle.section("server")["max_versions_page"] == 100
    assert len(bundle.files_loaded) == 2


def test_env_overrides_win(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    repo_dir = _prepare_repo_defaults(tmp_path)
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    monkeypatch.setattr(configuration, "DEFAULT_CONFIG_DIR", repo_dir)

    bundle = configuration.load_runtime_configuration(
        data_dir,
        env={
            "VAULTSYNC_LOG_LEVEL": "DEBUG",
            "VAULTSYNC_UI_VERBOSE": "off",
            "VAULTSYNC_SERVER_URL": "https://vault.example",
        },
    )

    assert bundle.section("logging")["level"] == "DEBUG"
    assert bundle.section("ui")["verbose"] is False
    assert bundle.section("client")["server_url"] == "https://vault.example"


def test_invalid_boolean_env_is_reported(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    repo_dir = _prepare_repo_defaults(tmp_path)
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    monkeypatch.setattr(configuration, "DEFAULT_CONFIG_DIR", repo_dir)

    bundle = configuration.load_runtime_configuration(data_dir, env={"VAULTSYNC_UI_VERBOSE": "maybe"})

    assert bundle.section("ui")["verbose"] is True
    assert any("VAULTSYNC_UI_VERBOSE" in diag.message for diag in bundle.diagnostics)


def test_wrong_types_fall_back_to_defaults(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    repo_dir = _prepare_repo_defaults(
        tmp_path,
        content="server:\n  port: true\n  cors_origins: [ok, 3]\n  surprise: 1\n",
    )
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    monkeypatch.setattr(configuration, "DEFAULT_CONFIG_DIR", repo_dir)

    bundle = configuration.load_runtime_configuration(data_dir, env={})

    server = bundle.section("server")
    assert server["port"] == 8443
    assert server["cors_origins"] == ["ok"]
    assert bundle.status == "invalid"
    messages = [diag.message for diag in bundle.diagnostics]
    assert any("server.port" in message for message in messages)
    assert any("Unknown configuration key 'config.server.surprise'" in message for message in messages)


def test_load_runtime_configuration_reports_missing_data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    repo_dir = _prepare_repo_defaults(tmp_path)
    monkeypatch.setattr(configuration, "DEFAULT_CONFIG_DIR", repo_dir)

    bundle = configuration.load_runtime_configuration(tmp_path / "missing", env={})

    assert bundle.status == "missing"
    assert any(diag.level == "error" for diag in bundle.diagnostics)


def test_load_runtime_configuration_handles_bad_yaml(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    repo_dir = _prepare_repo_defaults(tmp_path)
    data_dir = tmp_path / "data"
    overrides_dir = data_dir / "config"
    overrides_dir.mkdir(parents=True)
    (overrides_dir / "broken.yml").write_text("server: [\n", encoding="utf-8")
    monkeypatch.setattr(configuration, "DEFAULT_CONFIG_DIR", repo_dir)

    bundle = configuration.load_runtime_configuration(data_dir, env={})

    assert bundle.status == "invalid"
    assert any("Failed to parse" in diag.message for diag in bundle.diagnostics)


def test_provision_and_resolve_paths(tmp_path: Path):
    data_dir = tmp_path / "data"
    created = configuration.provision_data_dir(data_dir)

    assert {path.name for path in created} == {"config", "logs", "state"}
    assert configuration.provision_data_dir(data_dir) == []

    bundle = configuration.ConfigurationBundle(data_dir=data_dir, status="ready")
    assert bundle.resolve_path("state/vaultsync.db") == data_dir / "state" / "vaultsync.db"
    assert bundle.resolve_path(str(tmp_path / "elsewhere.db")) == tmp_path / "elsewhere.db"


def test_repository_defaults_cover_the_schema():
    bundle = configuration.load_runtime_configuration(Path("/nonexistent-vaultsync-data"), env={})

    assert not [d for d in bundle.diagnostics if "Unknown configuration key" in d.message]
    assert bundle.section("server")["port"] == 8443
    assert bundle.section("client")["baseline_file"] == "state/sync_baseline.json"
