"""Layered YAML configuration for the vaultsync server and client."""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, MutableMapping, Optional, Tuple

import yaml

REPO_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_DIR = REPO_ROOT / "config"
DEFAULT_DATA_DIR = "~/.vaultsync"
DATA_DIR_ENV = "VAULTSYNC_DATA_DIR"

DiagnosticLevel = Literal["info", "warning", "error"]
ConfigurationStatus = Literal["ready", "missing", "invalid"]


SchemaSpec = Dict[str, Any]

DEFAULT_PROVISION_PATHS: List[str] = [
    "config",
    "logs",
    "state",
]

# (environment variable, section, key, parser)
ENV_OVERRIDES: List[Tuple[str, str, str, str]] = [
    ("VAULTSYNC_LOG_LEVEL", "logging", "level", "str"),
    ("VAULTSYNC_UI_VERBOSE", "ui", "verbose", "bool"),
    ("VAULTSYNC_SERVER_URL", "client", "server_url", "str"),
    ("VAULTSYNC_VAULT_PATH", "client", "vault_path", "str"),
]

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


CONFIG_SCHEMA: SchemaSpec = {
    "logging": {
        "type": dict,
        "schema": {
            "level": {"type": str, "default": "INFO"},
            "structured": {"type": bool, "default": True},
        },
        "default": {},
    },
    "ui": {
        "type": dict,
        "schema": {
            "verbose": {"type": bool, "default": True},
        },
        "default": {},
    },
    "server": {
        "type": dict,
        "schema": {
            "host": {"type": str, "default": "127.0.0.1"},
            "port": {"type": int, "default": 8443},
            "database": {"type": str, "default": "state/vaultsync.db"},
            "blob_dir": {"type": str, "default": "blobs"},
            "token_ttl": {"type": (int, float), "default": 86400},
            "cors_origins": {"type": list, "item_type": str, "default_factory": list},
            "reject_stale_uploads": {"type": bool, "default": False},
            "max_versions_page": {"type": int, "default": 100},
            "default_versions_page": {"type": int, "default": 20},
        },
        "default": {},
    },
    "client": {
        "type": dict,
        "schema": {
            "server_url": {"type": str, "default": ""},
            "vault_path": {"type": str, "default": "vault.kdbx"},
            "timeout": {"type": (int, float), "default": 30},
            "session_file": {"type": str, "default": "state/session.json"},
            "baseline_file": {"type": str, "default": "state/sync_baseline.json"},
        },
        "default": {},
    },
}


@dataclass
class Diagnostic:
    """Represents a configuration validation or loading issue."""

    level: DiagnosticLevel
    message: str
    source: Optional[Path] = None


@dataclass
class ConfigurationBundle:
    """All configuration data vaultsync needs at runtime."""

    data_dir: Path
    status: ConfigurationStatus
    merged: Dict[str, Any] = field(default_factory=dict)
    repo_defaults: Dict[str, Any] = field(default_factory=dict)
    data_overrides: Dict[str, Any] = field(default_factory=dict)
    env_overrides: Dict[str, Any] = field(default_factory=dict)
    files_loaded: List[Path] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    log_path: Optional[Path] = None

    def section(self, name: str) -> Dict[str, Any]:
        return dict(self.merged.get(name) or {})

    def resolve_path(self, value: str) -> Path:
        """Resolve a configured path; relative values live under ``data_dir``."""
        path = Path(value).expanduser()
        if path.is_absolute():
            return path
        return self.data_dir / path


def resolve_data_dir(
    env: Optional[Mapping[str, str]] = None,
    default: str = DEFAULT_DATA_DIR,
) -> Path:
    """Resolve the data directory from the environment."""

    env_source = os.environ if env is None else env
    raw = env_source.get(DATA_DIR_ENV) or default
    return Path(raw).expanduser()


def provision_data_dir(data_dir: Path) -> List[Path]:
    """Create the data directory layout; returns the directories created."""

    created: List[Path] = []
    for relative in DEFAULT_PROVISION_PATHS:
        target = data_dir / relative
        if not target.exists():
            target.mkdir(parents=True, exist_ok=True)
            created.append(target)
    return created


def load_runtime_configuration(
    data_dir: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> ConfigurationBundle:
    """Load repository defaults, data-directory overrides and environment overrides."""

    env_source = os.environ if env is None else env
    resolved_dir = data_dir or resolve_data_dir(env_source)
    diagnostics: List[Diagnostic] = []
    files_loaded: List[Path] = []

    repo_defaults, repo_files = _load_directory_configs(
        DEFAULT_CONFIG_DIR,
        diagnostics,
        label="repo defaults",
    )
    files_loaded.extend(repo_files)

    status: ConfigurationStatus = "ready"
    data_overrides: Dict[str, Any] = {}

    if not resolved_dir.exists():
        diagnostics.append(
            Diagnostic(
                level="error",
                message=f"Data directory '{resolved_dir}' does not exist.",
            )
        )
        status = "missing"
    elif not resolved_dir.is_dir():
        diagnostics.append(
            Diagnostic(
                level="error",
                message=f"Data path '{resolved_dir}' is not a directory.",
            )
        )
        status = "invalid"
    else:
        data_overrides, override_files = _load_directory_configs(
            resolved_dir / "config",
            diagnostics,
            label="data overrides",
        )
        files_loaded.extend(override_files)

    merged = deepcopy(repo_defaults)
    _deep_merge_dicts(merged, data_overrides)

    env_overrides = _collect_env_overrides(env_source, diagnostics)
    _deep_merge_dicts(merged, env_overrides)

    _validate_schema(merged, diagnostics)

    if status == "ready" and any(diag.level == "error" for diag in diagnostics):
        status = "invalid"

    return ConfigurationBundle(
        data_dir=resolved_dir,
        status=status,
        merged=merged,
        repo_defaults=repo_defaults,
        data_overrides=data_overrides,
        env_overrides=env_overrides,
        files_loaded=files_loaded,
        diagnostics=diagnostics,
    )


def _collect_env_overrides(
    env: Mapping[str, str],
    diagnostics: List[Diagnostic],
) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for name, section, key, parser in ENV_OVERRIDES:
        raw = env.get(name)
        if raw is None or raw == "":
            continue
        value: Any = raw
        if parser == "bool":
            lowered = raw.strip().lower()
            if lowered in _TRUE_VALUES:
                value = True
            elif lowered in _FALSE_VALUES:
                value = False
            else:
                diagnostics.append(
                    Diagnostic(
                        level="warning",
                        message=f"Ignoring {name}={raw!r}; expected a boolean.",
                    )
                )
                continue
        overrides.setdefault(section, {})[key] = value
    return overrides


def _load_directory_configs(
    directory: Path,
    diagnostics: List[Diagnostic],
    label: str,
) -> Tuple[Dict[str, Any], List[Path]]:
    """Load all YAML files from a directory, merging them in order."""

    data: Dict[str, Any] = {}
    loaded_files: List[Path] = []

    if not directory.exists():
        diagnostics.append(
            Diagnostic(
                level="warning",
                message=f"No configuration directory found at '{directory}' ({label}).",
                source=directory,
            )
        )
        return data, loaded_files

    if not directory.is_dir():
        diagnostics.append(
            Diagnostic(
                level="error",
                message=f"Configuration path '{directory}' ({label}) is not a directory.",
                source=directory,
            )
        )
        return data, loaded_files

    yaml_files = sorted(directory.glob("*.yml")) + sorted(directory.glob("*.yaml"))

    for yaml_file in yaml_files:
        try:
            content = yaml.safe_load(yaml_file.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            diagnostics.append(
                Diagnostic(
                    level="error",
                    message=f"Failed to parse '{yaml_file}': {exc}",
                    source=yaml_file,
                )
            )
            continue

        if content is None:
            loaded_files.append(yaml_file)
            continue

        if not isinstance(content, MutableMapping):
            diagnostics.append(
                Diagnostic(
                    level="warning",
                    message=f"Ignoring '{yaml_file}' because it does not contain a mapping.",
                    source=yaml_file,
                )
            )
            continue

        _deep_merge_dicts(data, dict(content))
        loaded_files.append(yaml_file)

    if not loaded_files:
        diagnostics.append(
            Diagnostic(
                level="info",
                message=f"No YAML files found under '{directory}' ({label}).",
                source=directory,
            )
        )

    return data, loaded_files


def _deep_merge_dicts(dest: MutableMapping[str, Any], source: Mapping[str, Any]) -> None:
    """Recursively merge mapping values."""

    for key, value in source.items():
        if (
            key in dest
            and isinstance(dest[key], MutableMapping)
            and isinstance(value, Mapping)
        ):
            _deep_merge_dicts(dest[key], value)
        else:
            dest[key] = deepcopy(value)


def _default_from_spec(spec: SchemaSpec) -> Any:
    if "default_factory" in spec and callable(spec["default_factory"]):
        return spec["default_factory"]()
    return deepcopy(spec.get("default"))


def _validate_schema(config: Dict[str, Any], diagnostics: List[Diagnostic]) -> None:
    _validate_section(config, CONFIG_SCHEMA, "config", diagnostics)


def _type_matches(value: Any, expected_type: Any) -> bool:
    # YAML booleans must not satisfy numeric fields.
    if isinstance(value, bool) and expected_type is not bool:
        if isinstance(expected_type, tuple):
            return bool in expected_type
        return False
    return isinstance(value, expected_type)


def _validate_section(
    target: Dict[str, Any],
    schema: SchemaSpec,
    path: str,
    diagnostics: List[Diagnostic],
) -> None:
    if not isinstance(target, dict):
        diagnostics.append(
            Diagnostic(
                level="error",
                message=f"Configuration section '{path}' must be a mapping.",
            )
        )
        return

    for key in list(target.keys()):
        if key not in schema:
            diagnostics.append(
                Diagnostic(
                    level="warning",
                    message=f"Unknown configuration key '{path}.{key}'.",
                )
            )

    for key, spec in schema.items():
        child_path = f"{path}.{key}"
        if key not in target:
            if "default" in spec or "default_factory" in spec:
                target[key] = _default_from_spec(spec)
                if spec.get("type") is dict:
                    _validate_section(target[key], spec.get("schema", {}), child_path, diagnostics)
            continue

        value = target[key]
        expected_type = spec.get("type")

        if expected_type is dict:
            if not isinstance(value, dict):
                diagnostics.append(
                    Diagnostic(
                        level="error",
                        message=f"'{child_path}' must be a mapping.",
                    )
                )
                target[key] = _default_from_spec(spec) or {}
            _validate_section(target[key], spec.get("schema", {}), child_path, diagnostics)
        elif expected_type is list:
            if not isinstance(value, list):
                diagnostics.append(
                    Diagnostic(
                        level="error",
                        message=f"'{child_path}' must be a list.",
                    )
                )
                target[key] = _default_from_spec(spec) or []
                continue
            item_type = spec.get("item_type")
            if item_type is not None:
                filtered: List[Any] = []
                for idx, item in enumerate(value):
                    if isinstance(item, item_type):
                        filtered.append(item)
                    else:
                        diagnostics.append(
                            Diagnostic(
                                level="error",
                                message=(
                                    f"'{child_path}[{idx}]' must be of type "
                                    f"{item_type.__name__}."
                                ),
                            )
                        )
                target[key] = filtered
        elif expected_type and not _type_matches(value, expected_type):
            if isinstance(expected_type, tuple):
                type_name = ", ".join(t.__name__ for t in expected_type)
            else:
                type_name = expected_type.__name__
            diagnostics.append(
                Diagnostic(
                    level="error",
                    message=f"'{child_path}' must be of type {type_name}.",
                )
            )
            target[key] = _default_from_spec(spec)


__all__ = [
    "CONFIG_SCHEMA",
    "ConfigurationBundle",
    "ConfigurationStatus",
    "DATA_DIR_ENV",
    "DEFAULT_CONFIG_DIR",
    "Diagnostic",
    "load_runtime_configuration",
    "provision_data_dir",
    "resolve_data_dir",
]
