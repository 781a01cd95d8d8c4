"""Logging helpers for the vaultsync server and client."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
import sys
from typing import Optional, Union

LOG_SUBPATH = Path("logs") / "vaultsync.log"
STRUCTURED_LOG_SUBPATH = Path("logs") / "vaultsync.jsonl"
MAX_BYTES = 5 * 1024 * 1024  # 5 MB per log segment
BACKUP_COUNT = 3
REPO_ROOT = Path(__file__).resolve().parent.parent
FALLBACK_ROOT = REPO_ROOT / ".vaultsync_runtime"


class JSONFormatter(logging.Formatter):
    """Format log records as JSON lines for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def setup_logging(
    data_dir: Path,
    level: Union[str, int] = logging.INFO,
    structured: bool = True,
    console_level: Optional[Union[str, int]] = None,
) -> Path:
    """Configure vaultsync logging with optional structured JSON output.

    Args:
        data_dir: Data directory; logs go to ``<data_dir>/logs``.
        level: Logging level (string name or int constant).
        structured: Whether to also write JSON lines.
        console_level: Separate threshold for the console handler, so the
            interactive client can keep its terminal quiet.

    Returns:
        Path to the primary (text) log file.
    """
    log_path = _resolve_path(data_dir, LOG_SUBPATH, "logs")

    resolved_level = _resolve_level(level)
    text_formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=MAX_BYTES,
        backupCount=BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setFormatter(text_formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(text_formatter)
    if console_level is not None:
        console_handler.setLevel(_resolve_level(console_level))

    logger = logging.getLogger("vaultsync")
    _reset_handlers(logger)
    logger.setLevel(resolved_level)
    logger.addHandler(file_handler)
    logger.addHandler(console_handler)

    if structured:
        json_path = _resolve_path(data_dir, STRUCTURED_LOG_SUBPATH, "structured logs")
        json_handler = RotatingFileHandler(
            json_path,
            maxBytes=MAX_BYTES,
            backupCount=BACKUP_COUNT,
            encoding="utf-8",
        )
        json_handler.setFormatter(JSONFormatter())
        logger.addHandler(json_handler)

    logger.propagate = False

    _silence_third_party()
    return log_path


def _resolve_level(level: Union[str, int]) -> int:
    if isinstance(level, str):
        return getattr(logging, level.upper(), logging.INFO)
    return int(level)


def _resolve_path(data_dir: Path, subpath: Path, label: str) -> Path:
    primary = data_dir / subpath
    try:
        primary.parent.mkdir(parents=True, exist_ok=True)
        return primary
    except PermissionError:
        fallback = FALLBACK_ROOT / subpath
        fallback.parent.mkdir(parents=True, exist_ok=True)
        print(
            f"[config] Unable to write {label} under '{data_dir}'; "
            f"falling back to '{fallback.parent}'.",
            file=sys.stderr,
        )
        return fallback


def _reset_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def _silence_third_party() -> None:
    # Request lines from uvicorn would duplicate the route logs.
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


__all__ = ["setup_logging", "JSONFormatter", "LOG_SUBPATH", "STRUCTURED_LOG_SUBPATH", "FALLBACK_ROOT"]
