"""Slash command registry."""

from __future__ import annotations

from .auth import LOGIN_COMMAND, LOGOUT_COMMAND, REGISTER_COMMAND, SERVER_COMMAND
from .help import COMMAND as HELP_COMMAND
from .help import QUIT_COMMAND
from .status import COMMAND as STATUS_COMMAND
from .sync import KEEP_LOCAL_COMMAND, KEEP_REMOTE_COMMAND, SYNC_COMMAND
from .versions import ROLLBACK_COMMAND, VERSIONS_COMMAND

COMMANDS = [
    STATUS_COMMAND,
    HELP_COMMAND,
    SERVER_COMMAND,
    REGISTER_COMMAND,
    LOGIN_COMMAND,
    LOGOUT_COMMAND,
    SYNC_COMMAND,
    KEEP_LOCAL_COMMAND,
    KEEP_REMOTE_COMMAND,
    VERSIONS_COMMAND,
    ROLLBACK_COMMAND,
    QUIT_COMMAND,
]

__all__ = ["COMMANDS"]
