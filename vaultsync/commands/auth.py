"""Slash commands for choosing a server and managing the login."""

from __future__ import annotations

import logging
from typing import List

from ..errors import VaultSyncError
from ..screens import ScreenEvent, ScreenState
from ..slash_commands import SlashCommand, SlashCommandContext

logger = logging.getLogger("vaultsync.commands.auth")

_NOT_BUSY = frozenset(state for state in ScreenState if state is not ScreenState.BUSY)


def _server_handler(context: SlashCommandContext, args: List[str]) -> str:
    runtime = context.runtime
    if not args:
        current = runtime.session.server_url or "(not set)"
        return f"[server] Current server: {current}. Usage: /server <url>"

    url = args[0].strip()
    if not url.startswith(("http://", "https://")):
        return "[server] The URL must start with http:// or https://."

    runtime.set_session(runtime.session.with_server(url))
    runtime.orchestrator.abandon()
    runtime.screen.dispatch(ScreenEvent.SERVER_SET)
    logger.info("Server set to %s", url)
    return f"[server] Using {runtime.session.server_url}. Log in with /login <user> or /register <user>."


def _register_handler(context: SlashCommandContext, args: List[str]) -> str:
    runtime = context.runtime
    if not args:
        return "[register] Usage: /register <user>"
    if not runtime.session.server_url:
        return "[register] Set a server first with /server <url>."

    username = args[0]
    password = runtime.ask_password(f"Password for new user '{username}'")
    if not password:
        return "[register] A password is required."
    if runtime.ask_password("Repeat password") != password:
        return "[register] Passwords do not match."

    client = runtime.client()
    try:
        runtime.run_in_background("Registering…", lambda: client.register(username, password))
    except VaultSyncError as exc:
        return f"[register] Failed: {exc.message}"
    return f"[register] User '{username}' created. Log in with /login {username}."


def _login_handler(context: SlashCommandContext, args: List[str]) -> str:
    runtime = context.runtime
    if not args:
        return "[login] Usage: /login <user>"
    if not runtime.session.server_url:
        return "[login] Set a server first with /server <url>."

    username = args[0]
    password = runtime.ask_password(f"Password for '{username}'")
    client = runtime.client()
    try:
        token = runtime.run_in_background("Logging in…", lambda: client.login(username, password))
    except VaultSyncError as exc:
        return f"[login] Failed: {exc.message}"

    runtime.set_session(runtime.session.with_login(username, token))
    runtime.screen.dispatch(ScreenEvent.LOGGED_IN)
    return f"[login] Logged in as '{username}'. Run /sync to synchronize your vault."


def _logout_handler(context: SlashCommandContext, _: List[str]) -> str:
    runtime = context.runtime
    if not runtime.session.authenticated:
        return "[logout] Not logged in."
    runtime.set_session(runtime.session.logged_out())
    runtime.orchestrator.abandon()
    runtime.screen.dispatch(ScreenEvent.LOGGED_OUT)
    return "[logout] Session cleared."


SERVER_COMMAND = SlashCommand(
    name="server",
    description="Show or set the sync server URL.",
    handler=_server_handler,
    usage="<url>",
    screens=_NOT_BUSY,
)

REGISTER_COMMAND = SlashCommand(
    name="register",
    description="Create an account on the sync server.",
    handler=_register_handler,
    usage="<user>",
    screens=frozenset({ScreenState.LOGIN, ScreenState.READY}),
)

LOGIN_COMMAND = SlashCommand(
    name="login",
    description="Log in and keep the session token for later runs.",
    handler=_login_handler,
    usage="<user>",
    screens=frozenset({ScreenState.LOGIN, ScreenState.READY}),
)

LOGOUT_COMMAND = SlashCommand(
    name="logout",
    description="Forget the stored session token.",
    handler=_logout_handler,
    screens=frozenset({ScreenState.LOGIN, ScreenState.READY, ScreenState.CONFLICT}),
)
