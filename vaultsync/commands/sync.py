"""Slash commands that run the sync orchestrator."""

from __future__ import annotations

from typing import Callable, List

from ..errors import VaultSyncError
from ..models import format_rfc3339
from ..screens import ScreenState
from ..slash_commands import SlashCommand, SlashCommandContext
from ..sync.orchestrator import InvalidTransition, SyncResult, SyncState

_SYNC_SCREENS = frozenset({ScreenState.READY, ScreenState.CONFLICT})


def format_result(prefix: str, result: SyncResult) -> str:
    if result.error is not None:
        return f"[{prefix}] Failed: {result.message}"
    if result.outcome is SyncState.CONFLICT_PENDING:
        return f"[{prefix}] Conflict: {result.message}"
    if not result.success:
        return f"[{prefix}] Failed: {result.message}"
    detail = result.message
    if result.content_modified_at is not None:
        detail = f"{detail} (modified {format_rfc3339(result.content_modified_at)})"
    return f"[{prefix}] {detail}"


def run_sync_step(
    runtime,
    prefix: str,
    label: str,
    step: Callable[..., SyncResult],
) -> str:
    """Run one orchestrator call through the runtime and format the outcome."""
    try:
        result = runtime.perform(label, lambda cancel: step(runtime.session, cancel))
    except InvalidTransition as exc:
        return f"[{prefix}] Not possible right now: {exc}"
    except VaultSyncError as exc:
        return f"[{prefix}] Failed: {exc.message}"
    return format_result(prefix, result)


def _sync_handler(context: SlashCommandContext, _: List[str]) -> str:
    runtime = context.runtime
    if runtime.screen.state is ScreenState.CONFLICT:
        return "[sync] A conflict is pending. Choose /keep-local or /keep-remote."
    return run_sync_step(runtime, "sync", "Synchronizing…", runtime.orchestrator.sync)


def _keep_local_handler(context: SlashCommandContext, _: List[str]) -> str:
    runtime = context.runtime
    if runtime.session.read_only:
        return "[keep-local] This vault is open read-only in another process; uploads are disabled."
    return run_sync_step(runtime, "keep-local", "Uploading local vault…", runtime.orchestrator.keep_local)


def _keep_remote_handler(context: SlashCommandContext, _: List[str]) -> str:
    runtime = context.runtime
    return run_sync_step(runtime, "keep-remote", "Downloading server vault…", runtime.orchestrator.keep_remote)


SYNC_COMMAND = SlashCommand(
    name="sync",
    description="Compare the local vault with the server and upload or download.",
    handler=_sync_handler,
    screens=_SYNC_SCREENS,
)

KEEP_LOCAL_COMMAND = SlashCommand(
    name="keep-local",
    description="Resolve a conflict by uploading the local vault.",
    handler=_keep_local_handler,
    screens=_SYNC_SCREENS,
)

KEEP_REMOTE_COMMAND = SlashCommand(
    name="keep-remote",
    description="Resolve a conflict by replacing the local vault with the server copy.",
    handler=_keep_remote_handler,
    screens=_SYNC_SCREENS,
)
