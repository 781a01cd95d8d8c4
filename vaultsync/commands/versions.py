"""Slash commands for browsing version history and rolling back."""

from __future__ import annotations

from typing import List, Optional, Tuple

from rich import box
from rich.console import Console
from rich.table import Table

from ..errors import VaultSyncError
from ..models import VaultVersion, format_rfc3339
from ..screens import ScreenState
from ..slash_commands import SlashCommand, SlashCommandContext, render_rich
from .sync import format_result

DEFAULT_PAGE = 20


def _parse_page(args: List[str]) -> Tuple[int, int]:
    limit = int(args[0]) if len(args) > 0 else DEFAULT_PAGE
    offset = int(args[1]) if len(args) > 1 else 0
    if limit <= 0 or offset < 0:
        raise ValueError("limit must be positive and offset non-negative")
    return limit, offset


def _format_size(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KiB"
    return f"{size / (1024 * 1024):.1f} MiB"


def render_versions(
    versions: List[VaultVersion],
    current_id: Optional[int],
    total: int,
    offset: int,
) -> str:
    def _render(console: Console) -> None:
        if not versions:
            console.print("[dim]No versions on the server yet.[/dim]")
            return
        table = Table(
            title="Vault Versions",
            show_header=True,
            header_style="bold cyan",
            box=box.SIMPLE,
        )
        table.add_column("", no_wrap=True)
        table.add_column("ID", style="green", no_wrap=True)
        table.add_column("Modified", no_wrap=True)
        table.add_column("Uploaded", no_wrap=True)
        table.add_column("Size", justify="right", no_wrap=True)
        table.add_column("Checksum", style="dim", no_wrap=True)
        for version in versions:
            table.add_row(
                "*" if version.id == current_id else "",
                str(version.id),
                format_rfc3339(version.content_modified_at),
                format_rfc3339(version.created_at),
                _format_size(version.size_bytes),
                version.checksum[:12],
            )
        console.print(table)
        console.print(
            f"[dim]Showing {offset + 1}-{offset + len(versions)} of {total}. "
            "* marks the current version.[/dim]"
        )

    return render_rich(_render)


def _versions_handler(context: SlashCommandContext, args: List[str]) -> str:
    runtime = context.runtime
    try:
        limit, offset = _parse_page(args)
    except ValueError:
        return "[versions] Usage: /versions [limit] [offset]"

    client = runtime.client()
    token = runtime.session.token

    def _fetch(_cancel):
        versions, total = client.list_versions(token, limit, offset)
        current = client.get_metadata(token)
        return versions, total, current.id if current else None

    try:
        versions, total, current_id = runtime.perform("Loading versions…", _fetch)
    except VaultSyncError as exc:
        return f"[versions] Failed: {exc.message}"
    return render_versions(versions, current_id, total, offset)


def _rollback_handler(context: SlashCommandContext, args: List[str]) -> str:
    runtime = context.runtime
    try:
        version_id = int(args[0])
    except (IndexError, ValueError):
        return "[rollback] Usage: /rollback <version id>"
    if version_id <= 0:
        return "[rollback] Version ids are positive integers."

    client = runtime.client()
    token = runtime.session.token
    try:
        runtime.perform(
            f"Rolling back to version {version_id}…",
            lambda _cancel: client.rollback(token, version_id),
        )
    except VaultSyncError as exc:
        return f"[rollback] Failed: {exc.message}"

    message = f"[rollback] Server now points at version {version_id}."
    if not runtime.confirm(f"Download version {version_id} over the local vault now?"):
        return f"{message} Run /keep-remote to download it later."

    try:
        result = runtime.perform(
            f"Downloading version {version_id}…",
            lambda cancel: runtime.orchestrator.keep_remote(runtime.session, cancel),
        )
    except VaultSyncError as exc:
        return f"{message}\n[rollback] Download failed: {exc.message}"
    return f"{message}\n{format_result('rollback', result)}"


VERSIONS_COMMAND = SlashCommand(
    name="versions",
    description="List server versions, newest first.",
    handler=_versions_handler,
    usage="[limit] [offset]",
    screens=frozenset({ScreenState.READY, ScreenState.CONFLICT}),
)

ROLLBACK_COMMAND = SlashCommand(
    name="rollback",
    description="Make an older version current on the server, then offer to download it.",
    handler=_rollback_handler,
    usage="<id>",
    screens=frozenset({ScreenState.READY}),
)
