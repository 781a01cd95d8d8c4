"""Slash command for runtime status."""

from __future__ import annotations

from typing import List

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..models import format_rfc3339
from ..slash_commands import SlashCommand, SlashCommandContext, render_rich

DEFAULT_MAX_ROWS = 5


def _handler(context: SlashCommandContext, args: List[str]) -> str:
    config = context.config
    runtime = context.runtime
    session = runtime.session
    show_all = any(arg.strip().lower() in {"--all", "-a", "all"} for arg in args)

    def _render_summary(console: Console) -> None:
        info = Table.grid(padding=(0, 1))
        info.add_column("Key", style="bold", no_wrap=True)
        info.add_column("Value", overflow="fold")
        info.add_row("Server", session.server_url or "(not set)")
        info.add_row("User", session.username or "(not logged in)")
        info.add_row("Vault", str(session.vault_path))
        info.add_row("Mode", "read-only" if session.read_only else "read-write")
        info.add_row("Screen", runtime.screen.state.value)
        info.add_row("Sync state", runtime.orchestrator.state.value)

        baseline = runtime.orchestrator.baseline()
        if baseline is None:
            info.add_row("Last sync", "(never)")
        else:
            info.add_row(
                "Last sync",
                f"version {baseline.version_id}, modified {format_rfc3339(baseline.content_modified_at)}",
            )
        info.add_row("Config", f"{config.status} ({len(config.files_loaded)} file(s))")
        info.add_row("Log path", str(config.log_path or "(not initialized)"))

        console.print(
            Panel(
                info,
                title="Runtime Status",
                border_style="green",
                padding=(0, 1),
            )
        )

    def _render_diagnostics(console: Console) -> None:
        if not config.diagnostics:
            console.print(Panel("[green]No diagnostics reported.", title="Diagnostics", border_style="red"))
            return

        diag_table = Table(
            show_header=True,
            header_style="bold red",
            box=box.SIMPLE,
            pad_edge=False,
        )
        diag_table.add_column("Lvl", style="red", no_wrap=True)
        diag_table.add_column("Message", overflow="fold", ratio=2)
        diag_table.add_column("Source", overflow="fold", ratio=2)

        diagnostics = config.diagnostics if show_all else config.diagnostics[:DEFAULT_MAX_ROWS]
        for diag in diagnostics:
            diag_table.add_row(diag.level.upper(), diag.message, str(diag.source or config.data_dir))

        console.print(
            Panel(
                diag_table,
                title="Diagnostics",
                border_style="red",
                padding=(0, 1),
            )
        )
        if len(diagnostics) < len(config.diagnostics):
            console.print(
                f"[dim]Showing {len(diagnostics)}/{len(config.diagnostics)}. "
                "Use '/status --all' for the full list.[/dim]"
            )

    def _render(console: Console) -> None:
        _render_summary(console)
        _render_diagnostics(console)

    return render_rich(_render)


COMMAND = SlashCommand(
    name="status",
    description="Show server, session, sync state and configuration diagnostics.",
    handler=_handler,
    usage="[--all]",
)
