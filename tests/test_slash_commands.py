"""Unit tests for slash command registry."""

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

from vaultsync.configuration import ConfigurationBundle
from vaultsync.screens import ScreenMachine, ScreenState
from vaultsync.slash_commands import (
    CommandRouter,
    SlashCommand,
    SlashCommandContext,
    render_help_table,
    render_rich,
)


def test_router_handles_registered_command(tmp_path: Path):
    config = ConfigurationBundle(data_dir=tmp_path, status="ready")
    router = CommandRouter(config)
    captured = {}

    def handler(context: SlashCommandContext, args: list) -> str:
        captured["context"] = context
        return f"echo:{' '.join(args)}"

    router.register(SlashCommand(name="echo", description="Echo args", handler=handler))
    result = router.handle("ECHO", ["hello", "world"])

    assert result == "echo:hello world"
    assert captured["context"].config is config
    assert captured["context"].runtime is None
    assert "echo" in router.command_names


def test_unknown_command_suggests_help(tmp_path: Path):
    router = CommandRouter(ConfigurationBundle(data_dir=tmp_path, status="ready"))
    assert router.handle("nope", []) == "[router] Unknown command '/nope'. Try /help."


def test_render_help_table_lists_commands(tmp_path: Path):
    config = ConfigurationBundle(data_dir=tmp_path, status="ready")
    router = CommandRouter(config)
    router.register(SlashCommand(name="status", description="Show status", handler=lambda *_: ""))
    router.register(SlashCommand(name="rollback", description="Roll back", handler=lambda *_: "", usage="<id>"))

    output = render_help_table(router.commands())

    assert "/status" in output
    assert "/rollback <id>" in output
    assert "Show status" in output


def test_render_rich_produces_ansi():
    def _render(console):
        console.print("hello", style="bold red")

    ansi = render_rich(_render)

    assert "\x1b[" in ansi  # contains ANSI escape sequence


def test_command_refused_on_other_screens(tmp_path: Path):
    runtime = SimpleNamespace(screen=ScreenMachine(ScreenState.LOGIN))
    router = CommandRouter(
        ConfigurationBundle(data_dir=tmp_path, status="ready"),
        metadata={"runtime": runtime},
    )
    router.register(
        SlashCommand(
            name="sync",
            description="Sync",
            handler=lambda *_: "synced",
            screens=frozenset({ScreenState.READY}),
        )
    )

    assert router.handle("sync", []) == "[router] '/sync' is not available on the login screen."

    runtime.screen = ScreenMachine(ScreenState.READY)
    assert router.handle("sync", []) == "synced"
