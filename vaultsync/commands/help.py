"""Slash commands for listing commands and leaving the client."""

from __future__ import annotations

from typing import List

from ..screens import ScreenEvent, ScreenState
from ..slash_commands import (
    SlashCommand,
    SlashCommandContext,
    render_help_table,
)


def _handler(context: SlashCommandContext, _: List[str]) -> str:
    screen = context.router.current_screen()
    commands = context.router.commands()
    if screen is not None:
        commands = [cmd for cmd in commands if screen in cmd.screens]
    return render_help_table(commands)


def _quit_handler(context: SlashCommandContext, _: List[str]) -> str:
    context.runtime.screen.dispatch(ScreenEvent.QUIT)
    return "[Goodbye]"


COMMAND = SlashCommand(
    name="help",
    description="List the slash commands available on this screen.",
    handler=_handler,
)

QUIT_COMMAND = SlashCommand(
    name="quit",
    description="Leave the client.",
    handler=_quit_handler,
    screens=frozenset(state for state in ScreenState if state is not ScreenState.EXITED),
)
