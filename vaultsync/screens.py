"""Screen state machine for the interactive client.

Rendering lives in the slash commands; this module only answers "given the
current screen and what just happened, where do we go and what should the
front end do about it".
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Tuple

logger = logging.getLogger("vaultsync.screens")


class ScreenState(str, Enum):
    SERVER_SETUP = "server_setup"
    LOGIN = "login"
    READY = "ready"
    BUSY = "busy"
    CONFLICT = "conflict"
    EXITED = "exited"


class ScreenEvent(str, Enum):
    SERVER_SET = "server_set"
    LOGGED_IN = "logged_in"
    LOGGED_OUT = "logged_out"
    WORK_STARTED = "work_started"
    WORK_DONE = "work_done"
    WORK_FAILED = "work_failed"
    AUTH_EXPIRED = "auth_expired"
    CONFLICT_FOUND = "conflict_found"
    QUIT = "quit"


class Effect(str, Enum):
    NONE = "none"
    PROMPT_LOGIN = "prompt_login"
    SHOW_SPINNER = "show_spinner"
    SHOW_RESULT = "show_result"
    SHOW_ERROR = "show_error"
    SHOW_CONFLICT = "show_conflict"
    CLEAR_SESSION = "clear_session"
    EXIT = "exit"


@dataclass(frozen=True)
class Transition:
    state: ScreenState
    effect: Effect


SCREEN_TRANSITIONS: Dict[Tuple[ScreenState, ScreenEvent], Transition] = {
    (ScreenState.SERVER_SETUP, ScreenEvent.SERVER_SET): Transition(ScreenState.LOGIN, Effect.PROMPT_LOGIN),
    (ScreenState.LOGIN, ScreenEvent.SERVER_SET): Transition(ScreenState.LOGIN, Effect.PROMPT_LOGIN),
    (ScreenState.LOGIN, ScreenEvent.LOGGED_IN): Transition(ScreenState.READY, Effect.SHOW_RESULT),
    (ScreenState.READY, ScreenEvent.SERVER_SET): Transition(ScreenState.LOGIN, Effect.CLEAR_SESSION),
    (ScreenState.READY, ScreenEvent.LOGGED_IN): Transition(ScreenState.READY, Effect.SHOW_RESULT),
    (ScreenState.READY, ScreenEvent.LOGGED_OUT): Transition(ScreenState.LOGIN, Effect.CLEAR_SESSION),
    (ScreenState.READY, ScreenEvent.WORK_STARTED): Transition(ScreenState.BUSY, Effect.SHOW_SPINNER),
    (ScreenState.CONFLICT, ScreenEvent.WORK_STARTED): Transition(ScreenState.BUSY, Effect.SHOW_SPINNER),
    (ScreenState.CONFLICT, ScreenEvent.LOGGED_OUT): Transition(ScreenState.LOGIN, Effect.CLEAR_SESSION),
    (ScreenState.CONFLICT, ScreenEvent.SERVER_SET): Transition(ScreenState.LOGIN, Effect.CLEAR_SESSION),
    (ScreenState.BUSY, ScreenEvent.WORK_DONE): Transition(ScreenState.READY, Effect.SHOW_RESULT),
    (ScreenState.BUSY, ScreenEvent.WORK_FAILED): Transition(ScreenState.READY, Effect.SHOW_ERROR),
    (ScreenState.BUSY, ScreenEvent.CONFLICT_FOUND): Transition(ScreenState.CONFLICT, Effect.SHOW_CONFLICT),
    (ScreenState.BUSY, ScreenEvent.AUTH_EXPIRED): Transition(ScreenState.LOGIN, Effect.CLEAR_SESSION),
}
for _state in ScreenState:
    if _state is not ScreenState.EXITED:
        SCREEN_TRANSITIONS[(_state, ScreenEvent.QUIT)] = Transition(ScreenState.EXITED, Effect.EXIT)


class InvalidScreenEvent(RuntimeError):
    def __init__(self, state: ScreenState, event: ScreenEvent):
        super().__init__(f"'{event.value}' is not allowed on the '{state.value}' screen")
        self.state = state
        self.event = event


def dispatch(state: ScreenState, event: ScreenEvent) -> Transition:
    """Look up the transition for ``event`` on ``state``."""
    try:
        return SCREEN_TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidScreenEvent(state, event)


def initial_state(has_server: bool, authenticated: bool) -> ScreenState:
    if not has_server:
        return ScreenState.SERVER_SETUP
    if not authenticated:
        return ScreenState.LOGIN
    return ScreenState.READY


class ScreenMachine:
    """Holds the current screen; every change goes through ``dispatch``."""

    def __init__(self, state: ScreenState = ScreenState.SERVER_SETUP):
        self._state = state
        self._lock = threading.Lock()
        self.history: List[Tuple[ScreenState, ScreenEvent, ScreenState]] = []

    @property
    def state(self) -> ScreenState:
        return self._state

    def can(self, event: ScreenEvent) -> bool:
        return (self._state, event) in SCREEN_TRANSITIONS

    def dispatch(self, event: ScreenEvent) -> Effect:
        with self._lock:
            transition = dispatch(self._state, event)
            self.history.append((self._state, event, transition.state))
            logger.debug("screen %s --%s--> %s", self._state.value, event.value, transition.state.value)
            self._state = transition.state
            return transition.effect


__all__ = [
    "Effect",
    "InvalidScreenEvent",
    "SCREEN_TRANSITIONS",
    "ScreenEvent",
    "ScreenMachine",
    "ScreenState",
    "Transition",
    "dispatch",
    "initial_state",
]
