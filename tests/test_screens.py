"""Tests for the interactive client's screen state machine."""

from __future__ import annotations

import pytest

from vaultsync.screens import (
    Effect,
    InvalidScreenEvent,
    ScreenEvent,
    ScreenMachine,
    ScreenState,
    dispatch,
    initial_state,
)


@pytest.mark.parametrize(
    "has_server,authenticated,expected",
    [
        (False, False, ScreenState.SERVER_SETUP),
        (True, False, ScreenState.LOGIN),
        (True, True, ScreenState.READY),
    ],
)
def test_initial_state(has_server, authenticated, expected):
    assert initial_state(has_server, authenticated) is expected


def test_happy_path_through_sync():
    machine = ScreenMachine()

    assert machine.dispatch(ScreenEvent.SERVER_SET) is Effect.PROMPT_LOGIN
    assert machine.dispatch(ScreenEvent.LOGGED_IN) is Effect.SHOW_RESULT
    assert machine.dispatch(ScreenEvent.WORK_STARTED) is Effect.SHOW_SPINNER
    assert machine.state is ScreenState.BUSY
    assert machine.dispatch(ScreenEvent.WORK_DONE) is Effect.SHOW_RESULT
    assert machine.state is ScreenState.READY
    assert [entry[1] for entry in machine.history] == [
        ScreenEvent.SERVER_SET,
        ScreenEvent.LOGGED_IN,
        ScreenEvent.WORK_STARTED,
        ScreenEvent.WORK_DONE,
    ]


def test_conflict_returns_through_busy():
    machine = ScreenMachine(ScreenState.READY)
    machine.dispatch(ScreenEvent.WORK_STARTED)
    assert machine.dispatch(ScreenEvent.CONFLICT_FOUND) is Effect.SHOW_CONFLICT
    assert machine.state is ScreenState.CONFLICT

    machine.dispatch(ScreenEvent.WORK_STARTED)
    machine.dispatch(ScreenEvent.WORK_DONE)
    assert machine.state is ScreenState.READY


def test_expired_auth_returns_to_login():
    machine = ScreenMachine(ScreenState.BUSY)
    assert machine.dispatch(ScreenEvent.AUTH_EXPIRED) is Effect.CLEAR_SESSION
    assert machine.state is ScreenState.LOGIN


def test_busy_screen_accepts_no_new_work():
    machine = ScreenMachine(ScreenState.BUSY)
    assert not machine.can(ScreenEvent.WORK_STARTED)
    with pytest.raises(InvalidScreenEvent):
        machine.dispatch(ScreenEvent.WORK_STARTED)
    assert machine.state is ScreenState.BUSY


@pytest.mark.parametrize("state", [s for s in ScreenState if s is not ScreenState.EXITED])
def test_quit_is_allowed_everywhere(state):
    assert dispatch(state, ScreenEvent.QUIT).state is ScreenState.EXITED


def test_nothing_leaves_exited():
    for event in ScreenEvent:
        with pytest.raises(InvalidScreenEvent):
            dispatch(ScreenState.EXITED, event)
