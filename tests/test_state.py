"""
Unit tests for the login state machine.
"""

import pytest

from net.ibremote.auth.state import (
    ALLOWED_TRANSITIONS,
    InvalidLoginTransition,
    LoginState,
    LoginStateMachine,
)


def test_machine_starts_unauthenticated():
    assert LoginStateMachine().state == LoginState.UNAUTHENTICATED


@pytest.mark.parametrize(
    "path",
    [
        [LoginState.CALLBACK_PENDING, LoginState.AUTHENTICATED, LoginState.INVALIDATED],
        [LoginState.CALLBACK_PENDING, LoginState.UNAUTHENTICATED, LoginState.REDIRECTING],
        [LoginState.AUTHENTICATED, LoginState.INVALIDATED],
        [LoginState.REDIRECTING],
        [LoginState.INVALIDATED],
    ],
)
def test_allowed_paths(path):
    machine = LoginStateMachine()
    for state in path:
        machine.transition(state)
    assert machine.state == path[-1]


def test_same_state_transition_is_a_no_op():
    machine = LoginStateMachine(LoginState.AUTHENTICATED)
    machine.transition(LoginState.AUTHENTICATED)
    assert machine.state == LoginState.AUTHENTICATED


@pytest.mark.parametrize("terminal", [LoginState.REDIRECTING, LoginState.INVALIDATED])
def test_terminal_states_allow_nothing(terminal):
    assert ALLOWED_TRANSITIONS[terminal] == frozenset()

    machine = LoginStateMachine(terminal)
    with pytest.raises(InvalidLoginTransition) as exc_info:
        machine.transition(LoginState.AUTHENTICATED)

    assert exc_info.value.current == terminal
    assert exc_info.value.target == LoginState.AUTHENTICATED
    assert machine.state == terminal


def test_authenticated_cannot_redirect_to_login():
    machine = LoginStateMachine(LoginState.AUTHENTICATED)
    assert not machine.can_transition(LoginState.REDIRECTING)
    with pytest.raises(InvalidLoginTransition):
        machine.transition(LoginState.REDIRECTING)


def test_every_state_has_a_transition_entry():
    assert set(ALLOWED_TRANSITIONS) == set(LoginState)
