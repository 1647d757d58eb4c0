"""
Login State Machine

A page load moves through a small set of login states. Each transition is checked against
``ALLOWED_TRANSITIONS`` so that, for example, nothing can run after a redirect has been
started.

    UNAUTHENTICATED --> CALLBACK_PENDING --> AUTHENTICATED --> INVALIDATED
          |                   |
          |                   +--> UNAUTHENTICATED (no token from the callback)
          +--> AUTHENTICATED (stored token)
          +--> REDIRECTING (login redirect)
          +--> INVALIDATED (logout, rejected token)

REDIRECTING and INVALIDATED are terminal for the page load.
"""

from enum import Enum
import logging
from typing import Dict, FrozenSet

logger = logging.getLogger(__name__)


class LoginState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    CALLBACK_PENDING = "callback_pending"
    REDIRECTING = "redirecting"
    AUTHENTICATED = "authenticated"
    INVALIDATED = "invalidated"


ALLOWED_TRANSITIONS: Dict[LoginState, FrozenSet[LoginState]] = {
    LoginState.UNAUTHENTICATED: frozenset(
        {
            LoginState.CALLBACK_PENDING,
            LoginState.AUTHENTICATED,
            LoginState.REDIRECTING,
            LoginState.INVALIDATED,
        }
    ),
    LoginState.CALLBACK_PENDING: frozenset(
        {LoginState.AUTHENTICATED, LoginState.UNAUTHENTICATED}
    ),
    LoginState.AUTHENTICATED: frozenset({LoginState.INVALIDATED}),
    LoginState.REDIRECTING: frozenset(),
    LoginState.INVALIDATED: frozenset(),
}


class InvalidLoginTransition(Exception):
    def __init__(self, current: LoginState, target: LoginState) -> None:
        super().__init__(
            f"error-session-2000 Invalid login transition {current.value} -> {target.value}"
        )
        self.current = current
        self.target = target


class LoginStateMachine:
    def __init__(self, state: LoginState = LoginState.UNAUTHENTICATED) -> None:
        self._state = state

    @property
    def state(self) -> LoginState:
        return self._state

    def can_transition(self, target: LoginState) -> bool:
        return target == self._state or target in ALLOWED_TRANSITIONS[self._state]

    def transition(self, target: LoginState) -> None:
        if target == self._state:
            return
        if target not in ALLOWED_TRANSITIONS[self._state]:
            raise InvalidLoginTransition(self._state, target)
        logger.debug("Login state %s -> %s", self._state.value, target.value)
        self._state = target
