"""Session state machine with validated transitions and change callbacks."""

from __future__ import annotations

from collections.abc import Callable
from enum import Enum
import logging

from .exceptions import InvalidStateTransition

LOGGER = logging.getLogger(__name__)


class SessionState(str, Enum):
    """Finite state machine for the exchange lifecycle."""

    IDLE = "idle"
    CREATING_SESSION = "creating_session"
    AWAITING_STREAM = "awaiting_stream"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    ABORTED = "aborted"
    FAILED = "failed"


class VisualState(str, Enum):
    """Coarse indicator state exposed to the presentation layer."""

    DEFAULT = "default"
    ACTIVITY = "activity"
    ERROR = "error"


ACTIVE_STATES = frozenset(
    {
        SessionState.CREATING_SESSION,
        SessionState.AWAITING_STREAM,
        SessionState.STREAMING,
    }
)

_ALLOWED: dict[SessionState, frozenset[SessionState]] = {
    SessionState.IDLE: frozenset(
        {SessionState.CREATING_SESSION, SessionState.AWAITING_STREAM}
    ),
    SessionState.CREATING_SESSION: frozenset(
        {SessionState.AWAITING_STREAM, SessionState.ABORTED, SessionState.FAILED}
    ),
    SessionState.AWAITING_STREAM: frozenset(
        {SessionState.STREAMING, SessionState.ABORTED, SessionState.FAILED}
    ),
    SessionState.STREAMING: frozenset(
        {SessionState.FINALIZING, SessionState.ABORTED, SessionState.FAILED}
    ),
    SessionState.FINALIZING: frozenset({SessionState.IDLE, SessionState.FAILED}),
    SessionState.ABORTED: frozenset({SessionState.IDLE}),
    SessionState.FAILED: frozenset({SessionState.IDLE}),
}

StateListener = Callable[[SessionState, SessionState], None]


class StateManager:
    """Own the current SessionState and reject impossible transitions.

    Transitions are synchronous: the controller runs on a single event loop, so
    a transition is atomic with respect to other coroutines.
    """

    def __init__(self) -> None:
        self._state = SessionState.IDLE
        self._listeners: list[StateListener] = []

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_busy(self) -> bool:
        """True while any part of an exchange is in flight."""
        return self._state is not SessionState.IDLE

    @property
    def is_streaming(self) -> bool:
        return self._state is SessionState.STREAMING

    @property
    def has_active_exchange(self) -> bool:
        """True while a submit would be reinterpreted as a stop request."""
        return self._state in ACTIVE_STATES

    def can_send_message(self) -> bool:
        """Return True when message submission is allowed."""
        return self._state is SessionState.IDLE

    def on_change(self, listener: StateListener) -> None:
        """Register a callback invoked with ``(old_state, new_state)``."""
        self._listeners.append(listener)

    def can_transition(self, new_state: SessionState) -> bool:
        return new_state in _ALLOWED[self._state]

    def transition_to(self, new_state: SessionState) -> SessionState:
        """Move to ``new_state`` or raise InvalidStateTransition."""
        old_state = self._state
        if not self.can_transition(new_state):
            raise InvalidStateTransition(
                f"Cannot move from {old_state.value} to {new_state.value}."
            )
        self._state = new_state
        LOGGER.debug(
            "session.state.transition",
            extra={
                "event": "session.state.transition",
                "from_state": old_state.value,
                "to_state": new_state.value,
            },
        )
        for listener in list(self._listeners):
            try:
                listener(old_state, new_state)
            except Exception as exc:  # noqa: BLE001 - observers must not break transitions.
                LOGGER.error(f"State listener failed: {exc}")
        return self._state

    def transition_if(
        self,
        expected_state: SessionState,
        new_state: SessionState,
    ) -> bool:
        """Transition only when the current state matches ``expected_state``."""
        if self._state is not expected_state:
            return False
        self.transition_to(new_state)
        return True

    def settle(self, terminal_state: SessionState) -> None:
        """Pass through ``aborted``/``failed`` and land on ``idle``."""
        if terminal_state not in (SessionState.ABORTED, SessionState.FAILED):
            raise ValueError("settle() only accepts ABORTED or FAILED.")
        if self._state is not terminal_state:
            self.transition_to(terminal_state)
        self.transition_to(SessionState.IDLE)
