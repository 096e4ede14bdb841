"""
Engine-owned state holders.

Small state objects shared by the orchestration services of one engine
instance: the dismissible error state and the per-session view state of the
client session state machine.

Dependencies: medchat.core.exceptions
System role: Per-engine mutable state with explicit ownership
"""

import logging
from enum import Enum

from medchat.core.exceptions import MedChatException

logger = logging.getLogger(__name__)


class ErrorState:
    """Last surfaced failure, readable and dismissible by the caller."""

    def __init__(self) -> None:
        self._error: MedChatException | None = None

    @property
    def current(self) -> MedChatException | None:
        return self._error

    def set(self, error: MedChatException) -> None:
        self._error = error

    def dismiss(self) -> None:
        self._error = None


class SessionViewState(str, Enum):
    """
    Client view of a session.

    UNLOADED -> LOADING -> LOADED -> {ACTIVE, ARCHIVED_LOCAL}
    any state -> GHOST on not-found (terminal)
    LOADED/ACTIVE -> DELETED on explicit delete (terminal)
    """

    UNLOADED = "unloaded"
    LOADING = "loading"
    LOADED = "loaded"
    ACTIVE = "active"
    ARCHIVED_LOCAL = "archived_local"
    GHOST = "ghost"
    DELETED = "deleted"


TERMINAL_STATES = frozenset({SessionViewState.GHOST, SessionViewState.DELETED})

_ALLOWED_TRANSITIONS: dict[SessionViewState, frozenset[SessionViewState]] = {
    # Sessions created locally start ACTIVE; the list can delete unopened sessions
    SessionViewState.UNLOADED: frozenset({
        SessionViewState.LOADING,
        SessionViewState.ACTIVE,
        SessionViewState.DELETED,
    }),
    SessionViewState.LOADING: frozenset({SessionViewState.LOADED, SessionViewState.UNLOADED}),
    SessionViewState.LOADED: frozenset({
        SessionViewState.ACTIVE,
        SessionViewState.ARCHIVED_LOCAL,
        SessionViewState.LOADING,
        SessionViewState.DELETED,
    }),
    SessionViewState.ACTIVE: frozenset({
        SessionViewState.ARCHIVED_LOCAL,
        SessionViewState.LOADING,
        SessionViewState.LOADED,
        SessionViewState.DELETED,
    }),
    SessionViewState.ARCHIVED_LOCAL: frozenset({SessionViewState.LOADING, SessionViewState.DELETED}),
}


class SessionStateTracker:
    """Per-session view states for one engine instance."""

    def __init__(self) -> None:
        self._states: dict[str, SessionViewState] = {}

    def get(self, session_id: str) -> SessionViewState:
        return self._states.get(session_id, SessionViewState.UNLOADED)

    def transition(self, session_id: str, target: SessionViewState) -> bool:
        """
        Move a session to `target` if the state machine allows it.

        GHOST is reachable from any non-terminal state. Terminal states never
        change.

        Returns:
            bool: True when the transition was applied
        """
        current = self.get(session_id)
        if current == target:
            return True
        if current in TERMINAL_STATES:
            return False
        allowed = target == SessionViewState.GHOST or target in _ALLOWED_TRANSITIONS.get(
            current, frozenset()
        )
        if not allowed:
            logger.debug(
                f"{__name__}:transition - Ignoring {current.value} -> {target.value}",
                extra={"session_id": session_id},
            )
            return False
        self._states[session_id] = target
        return True

    def snapshot(self) -> dict[str, SessionViewState]:
        return dict(self._states)
