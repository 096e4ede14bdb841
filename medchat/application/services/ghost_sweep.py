"""
Ghost session sweep.

A ghost is a session the client still references but the backend reports as
not found. The sweep purges every local trace of it in one step: registry
entry, active selection, cached transcript, membership caches and any state
registered by other services through add_listener().

The sweep never auto-selects a replacement session; that is reserved for an
explicit delete.

Dependencies: medchat.application.services (registry, transcript cache, membership)
System role: Convergence of local state after backend-side session loss
"""

import logging
from collections.abc import Callable

from medchat.application.services.membership_service import SessionMembershipService
from medchat.application.services.session_registry import SessionRegistry
from medchat.application.services.transcript_cache import TranscriptCache
from medchat.application.state import SessionStateTracker, SessionViewState

logger = logging.getLogger(__name__)

SweepListener = Callable[[str], None]


class GhostSessionSweep:
    """Purges sessions the backend no longer knows about."""

    def __init__(
        self,
        registry: SessionRegistry,
        transcripts: TranscriptCache,
        membership: SessionMembershipService | None = None,
        states: SessionStateTracker | None = None,
    ) -> None:
        self._registry = registry
        self._transcripts = transcripts
        self._membership = membership
        self._states = states or SessionStateTracker()
        self._listeners: list[SweepListener] = []

    def add_listener(self, listener: SweepListener) -> None:
        """Register a callback invoked with the id of every swept session."""
        self._listeners.append(listener)

    def is_ghost(self, session_id: str) -> bool:
        return self._states.get(session_id) == SessionViewState.GHOST

    def sweep(self, session_id: str) -> bool:
        """
        Purge a session locally.

        Idempotent: sweeping an already-swept or unknown session is a no-op.

        Args:
            session_id: Session reported as not found

        Returns:
            bool: True when local state referenced the session
        """
        if self.is_ghost(session_id):
            return False

        was_active = self._registry.active_session_id == session_id
        in_registry = self._registry.remove(session_id)
        had_transcript = self._transcripts.drop(session_id)
        if self._membership is not None:
            self._membership.forget(session_id)
        for listener in self._listeners:
            listener(session_id)
        self._states.transition(session_id, SessionViewState.GHOST)

        swept = was_active or in_registry or had_transcript
        logger.warning(
            f"{__name__}:sweep - Session not found on backend, purged local state",
            extra={"session_id": session_id, "was_active": was_active, "swept": swept},
        )
        return swept
