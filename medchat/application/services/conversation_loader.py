"""
Conversation loader and reconciliation.

Opens one session: fetches its canonical summary and message history,
reconciles them with local state and derives the context highlight and the
last user selection.

Reconciliation rules:
- Not found on any fetch: ghost sweep, the load fails
- Summary fetch failure: fall back to the registry's summary
- History fetch failure: keep the cached transcript, surface the error
- A session with a send in flight keeps its local transcript
- Only the most recently issued load activates its session

Dependencies: medchat.boundary.contracts, medchat.application.services
System role: Backend-to-local reconciliation of one conversation
"""

import logging

from medchat.application.services.ghost_sweep import GhostSessionSweep
from medchat.application.services.membership_service import SessionMembershipService
from medchat.application.services.session_registry import SessionRegistry
from medchat.application.services.transcript_cache import TranscriptCache
from medchat.application.state import ErrorState, SessionStateTracker, SessionViewState
from medchat.boundary.contracts import MessageStore, SessionDirectory
from medchat.core.exceptions import MedChatException, SessionNotFoundError
from medchat.core.transcript_rules import derive_context_highlight, last_user_metadata
from medchat.models.context import ContextHighlight, MessageMetadata
from medchat.models.results import ConversationLoadResult
from medchat.observability.log_utils import log_exception_with_context

logger = logging.getLogger(__name__)


class ConversationLoader:
    """Loads and reconciles single conversations."""

    def __init__(
        self,
        registry: SessionRegistry,
        directory: SessionDirectory,
        store: MessageStore,
        transcripts: TranscriptCache,
        sweep: GhostSessionSweep,
        membership: SessionMembershipService | None = None,
        errors: ErrorState | None = None,
        states: SessionStateTracker | None = None,
    ) -> None:
        self._registry = registry
        self._directory = directory
        self._store = store
        self._transcripts = transcripts
        self._sweep = sweep
        self._membership = membership
        self._errors = errors or ErrorState()
        self._states = states or SessionStateTracker()

        self._load_token = 0
        self._highlights: dict[str, ContextHighlight] = {}
        self._last_metadata: dict[str, MessageMetadata | None] = {}

        sweep.add_listener(self.forget)

    def highlight(self, session_id: str | None) -> ContextHighlight:
        if session_id is None:
            return ContextHighlight()
        return self._highlights.get(session_id, ContextHighlight())

    def last_metadata(self, session_id: str | None) -> MessageMetadata | None:
        if session_id is None:
            return None
        return self._last_metadata.get(session_id)

    def forget(self, session_id: str) -> None:
        """Drop derived state of a session."""
        self._highlights.pop(session_id, None)
        self._last_metadata.pop(session_id, None)

    async def load(
        self,
        session_id: str,
        document_filter: str | None = None,
    ) -> ConversationLoadResult:
        """
        Load a session and make it active.

        Args:
            session_id: Session to open
            document_filter: Patient filter for the membership document fetch

        Returns:
            ConversationLoadResult: ok is False when the session turned out to
            be a ghost, when every fetch failed, or when a newer load superseded
            this one
        """
        self._load_token += 1
        token = self._load_token
        issued_seq = self._registry.mutation_seq
        self._states.transition(session_id, SessionViewState.LOADING)
        soft_error: MedChatException | None = None

        try:
            summary = await self._directory.get_session(session_id)
        except SessionNotFoundError as e:
            return self._ghost(session_id, e)
        except MedChatException as e:
            log_exception_with_context(
                logger,
                f"{__name__}:load - Session fetch failed, using cached summary",
                e,
                session_id=session_id,
            )
            soft_error = e
            summary = self._registry.get(session_id)

        try:
            messages = await self._store.get_messages(session_id)
        except SessionNotFoundError as e:
            return self._ghost(session_id, e)
        except MedChatException as e:
            log_exception_with_context(
                logger,
                f"{__name__}:load - History fetch failed, keeping cached transcript",
                e,
                session_id=session_id,
            )
            soft_error = e
            messages = None

        if self._sweep.is_ghost(session_id):
            return ConversationLoadResult(session_id=session_id, ok=False, not_found=True)

        if token != self._load_token:
            logger.debug(
                f"{__name__}:load - Superseded by a newer load",
                extra={"session_id": session_id, "token": token},
            )
            self._states.transition(session_id, SessionViewState.LOADED)
            return ConversationLoadResult(session_id=session_id, ok=False, session=summary)

        if summary is None and messages is None:
            self._states.transition(session_id, SessionViewState.UNLOADED)
            if soft_error is not None:
                self._errors.set(soft_error)
            return ConversationLoadResult(session_id=session_id, ok=False, error=soft_error)

        if summary is not None:
            summary = self._registry.upsert(summary, issued_seq)

        if messages is not None:
            if self._transcripts.is_busy(session_id):
                logger.info(
                    f"{__name__}:load - Send in flight, keeping local transcript",
                    extra={"session_id": session_id},
                )
            else:
                self._transcripts.replace(session_id, messages)

        transcript = self._transcripts.snapshot(session_id)
        highlight = derive_context_highlight(summary.retrieval_summary if summary else None)
        metadata = last_user_metadata(transcript)
        self._highlights[session_id] = highlight
        self._last_metadata[session_id] = metadata

        self._registry.activate(session_id)
        self._states.transition(session_id, SessionViewState.LOADED)
        self._states.transition(session_id, SessionViewState.ACTIVE)

        if soft_error is not None:
            self._errors.set(soft_error)

        if self._membership is not None:
            try:
                await self._membership.patients(session_id)
                await self._membership.documents(session_id, document_filter)
            except SessionNotFoundError as e:
                return self._ghost(session_id, e)
            except MedChatException as e:
                log_exception_with_context(
                    logger,
                    f"{__name__}:load - Membership fetch failed",
                    e,
                    session_id=session_id,
                )

        logger.info(
            f"{__name__}:load - Conversation loaded",
            extra={"session_id": session_id, "messages_count": len(transcript)},
        )
        return ConversationLoadResult(
            session_id=session_id,
            ok=True,
            session=summary,
            messages=transcript,
            highlight=highlight,
            last_user_metadata=metadata,
            error=soft_error,
        )

    def _ghost(self, session_id: str, error: SessionNotFoundError) -> ConversationLoadResult:
        self._sweep.sweep(session_id)
        return ConversationLoadResult(session_id=session_id, ok=False, not_found=True, error=error)
