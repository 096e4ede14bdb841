"""
Chat engine facade.

Owns every piece of per-instance state (session registry, transcript cache,
membership cache, context highlights, view states, error state, compose
selection and the context-restoration flag) and exposes the public
operations used by presentation layers. Several engines can coexist in one
process without sharing state.

Public operations resolve to typed results or to the error state; backend
failures never escape as exceptions.

Dependencies: medchat.application.services, medchat.core
System role: Orchestration entry point
"""

import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from typing import Any

from medchat.application.services import (
    ConversationLoader,
    GhostSessionSweep,
    SessionMembershipService,
    SessionRegistry,
    StreamingMessagePipeline,
    TranscriptCache,
)
from medchat.application.state import ErrorState, SessionStateTracker, SessionViewState
from medchat.boundary.contracts import MessageStore, SessionDirectory, SessionMembership
from medchat.configs.engine import EngineSettings
from medchat.core.context_resolver import (
    build_message_metadata,
    resolve_selection,
    selection_from_session,
)
from medchat.core.exceptions import MedChatException, SessionNotFoundError, ValidationError
from medchat.models.context import ComposeSelection, ContextHighlight, ContextPayload
from medchat.models.message import ChatMessage
from medchat.models.results import ConversationLoadResult, DeleteResult, SendResult
from medchat.models.session import ChatSessionSummary, SessionDocument, SessionPatient
from medchat.observability.log_utils import log_exception_with_context

logger = logging.getLogger(__name__)

MISSING_SELECTION_MESSAGE = "Selecione um paciente ou referência para iniciar a conversa"


class ChatEngine:
    """
    Session and message orchestration for one chat view.

    Usage:
        async with create_engine(settings) as engine:
            await engine.start()
            engine_selection = ComposeSelection(patient_ids=("p1",))
            await engine.set_selection(engine_selection)
            result = await engine.send_message("Hello")
    """

    def __init__(
        self,
        directory: SessionDirectory,
        store: MessageStore,
        membership: SessionMembership,
        settings: EngineSettings | None = None,
        create_session_timeout: float | None = None,
        stream_open_timeout: float | None = None,
        resources: Sequence[Any] = (),
    ) -> None:
        """
        Initialize chat engine.

        Args:
            directory: Backend session directory
            store: Backend message store
            membership: Backend session membership
            settings: Engine behaviour settings
            create_session_timeout: Seconds allowed for session creation
            stream_open_timeout: Seconds allowed until the first stream event
            resources: Objects with an async aclose() released by aclose()
        """
        self.settings = settings or EngineSettings()
        self._resources = tuple(resources)

        self.errors = ErrorState()
        self.states = SessionStateTracker()
        self.transcripts = TranscriptCache()
        self.membership = SessionMembershipService(membership)
        self.registry = SessionRegistry(
            directory,
            errors=self.errors,
            create_timeout=create_session_timeout,
            title_max_length=self.settings.title_max_length,
        )
        self.sweep = GhostSessionSweep(
            self.registry, self.transcripts, membership=self.membership, states=self.states
        )
        self.registry.not_found_handler = self.sweep.sweep
        self.pipeline = StreamingMessagePipeline(
            self.registry,
            directory,
            store,
            self.transcripts,
            self.sweep,
            errors=self.errors,
            states=self.states,
            stream_open_timeout=stream_open_timeout,
            new_session_title=self.settings.new_session_title,
            error_message_template=self.settings.error_message_template,
        )
        self.loader = ConversationLoader(
            self.registry,
            directory,
            store,
            self.transcripts,
            self.sweep,
            membership=self.membership,
            errors=self.errors,
            states=self.states,
        )

        self._selection: ComposeSelection | None = None
        self._selection_initialized = False
        self._restoring_context = False

    async def __aenter__(self) -> "ChatEngine":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Cancel in-flight work and release owned resources."""
        await self.pipeline.aclose()
        for resource in self._resources:
            await resource.aclose()

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def sessions(self) -> tuple[ChatSessionSummary, ...]:
        return self.registry.sessions

    @property
    def active_session_id(self) -> str | None:
        return self.registry.active_session_id

    @property
    def active_session(self) -> ChatSessionSummary | None:
        session_id = self.registry.active_session_id
        return self.registry.get(session_id) if session_id else None

    @property
    def messages(self) -> tuple[ChatMessage, ...]:
        """Transcript of the active session."""
        return self.transcripts.snapshot(self.registry.active_session_id)

    def transcript(self, session_id: str) -> tuple[ChatMessage, ...]:
        return self.transcripts.snapshot(session_id)

    @property
    def context_highlight(self) -> ContextHighlight:
        return self.loader.highlight(self.registry.active_session_id)

    @property
    def selection(self) -> ComposeSelection | None:
        return self._selection

    @property
    def is_restoring_context(self) -> bool:
        return self._restoring_context

    @property
    def is_sending(self) -> bool:
        return self.pipeline.is_streaming()

    @property
    def error(self) -> MedChatException | None:
        return self.errors.current

    def dismiss_error(self) -> None:
        self.errors.dismiss()

    def session_state(self, session_id: str) -> SessionViewState:
        return self.states.get(session_id)

    def current_context(self) -> ContextPayload | None:
        """
        Context for the next send.

        The resolved compose selection when one is set, otherwise the saved
        default context of the active session, otherwise None.
        """
        if self._selection is not None:
            return resolve_selection(self._selection, self.settings.default_reference_scope)
        active = self.active_session
        if active is not None and active.default_context is not None:
            return active.default_context
        return None

    # ------------------------------------------------------------------
    # Session list
    # ------------------------------------------------------------------

    async def start(self) -> tuple[ChatSessionSummary, ...]:
        """Initial load of every session."""
        return await self.registry.load(None)

    async def load_sessions(self, patient_filter: str | None = None) -> tuple[ChatSessionSummary, ...]:
        return await self.registry.load(patient_filter)

    async def create_session(self, title: str | None = None) -> ChatSessionSummary | None:
        """
        Explicitly create a session from the current selection and activate it.

        Returns:
            ChatSessionSummary | None: Created session, None on failure (see error)
        """
        context = self.current_context() if self._selection is not None else None
        if context is None:
            self.errors.set(ValidationError(MISSING_SELECTION_MESSAGE, field="selection"))
            return None

        try:
            summary = await self.registry.create(
                context.patient_id,
                title,
                context,
                list(self._selection.patient_ids) or None,
            )
        except MedChatException as e:
            self.errors.set(e)
            log_exception_with_context(logger, f"{__name__}:create_session - Creation failed", e)
            return None

        self._leave_active(summary.id)
        self.registry.activate(summary.id)
        self.transcripts.replace(summary.id, ())
        self.states.transition(summary.id, SessionViewState.ACTIVE)
        return summary

    async def rename(self, session_id: str, title: str) -> ChatSessionSummary | None:
        return await self.registry.rename(session_id, title)

    async def delete_conversation(self, session_id: str) -> DeleteResult:
        """
        Delete a session; the next active session, if any, is loaded.
        """
        if self.pipeline.is_streaming(session_id):
            self.pipeline.abandon(session_id)

        result = await self.registry.delete(session_id)
        if not result.deleted:
            return result

        self.transcripts.drop(session_id)
        self.membership.forget(session_id)
        self.loader.forget(session_id)
        self.states.transition(session_id, SessionViewState.DELETED)

        if result.next_active_session_id is not None:
            await self.load_conversation(result.next_active_session_id)
        return result

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def load_conversation(self, session_id: str) -> ConversationLoadResult:
        """Open a session, reconciling its transcript with the backend."""
        previous = self.registry.active_session_id
        document_filter = self._selection.primary_patient_id if self._selection else None
        result = await self.loader.load(session_id, document_filter=document_filter)
        if result.ok and previous is not None and previous != session_id:
            self.states.transition(previous, SessionViewState.LOADED)
        return result

    def archive_current_conversation(self) -> bool:
        """
        Clear the active view without touching the backend.

        Returns:
            bool: True when a session was active
        """
        session_id = self.registry.active_session_id
        if session_id is None:
            return False
        self.registry.activate(None)
        self.states.transition(session_id, SessionViewState.ARCHIVED_LOCAL)
        logger.info(
            f"{__name__}:archive_current_conversation - Conversation archived locally",
            extra={"session_id": session_id},
        )
        return True

    async def send_message(self, content: str, session_id: str | None = None) -> SendResult:
        """
        Send a message in the active session, creating one when none is active.
        """
        context = self.current_context()
        metadata = build_message_metadata(self._selection) if self._selection is not None else None
        patient_ids = list(self._selection.patient_ids) if self._selection is not None else None
        return await self.pipeline.send(
            content,
            context,
            metadata=metadata,
            session_id=session_id,
            patient_ids=patient_ids or None,
        )

    def abandon(self, session_id: str | None = None) -> bool:
        """Stop the in-flight send of a session (the active one by default)."""
        target = session_id or self.registry.active_session_id
        return self.pipeline.abandon(target) if target else False

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    async def session_patients(self, session_id: str | None = None) -> tuple[SessionPatient, ...]:
        target = session_id or self.registry.active_session_id
        if target is None:
            return ()
        try:
            return await self.membership.patients(target)
        except SessionNotFoundError:
            self.sweep.sweep(target)
        except MedChatException as e:
            self.errors.set(e)
        return ()

    async def session_documents(
        self,
        session_id: str | None = None,
        patient_filter: str | None = None,
    ) -> tuple[SessionDocument, ...]:
        target = session_id or self.registry.active_session_id
        if target is None:
            return ()
        try:
            return await self.membership.documents(target, patient_filter)
        except SessionNotFoundError:
            self.sweep.sweep(target)
        except MedChatException as e:
            self.errors.set(e)
        return ()

    # ------------------------------------------------------------------
    # Compose selection
    # ------------------------------------------------------------------

    @contextmanager
    def restoring_context(self) -> Iterator[None]:
        """Suppress context-change reloads while selections are restored."""
        previous = self._restoring_context
        self._restoring_context = True
        try:
            yield
        finally:
            self._restoring_context = previous

    async def set_selection(self, selection: ComposeSelection | None) -> None:
        """
        Replace the compose selection.

        A change of primary patient reloads the unfiltered session list and
        archives the current conversation, except for the first selection and
        while context is being restored.
        """
        previous_primary = self._selection.primary_patient_id if self._selection else None
        first_selection = not self._selection_initialized
        self._selection = selection
        self._selection_initialized = True

        new_primary = selection.primary_patient_id if selection else None
        if first_selection or self._restoring_context or new_primary == previous_primary:
            return

        logger.info(
            f"{__name__}:set_selection - Primary patient changed, reloading sessions",
            extra={"previous_patient": previous_primary, "patient": new_primary},
        )
        self.archive_current_conversation()
        await self.registry.load(None)

    def _leave_active(self, next_session_id: str) -> None:
        previous = self.registry.active_session_id
        if previous is not None and previous != next_session_id:
            self.states.transition(previous, SessionViewState.LOADED)

    async def restore_selection(self, session_id: str | None = None) -> ComposeSelection | None:
        """
        Restore the compose selection saved with a session.

        The session's default context is merged with the metadata of its
        most recent user message.
        """
        target = session_id or self.registry.active_session_id
        if target is None:
            return None

        summary = self.registry.get(target)
        patients = await self.session_patients(target)
        selection = selection_from_session(
            summary.default_context if summary else None,
            patient_ids=[patient.id for patient in patients],
            last_user_metadata=self.loader.last_metadata(target),
        )
        with self.restoring_context():
            await self.set_selection(selection)
        return selection
