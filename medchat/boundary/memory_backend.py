"""
In-memory MedChat backend for local development and tests.

Implements all collaborator contracts against process-local dictionaries.
Answers are produced by a pluggable responder; the default one streams the
question back word by word. Mirrors the backend behaviours the engine
relies on: not-found for unknown sessions, first-exchange title generation,
retrieval summary updates from cited sources.

Dependencies: medchat.boundary.contracts
System role: Local dev collaborator (selected with backend_mode=memory)
"""

import asyncio
import logging
import uuid
from collections.abc import Callable, Sequence
from datetime import datetime, timezone
from typing import AsyncIterator

from medchat.boundary.contracts import MessageStore, SessionDirectory, SessionMembership
from medchat.core.exceptions import MedChatException, SessionNotFoundError
from medchat.core.transcript_rules import default_session_title
from medchat.models.context import ContextPayload, MessageMetadata
from medchat.models.message import ChatMessage, ChatSource, MessageRole
from medchat.models.session import (
    ChatSessionSummary,
    RetrievalDoc,
    RetrievalSummary,
    SessionDocument,
    SessionPatient,
)
from medchat.models.streaming import (
    ContentDelta,
    DoneEvent,
    ErrorEvent,
    SourcesEvent,
    StreamEvent,
)

logger = logging.getLogger(__name__)

Responder = Callable[[ChatSessionSummary, str, ContextPayload], Sequence[StreamEvent]]

PLACEHOLDER_TITLES = frozenset({"Nova conversa"})


def echo_responder(
    session: ChatSessionSummary,
    content: str,
    context: ContextPayload,
) -> list[StreamEvent]:
    """Stream the question back, one word per content event."""
    words = content.split()
    events: list[StreamEvent] = [
        ContentDelta(text=word if index == 0 else f" {word}")
        for index, word in enumerate(words)
    ]
    events.append(SourcesEvent(sources=[]))
    events.append(DoneEvent(message_id=f"msg-{uuid.uuid4()}", session_id=session.id))
    return events


class InMemoryMedChatBackend(SessionDirectory, MessageStore, SessionMembership):
    """Process-local implementation of the backend collaborators."""

    def __init__(
        self,
        responder: Responder | None = None,
        event_delay: float = 0.0,
    ) -> None:
        """
        Initialize in-memory backend.

        Args:
            responder: Produces the answer events for a user message
            event_delay: Seconds to sleep between streamed events
        """
        self._responder = responder or echo_responder
        self._event_delay = event_delay
        self.sessions: dict[str, ChatSessionSummary] = {}
        self.messages: dict[str, list[ChatMessage]] = {}
        self.patients: dict[str, list[SessionPatient]] = {}
        self.documents: dict[str, list[SessionDocument]] = {}
        self._failures: dict[str, MedChatException] = {}

    def inject_failure(self, operation: str, error: MedChatException) -> None:
        """Make the next call to `operation` raise `error`."""
        self._failures[operation] = error

    def _check_failure(self, operation: str) -> None:
        error = self._failures.pop(operation, None)
        if error is not None:
            raise error

    def _require(self, session_id: str) -> ChatSessionSummary:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    # Session directory

    async def list_sessions(self, patient_filter: str | None = None) -> list[ChatSessionSummary]:
        self._check_failure("list_sessions")
        sessions = [
            session
            for session in self.sessions.values()
            if patient_filter is None or session.patient_id == patient_filter
        ]
        return sorted(sessions, key=lambda s: s.activity_sort_key, reverse=True)

    async def create_session(
        self,
        patient_id: str | None,
        title: str | None,
        default_context: ContextPayload,
        patient_ids: list[str] | None = None,
    ) -> str:
        self._check_failure("create_session")
        session_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc)
        self.sessions[session_id] = ChatSessionSummary(
            id=session_id,
            title=title or default_session_title(now),
            patient_id=patient_id,
            default_mode=default_context.mode,
            default_context=default_context,
            last_activity_at=now,
        )
        self.messages[session_id] = []
        members = list(patient_ids or ([patient_id] if patient_id else []))
        self.patients[session_id] = [SessionPatient(id=pid, full_name=pid) for pid in members]
        self.documents.setdefault(session_id, [])
        return session_id

    async def get_session(self, session_id: str) -> ChatSessionSummary:
        self._check_failure("get_session")
        session = self._require(session_id)
        if session.retrieval_summary is None:
            return session.model_copy(update={"retrieval_summary": RetrievalSummary()})
        return session

    async def rename_session(self, session_id: str, title: str) -> ChatSessionSummary:
        self._check_failure("rename_session")
        session = self._require(session_id).model_copy(update={"title": title})
        self.sessions[session_id] = session
        return session

    async def delete_session(self, session_id: str) -> None:
        self._check_failure("delete_session")
        self._require(session_id)
        del self.sessions[session_id]
        self.messages.pop(session_id, None)
        self.patients.pop(session_id, None)
        self.documents.pop(session_id, None)

    # Message store

    async def get_messages(self, session_id: str) -> list[ChatMessage]:
        self._check_failure("get_messages")
        self._require(session_id)
        return list(self.messages.get(session_id, []))

    async def stream_send(
        self,
        session_id: str,
        content: str,
        context: ContextPayload,
        metadata: MessageMetadata | None = None,
    ) -> AsyncIterator[StreamEvent]:
        self._check_failure("stream_send")
        session = self._require(session_id)
        history = self.messages.setdefault(session_id, [])
        is_first_exchange = not history
        history.append(
            ChatMessage(
                id=f"msg-{uuid.uuid4()}",
                session_id=session_id,
                role=MessageRole.USER,
                content=content,
                metadata=metadata,
            )
        )

        answer: list[str] = []
        sources: list[ChatSource] = []
        for event in self._responder(session, content, context):
            if self._event_delay:
                await asyncio.sleep(self._event_delay)
            if isinstance(event, ContentDelta):
                answer.append(event.text)
            elif isinstance(event, SourcesEvent):
                sources = list(event.sources)
            elif isinstance(event, DoneEvent):
                self._complete_exchange(
                    session_id, event.message_id, "".join(answer), sources, context, is_first_exchange, content
                )
            yield event
            if isinstance(event, (DoneEvent, ErrorEvent)):
                return

    def _complete_exchange(
        self,
        session_id: str,
        message_id: str | None,
        answer: str,
        sources: list[ChatSource],
        context: ContextPayload,
        is_first_exchange: bool,
        question: str,
    ) -> None:
        session = self.sessions.get(session_id)
        if session is None:
            return
        self.messages[session_id].append(
            ChatMessage(
                id=message_id or f"msg-{uuid.uuid4()}",
                session_id=session_id,
                role=MessageRole.ASSISTANT,
                content=answer,
                sources=sources,
            )
        )

        updates: dict = {
            "last_activity_at": datetime.now(timezone.utc),
            "retrieval_summary": self._merge_retrieval(session.retrieval_summary, sources, context),
        }
        if is_first_exchange and session.title in PLACEHOLDER_TITLES:
            updates["title"] = " ".join(question.split()[:6]) or session.title
        self.sessions[session_id] = session.model_copy(update=updates)

    @staticmethod
    def _merge_retrieval(
        current: RetrievalSummary | None,
        sources: list[ChatSource],
        context: ContextPayload,
    ) -> RetrievalSummary:
        patient_docs = {doc.document_id: doc for doc in (current.patient_documents if current else [])}
        reference_docs = {doc.document_id: doc for doc in (current.reference_documents if current else [])}
        patient_doc_ids = set(context.patient_document_uuids or [])

        for document_id in {source.document_id for source in sources}:
            if document_id in patient_doc_ids:
                previous = patient_docs.get(document_id)
                patient_docs[document_id] = RetrievalDoc(
                    document_id=document_id,
                    patient_id=context.patient_id,
                    message_count=(previous.message_count if previous else 0) + 1,
                )
            else:
                previous = reference_docs.get(document_id)
                reference_docs[document_id] = RetrievalDoc(
                    document_id=document_id,
                    message_count=(previous.message_count if previous else 0) + 1,
                )
        return RetrievalSummary(
            patient_documents=list(patient_docs.values()),
            reference_documents=list(reference_docs.values()),
        )

    # Session membership

    async def get_patients(self, session_id: str) -> list[SessionPatient]:
        self._check_failure("get_patients")
        self._require(session_id)
        return list(self.patients.get(session_id, []))

    async def get_documents(
        self,
        session_id: str,
        patient_filter: str | None = None,
    ) -> list[SessionDocument]:
        self._check_failure("get_documents")
        self._require(session_id)
        documents = self.documents.get(session_id, [])
        if patient_filter is None:
            return list(documents)
        return [doc for doc in documents if doc.patient_id == patient_filter]
