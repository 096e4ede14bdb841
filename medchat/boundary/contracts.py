"""
Collaborator contracts consumed by the engine.

Abstract interfaces for the backend answering service. Implementations:
- MedChatApiClient: REST API over httpx (production)
- InMemoryMedChatBackend: process-local store (development and tests)

Every call referencing a session id raises SessionNotFoundError when the
backend definitively reports the session as nonexistent.

Dependencies: medchat.models
System role: Boundary interfaces between engine and backend
"""

from __future__ import annotations

import abc
from typing import AsyncIterator

from medchat.models.context import ContextPayload, MessageMetadata
from medchat.models.message import ChatMessage
from medchat.models.session import ChatSessionSummary, SessionDocument, SessionPatient
from medchat.models.streaming import StreamEvent


class SessionDirectory(abc.ABC):
    """Backend catalogue of sessions."""

    @abc.abstractmethod
    async def list_sessions(self, patient_filter: str | None = None) -> list[ChatSessionSummary]:
        """List session summaries, optionally restricted to one patient."""

    @abc.abstractmethod
    async def create_session(
        self,
        patient_id: str | None,
        title: str | None,
        default_context: ContextPayload,
        patient_ids: list[str] | None = None,
    ) -> str:
        """Create a session and return its backend-issued id."""

    @abc.abstractmethod
    async def get_session(self, session_id: str) -> ChatSessionSummary:
        """Full summary including default context and retrieval summary."""

    @abc.abstractmethod
    async def rename_session(self, session_id: str, title: str) -> ChatSessionSummary:
        """Rename a session and return the updated summary."""

    @abc.abstractmethod
    async def delete_session(self, session_id: str) -> None:
        """Delete a session."""


class MessageStore(abc.ABC):
    """Backend transcript storage and answer streaming."""

    @abc.abstractmethod
    async def get_messages(self, session_id: str) -> list[ChatMessage]:
        """Ordered message history of a session."""

    @abc.abstractmethod
    async def stream_send(
        self,
        session_id: str,
        content: str,
        context: ContextPayload,
        metadata: MessageMetadata | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Send a user message and yield answer events in receipt order."""
        yield  # pragma: no cover


class SessionMembership(abc.ABC):
    """Patients and documents attached to sessions."""

    @abc.abstractmethod
    async def get_patients(self, session_id: str) -> list[SessionPatient]:
        """Patients attached to a session."""

    @abc.abstractmethod
    async def get_documents(
        self,
        session_id: str,
        patient_filter: str | None = None,
    ) -> list[SessionDocument]:
        """Documents used in a session; patient_id None marks reference documents."""
