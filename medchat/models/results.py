"""
Typed operation results.

Public engine operations resolve to these records instead of raising.

Dependencies: dataclasses (stdlib)
System role: Result contracts returned to presentation layers
"""

from dataclasses import dataclass, field
from enum import Enum

from medchat.core.exceptions import MedChatException
from medchat.models.context import ContextHighlight, MessageMetadata
from medchat.models.message import ChatMessage
from medchat.models.session import ChatSessionSummary


class SendStatus(str, Enum):
    """Outcome of a send_message call."""

    COMPLETED = "completed"
    IGNORED_EMPTY = "ignored_empty"
    REJECTED_BUSY = "rejected_busy"
    VALIDATION_FAILED = "validation_failed"
    SESSION_CREATE_FAILED = "session_create_failed"
    STREAM_FAILED = "stream_failed"
    SESSION_GONE = "session_gone"
    ABANDONED = "abandoned"


@dataclass(frozen=True)
class SendResult:
    """Result of one send attempt."""

    status: SendStatus
    session_id: str | None = None
    message_id: str | None = None
    error: MedChatException | None = None

    @property
    def ok(self) -> bool:
        return self.status == SendStatus.COMPLETED


@dataclass(frozen=True)
class ConversationLoadResult:
    """
    Result of loading one session.

    Attributes:
        session_id: Requested session id
        ok: True when the session was loaded and activated
        not_found: True when the backend reported the session as a ghost
        session: Canonical summary, or the cached one on soft failures
        messages: Transcript snapshot after the load
        highlight: Documents retrieval actually used in the session
        last_user_metadata: Selection saved with the most recent user message
        error: Soft failure recorded during the load, if any
    """

    session_id: str
    ok: bool
    not_found: bool = False
    session: ChatSessionSummary | None = None
    messages: tuple[ChatMessage, ...] = field(default_factory=tuple)
    highlight: ContextHighlight | None = None
    last_user_metadata: MessageMetadata | None = None
    error: MedChatException | None = None


@dataclass(frozen=True)
class DeleteResult:
    """Result of deleting a session."""

    session_id: str
    deleted: bool
    next_active_session_id: str | None = None
    error: MedChatException | None = None
