"""Orchestration services of the chat engine."""

from medchat.application.services.conversation_loader import ConversationLoader
from medchat.application.services.ghost_sweep import GhostSessionSweep
from medchat.application.services.membership_service import SessionMembershipService
from medchat.application.services.message_pipeline import StreamingMessagePipeline
from medchat.application.services.session_registry import SessionRegistry
from medchat.application.services.transcript_cache import TranscriptCache

__all__ = [
    "ConversationLoader",
    "GhostSessionSweep",
    "SessionMembershipService",
    "SessionRegistry",
    "StreamingMessagePipeline",
    "TranscriptCache",
]
