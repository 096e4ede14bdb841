"""
Per-session transcript cache.

Holds the local transcript of every session the engine has touched, keyed by
session id. Consumers receive immutable tuple snapshots. Writes for one
session go through a single writer at a time: the message pipeline claims a
session with try_claim() before streaming and releases it afterwards.

Dependencies: medchat.models.message
System role: Transcript ownership for the loader/pipeline pair
"""

from collections.abc import Iterable
from typing import Any

from medchat.models.message import ChatMessage


class TranscriptCache:
    """Transcripts keyed by session id, with a busy flag per session."""

    def __init__(self) -> None:
        self._transcripts: dict[str, tuple[ChatMessage, ...]] = {}
        self._busy: set[str] = set()

    def snapshot(self, session_id: str | None) -> tuple[ChatMessage, ...]:
        """Read-only transcript of a session, empty when unknown."""
        if session_id is None:
            return ()
        return self._transcripts.get(session_id, ())

    def has(self, session_id: str) -> bool:
        return session_id in self._transcripts

    def replace(self, session_id: str, messages: Iterable[ChatMessage]) -> tuple[ChatMessage, ...]:
        """Replace a transcript wholesale."""
        transcript = tuple(messages)
        self._transcripts[session_id] = transcript
        return transcript

    def append(self, session_id: str, *messages: ChatMessage) -> tuple[ChatMessage, ...]:
        """Append messages in one update."""
        return self.replace(session_id, self.snapshot(session_id) + messages)

    def update_message(self, session_id: str, message_id: str, /, **changes: Any) -> ChatMessage | None:
        """
        Replace one message with an updated copy.

        Returns:
            ChatMessage | None: Updated message, or None when it is not cached
        """
        transcript = self.snapshot(session_id)
        for index, message in enumerate(transcript):
            if message.id == message_id:
                updated = message.model_copy(update=changes)
                self._transcripts[session_id] = (
                    transcript[:index] + (updated,) + transcript[index + 1:]
                )
                return updated
        return None

    def remove_messages(self, session_id: str, message_ids: Iterable[str]) -> tuple[ChatMessage, ...]:
        doomed = set(message_ids)
        return self.replace(
            session_id,
            (message for message in self.snapshot(session_id) if message.id not in doomed),
        )

    def move(self, old_session_id: str, new_session_id: str) -> None:
        """Re-key a transcript when the backend reports a canonical session id."""
        if old_session_id == new_session_id or old_session_id not in self._transcripts:
            return
        self._transcripts[new_session_id] = self._transcripts.pop(old_session_id)

    def drop(self, session_id: str) -> bool:
        """Forget a transcript. Returns True when one was cached."""
        return self._transcripts.pop(session_id, None) is not None

    # Single-writer claims

    def is_busy(self, session_id: str | None) -> bool:
        return session_id is not None and session_id in self._busy

    def try_claim(self, session_id: str) -> bool:
        """Claim the writer slot of a session. Returns False when already taken."""
        if session_id in self._busy:
            return False
        self._busy.add(session_id)
        return True

    def release(self, session_id: str) -> None:
        self._busy.discard(session_id)
