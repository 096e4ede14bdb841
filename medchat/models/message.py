"""
Message domain models.

Transcript messages and the citation records attached to assistant answers.

Dependencies: pydantic
System role: Transcript contracts
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from medchat.models.context import MessageMetadata


class MessageRole(str, Enum):
    """Author of a transcript message."""

    USER = "user"
    ASSISTANT = "assistant"


class ChatSource(BaseModel):
    """Citation pointing at the chunk an answer was grounded on."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    document_id: str = Field(description="Source document UUID")
    chunk_id: str = Field(description="Chunk identifier for tracing")
    chunk_index: int = Field(default=0, description="Chunk position inside the document")


class ChatMessage(BaseModel):
    """
    Single transcript message.

    Content is immutable once the message is finalized; while streaming the
    pipeline replaces the message with an extended copy.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    session_id: str | None = None
    role: MessageRole
    content: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    sources: list[ChatSource] = Field(default_factory=list)
    metadata: MessageMetadata | None = None

    @model_validator(mode="before")
    @classmethod
    def _normalize_backend_shape(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if not data.get("timestamp") and data.get("createdAt"):
            data["timestamp"] = data["createdAt"]
        if not data.get("timestamp"):
            data.pop("timestamp", None)
        if data.get("sources") is None:
            data.pop("sources", None)
        return data

    @field_validator("role", mode="before")
    @classmethod
    def _normalize_role(cls, value: Any) -> Any:
        if isinstance(value, str):
            # SYSTEM messages are shown as assistant output
            return MessageRole.USER if value.lower() == "user" else MessageRole.ASSISTANT
        return value

    @field_validator("timestamp")
    @classmethod
    def _ensure_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
