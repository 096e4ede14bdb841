"""
Streaming event schemas for answer streams.

Defines the discriminated event variants consumed by the message pipeline.
Each backend stream is an ordered async sequence of these events.

Dependencies: pydantic
System role: Streaming protocol schemas
"""

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from medchat.models.message import ChatSource


class StreamEventType(str, Enum):
    """Backend-to-client event types for a streamed answer."""

    CONTENT = "content"
    SOURCES = "sources"
    DONE = "done"
    ERROR = "error"


class ContentDelta(BaseModel):
    """
    Text fragment appended to the answer being streamed.

    Attributes:
        text: Fragment, appended verbatim
    """

    model_config = ConfigDict(frozen=True)

    type: Literal[StreamEventType.CONTENT] = StreamEventType.CONTENT
    text: str


class SourcesEvent(BaseModel):
    """
    Full citation list for the answer, replacing any earlier one.

    Attributes:
        sources: Complete citation list
    """

    model_config = ConfigDict(frozen=True)

    type: Literal[StreamEventType.SOURCES] = StreamEventType.SOURCES
    sources: list[ChatSource] = Field(default_factory=list)


class DoneEvent(BaseModel):
    """
    Stream completion.

    Attributes:
        message_id: Permanent id of the answer, if the backend supplied one
        session_id: Canonical session id, if the backend supplied one
    """

    model_config = ConfigDict(frozen=True)

    type: Literal[StreamEventType.DONE] = StreamEventType.DONE
    message_id: str | None = None
    session_id: str | None = None


class ErrorEvent(BaseModel):
    """
    Stream failure reported by the backend.

    Attributes:
        message: Error description
        code: Optional backend error code
    """

    model_config = ConfigDict(frozen=True)

    type: Literal[StreamEventType.ERROR] = StreamEventType.ERROR
    message: str
    code: str | None = None


StreamEvent = Annotated[
    Union[ContentDelta, SourcesEvent, DoneEvent, ErrorEvent],
    Field(discriminator="type"),
]
