"""
Answer stream decoder.

Turns the lines of a streamed HTTP body into typed stream events.
Two body formats are understood:

SSE (text/event-stream):
    data: {"type": "content", "content": "..."}
    data: {"type": "sources", "sources": [...]}
    data: {"type": "done", "messageId": "...", "sessionId": "..."}
    data: {"type": "error", "error": "..."}
    data: [DONE]

NDJSON / plain text:
    {"content": "...", "messageId": "...", "done": true}
    any non-JSON line is treated as answer text

Untyped chunks carrying ``content`` and OpenAI-style ``delta.content``
chunks are accepted in both formats. Ids seen on any chunk are carried into
the final done event.

Dependencies: pydantic, medchat.models.streaming
System role: Wire decoding for the streaming message pipeline
"""

import json
import logging
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from medchat.models.message import ChatSource
from medchat.models.streaming import (
    ContentDelta,
    DoneEvent,
    ErrorEvent,
    SourcesEvent,
    StreamEvent,
)

logger = logging.getLogger(__name__)

SSE_DATA_PREFIX = "data:"
SSE_DONE_SENTINEL = "[DONE]"
DEFAULT_STREAM_ERROR = "Erro no stream"


class StreamDecoder:
    """
    Incremental decoder for one answer stream.

    Feed complete lines with feed(); call finish() when the body ends.
    Once a done or error event has been produced the decoder is finished and
    ignores further input.
    """

    def __init__(self, is_sse: bool, session_id: str | None = None) -> None:
        """
        Initialize decoder.

        Args:
            is_sse: True when the response content type is text/event-stream
            session_id: Session the stream belongs to, used when the backend
                does not echo one back
        """
        self.is_sse = is_sse
        self.message_id: str | None = None
        self.session_id = session_id
        self.finished = False

    def feed(self, line: str) -> list[StreamEvent]:
        """Decode one line of the body."""
        if self.finished:
            return []
        stripped = line.strip()
        if not stripped:
            return []
        if self.is_sse:
            return self._feed_sse(stripped)
        return self._feed_ndjson(stripped)

    def finish(self) -> list[StreamEvent]:
        """Complete a stream that ended without an explicit done event."""
        if self.finished:
            return []
        return [self._done()]

    def _feed_sse(self, line: str) -> list[StreamEvent]:
        if not line.startswith(SSE_DATA_PREFIX):
            # event:, id:, retry: and comment lines carry nothing we use
            return []
        payload = line[len(SSE_DATA_PREFIX):].strip()
        if not payload:
            return []
        if payload == SSE_DONE_SENTINEL:
            return [self._done()]

        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            logger.warning(
                f"{__name__}:_feed_sse - Skipping unparseable SSE payload",
                extra={"payload_length": len(payload)},
            )
            return []

        if isinstance(data, str):
            return self._content(data)
        if not isinstance(data, dict):
            return []

        chunk_type = data.get("type")
        if chunk_type == "content":
            return self._content(data.get("content"))
        if chunk_type == "sources":
            return self._sources(data.get("sources"))
        if chunk_type == "done":
            self._remember_ids(data)
            return [self._done()]
        if chunk_type == "error":
            return [self._error(data)]

        if data.get("content") is not None:
            events = self._content(str(data["content"]))
            self._remember_ids(data)
            if data.get("sources") is not None:
                events.extend(self._sources(data["sources"]))
            return events
        return self._delta(data)

    def _feed_ndjson(self, line: str) -> list[StreamEvent]:
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            return self._content(line)

        if isinstance(data, str):
            return self._content(data)
        if not isinstance(data, dict):
            return []
        if data.get("type") == "error":
            return [self._error(data)]

        if data.get("content") is not None:
            events = self._content(str(data["content"]))
        else:
            events = self._delta(data)
        if data.get("sources") is not None:
            events.extend(self._sources(data["sources"]))
        self._remember_ids(data)
        if data.get("done") is True or data.get("type") == "done":
            events.append(self._done())
        return events

    def _content(self, text: Any) -> list[StreamEvent]:
        if not isinstance(text, str) or not text:
            return []
        return [ContentDelta(text=text)]

    def _delta(self, data: dict[str, Any]) -> list[StreamEvent]:
        delta = data.get("delta")
        if isinstance(delta, dict):
            return self._content(delta.get("content"))
        return []

    def _sources(self, raw_sources: Any) -> list[StreamEvent]:
        if not isinstance(raw_sources, list):
            return []
        sources: list[ChatSource] = []
        for raw in raw_sources:
            try:
                sources.append(ChatSource.model_validate(raw))
            except PydanticValidationError:
                logger.warning(f"{__name__}:_sources - Dropping malformed source record")
        return [SourcesEvent(sources=sources)]

    def _remember_ids(self, data: dict[str, Any]) -> None:
        if data.get("messageId"):
            self.message_id = str(data["messageId"])
        if data.get("sessionId"):
            self.session_id = str(data["sessionId"])

    def _done(self) -> DoneEvent:
        self.finished = True
        return DoneEvent(message_id=self.message_id, session_id=self.session_id)

    def _error(self, data: dict[str, Any]) -> ErrorEvent:
        self.finished = True
        return ErrorEvent(
            message=str(data.get("error") or data.get("message") or DEFAULT_STREAM_ERROR),
            code=data.get("code"),
        )
