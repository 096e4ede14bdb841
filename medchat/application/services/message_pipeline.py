"""
Streaming message pipeline.

Sends one user message, creating the session first when none is active, and
applies the streamed answer to the transcript cache:

1. Append the user message and an empty assistant placeholder in one update
2. Content events extend the placeholder, sources events replace its citations
3. Done swaps in the permanent message id and bumps session activity
4. Error events and exceptions roll the pair back and append one synthetic
   error message

At most one send is in flight per session. The stream is consumed in a child
task so abandon() can stop it at any point.

Dependencies: medchat.boundary.contracts, medchat.application.services
System role: Optimistic send with streaming effect application
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator

from medchat.application.services.ghost_sweep import GhostSessionSweep
from medchat.application.services.session_registry import SessionRegistry
from medchat.application.services.transcript_cache import TranscriptCache
from medchat.application.state import ErrorState, SessionStateTracker, SessionViewState
from medchat.boundary.contracts import MessageStore, SessionDirectory
from medchat.core.exceptions import (
    MedChatException,
    RequestTimeoutError,
    SessionNotFoundError,
    StreamError,
    ValidationError,
)
from medchat.models.context import ContextPayload, MessageMetadata
from medchat.models.message import ChatMessage, MessageRole
from medchat.models.results import SendResult, SendStatus
from medchat.models.streaming import ContentDelta, DoneEvent, ErrorEvent, SourcesEvent, StreamEvent
from medchat.observability.log_utils import log_exception_with_context, log_with_context

logger = logging.getLogger(__name__)

MISSING_CONTEXT_MESSAGE = "Selecione um paciente ou referência para iniciar a conversa"


@dataclass
class _InFlight:
    """Bookkeeping for one streaming send."""

    session_id: str
    user_message_id: str
    placeholder_id: str
    content: str = ""
    abandoned: bool = False
    consumer: asyncio.Task | None = field(default=None, repr=False)


class StreamingMessagePipeline:
    """Optimistic send of user messages with streamed answers."""

    def __init__(
        self,
        registry: SessionRegistry,
        directory: SessionDirectory,
        store: MessageStore,
        transcripts: TranscriptCache,
        sweep: GhostSessionSweep,
        errors: ErrorState | None = None,
        states: SessionStateTracker | None = None,
        stream_open_timeout: float | None = None,
        new_session_title: str = "Nova conversa",
        error_message_template: str = "Houve um erro ao gerar a resposta: {error}",
    ) -> None:
        """
        Initialize message pipeline.

        Args:
            registry: Session list owner, used for creation and activity bumps
            directory: Session directory, used for the post-answer title refresh
            store: Message store providing answer streams
            transcripts: Transcript cache the stream effects are applied to
            sweep: Ghost sweep for sessions reported as not found
            errors: Shared error state
            states: Session view state tracker
            stream_open_timeout: Seconds allowed until the first stream event
            new_session_title: Placeholder title of sessions created by a send
            error_message_template: Synthetic error message, formatted with {error}
        """
        self._registry = registry
        self._directory = directory
        self._store = store
        self._transcripts = transcripts
        self._sweep = sweep
        self._errors = errors or ErrorState()
        self._states = states or SessionStateTracker()
        self._stream_open_timeout = stream_open_timeout
        self._new_session_title = new_session_title
        self._error_message_template = error_message_template

        self._creating = False
        self._inflight: dict[str, _InFlight] = {}
        self._background: set[asyncio.Task] = set()
        self._last_timestamp: datetime | None = None

    @property
    def is_creating_session(self) -> bool:
        return self._creating

    def is_streaming(self, session_id: str | None = None) -> bool:
        """True while a send is in flight, for one session or any."""
        if session_id is None:
            return bool(self._inflight) or self._creating
        return session_id in self._inflight

    async def send(
        self,
        content: str,
        context: ContextPayload | None,
        metadata: MessageMetadata | None = None,
        session_id: str | None = None,
        patient_ids: list[str] | None = None,
    ) -> SendResult:
        """
        Send a user message and stream the answer into the transcript.

        Args:
            content: Message text; whitespace-only messages are ignored
            context: Resolved context; None fails validation without any backend call
            metadata: Document selection saved with the user message
            session_id: Target session, defaults to the active one; a new
                session is created when neither exists
            patient_ids: All selected patients, attached to a created session

        Returns:
            SendResult: Outcome of the send, never raises for backend failures
        """
        text = content.strip()
        if not text:
            return SendResult(status=SendStatus.IGNORED_EMPTY, session_id=session_id)

        if context is None:
            error = ValidationError(MISSING_CONTEXT_MESSAGE, field="context")
            self._errors.set(error)
            return SendResult(status=SendStatus.VALIDATION_FAILED, session_id=session_id, error=error)

        target = session_id or self._registry.active_session_id
        if self._creating or (target is not None and self._transcripts.is_busy(target)):
            logger.info(
                f"{__name__}:send - Rejected, a send is already in flight",
                extra={"session_id": target},
            )
            return SendResult(status=SendStatus.REJECTED_BUSY, session_id=target)

        if target is not None and self._sweep.is_ghost(target):
            return SendResult(
                status=SendStatus.SESSION_GONE,
                session_id=target,
                error=SessionNotFoundError(target),
            )

        self._errors.dismiss()

        if target is None:
            self._creating = True
            try:
                summary = await self._registry.create(
                    context.patient_id, self._new_session_title, context, patient_ids
                )
            except MedChatException as e:
                self._errors.set(e)
                log_exception_with_context(logger, f"{__name__}:send - Session creation failed", e)
                return SendResult(status=SendStatus.SESSION_CREATE_FAILED, error=e)
            finally:
                self._creating = False
            target = summary.id
            self._registry.activate(target)
            self._states.transition(target, SessionViewState.ACTIVE)

        if not self._transcripts.try_claim(target):
            return SendResult(status=SendStatus.REJECTED_BUSY, session_id=target)

        flight: _InFlight | None = None
        try:
            is_first_exchange = not self._transcripts.snapshot(target)
            original_title = self._title_of(target)
            flight = self._begin(target, text, metadata)
            log_with_context(
                logger,
                logging.INFO,
                f"{__name__}:send - Streaming answer",
                session_id=target,
                mode=context.mode.value,
                selected_documents=metadata.selected_patient_document_uuids if metadata else None,
            )
            flight.consumer = asyncio.create_task(
                self._consume(flight, self._store.stream_send(target, text, context, metadata))
            )
            try:
                result = await flight.consumer
            except asyncio.CancelledError:
                if not flight.abandoned:
                    raise
                result = SendResult(status=SendStatus.ABANDONED, session_id=flight.session_id)

            if result.ok and is_first_exchange:
                self._schedule_title_refresh(flight.session_id, original_title)
            return result
        finally:
            self._transcripts.release(target)
            if flight is not None:
                self._transcripts.release(flight.session_id)
                self._inflight.pop(flight.session_id, None)

    def abandon(self, session_id: str) -> bool:
        """
        Stop the in-flight send of a session.

        Remaining events are not applied, the stream is closed and the
        optimistic user/placeholder pair is removed from the transcript.

        Returns:
            bool: True when a send was in flight
        """
        flight = self._inflight.get(session_id)
        if flight is None or flight.abandoned:
            return False
        flight.abandoned = True
        self._transcripts.remove_messages(
            flight.session_id, (flight.user_message_id, flight.placeholder_id)
        )
        if flight.consumer is not None:
            flight.consumer.cancel()
        logger.info(f"{__name__}:abandon - Send abandoned", extra={"session_id": session_id})
        return True

    async def wait_background(self) -> None:
        """Wait for pending background title refreshes."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel in-flight sends and background work."""
        for session_id in list(self._inflight):
            self.abandon(session_id)
        for task in list(self._background):
            task.cancel()
        await self.wait_background()

    # ------------------------------------------------------------------
    # Stream consumption
    # ------------------------------------------------------------------

    def _begin(self, session_id: str, text: str, metadata: MessageMetadata | None) -> _InFlight:
        user_message = ChatMessage(
            id=f"user-{uuid.uuid4()}",
            session_id=session_id,
            role=MessageRole.USER,
            content=text,
            timestamp=self._next_timestamp(session_id),
            metadata=metadata,
        )
        placeholder = ChatMessage(
            id=f"assistant-{uuid.uuid4()}",
            session_id=session_id,
            role=MessageRole.ASSISTANT,
            content="",
            timestamp=self._next_timestamp(session_id),
        )
        self._transcripts.append(session_id, user_message, placeholder)
        self._registry.touch(session_id, user_message.timestamp)

        flight = _InFlight(
            session_id=session_id,
            user_message_id=user_message.id,
            placeholder_id=placeholder.id,
        )
        self._inflight[session_id] = flight
        return flight

    async def _consume(self, flight: _InFlight, stream: AsyncIterator[StreamEvent]) -> SendResult:
        try:
            first = True
            while True:
                try:
                    if first:
                        event = await asyncio.wait_for(anext(stream), timeout=self._stream_open_timeout)
                        first = False
                    else:
                        event = await anext(stream)
                except StopAsyncIteration:
                    break

                if self._sweep.is_ghost(flight.session_id):
                    return SendResult(status=SendStatus.SESSION_GONE, session_id=flight.session_id)

                if isinstance(event, ContentDelta):
                    flight.content += event.text
                    self._transcripts.update_message(
                        flight.session_id, flight.placeholder_id, content=flight.content
                    )
                elif isinstance(event, SourcesEvent):
                    self._transcripts.update_message(
                        flight.session_id, flight.placeholder_id, sources=list(event.sources)
                    )
                elif isinstance(event, DoneEvent):
                    return self._complete(flight, event)
                elif isinstance(event, ErrorEvent):
                    raise StreamError(
                        event.message,
                        session_id=flight.session_id,
                        details={"code": event.code} if event.code else None,
                    )

            # Stream closed without an explicit completion event
            return self._complete(flight, DoneEvent())

        except SessionNotFoundError as e:
            self._sweep.sweep(flight.session_id)
            return SendResult(status=SendStatus.SESSION_GONE, session_id=flight.session_id, error=e)
        except asyncio.TimeoutError:
            error = RequestTimeoutError("stream_open", self._stream_open_timeout or 0.0)
            return self._fail(flight, error)
        except MedChatException as e:
            return self._fail(flight, e)
        except Exception as e:
            return self._fail(
                flight,
                StreamError(
                    "Falha inesperada ao receber a resposta.",
                    session_id=flight.session_id,
                    details={"error_type": type(e).__name__, "error": str(e)},
                ),
            )
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    def _complete(self, flight: _InFlight, done: DoneEvent) -> SendResult:
        canonical = done.session_id
        if canonical and canonical != flight.session_id and not self._transcripts.is_busy(canonical):
            old_session_id = flight.session_id
            self._transcripts.move(old_session_id, canonical)
            self._registry.rekey(old_session_id, canonical)
            self._transcripts.try_claim(canonical)
            self._transcripts.release(old_session_id)
            self._inflight[canonical] = self._inflight.pop(old_session_id, flight)
            flight.session_id = canonical
            self._states.transition(canonical, SessionViewState.ACTIVE)

        message_id = flight.placeholder_id
        if done.message_id:
            self._transcripts.update_message(
                flight.session_id, flight.placeholder_id, id=done.message_id, session_id=flight.session_id
            )
            message_id = done.message_id

        self._registry.touch(flight.session_id, self._next_timestamp(flight.session_id))
        logger.info(
            f"{__name__}:send - Answer completed",
            extra={"session_id": flight.session_id, "message_id": message_id, "chars": len(flight.content)},
        )
        return SendResult(status=SendStatus.COMPLETED, session_id=flight.session_id, message_id=message_id)

    def _fail(self, flight: _InFlight, error: MedChatException) -> SendResult:
        self._errors.set(error)
        log_exception_with_context(
            logger, f"{__name__}:send - Answer stream failed", error, session_id=flight.session_id
        )
        if flight.abandoned:
            return SendResult(status=SendStatus.ABANDONED, session_id=flight.session_id, error=error)

        self._transcripts.remove_messages(
            flight.session_id, (flight.user_message_id, flight.placeholder_id)
        )
        self._transcripts.append(
            flight.session_id,
            ChatMessage(
                id=f"error-{uuid.uuid4()}",
                session_id=flight.session_id,
                role=MessageRole.ASSISTANT,
                content=self._error_message_template.format(error=error.message),
                timestamp=self._next_timestamp(flight.session_id),
            ),
        )
        return SendResult(status=SendStatus.STREAM_FAILED, session_id=flight.session_id, error=error)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _title_of(self, session_id: str) -> str | None:
        summary = self._registry.get(session_id)
        return summary.title if summary else None

    def _next_timestamp(self, session_id: str) -> datetime:
        """Wall clock, forced strictly after every timestamp already issued."""
        now = datetime.now(timezone.utc)
        floor = self._last_timestamp
        transcript = self._transcripts.snapshot(session_id)
        if transcript and (floor is None or transcript[-1].timestamp > floor):
            floor = transcript[-1].timestamp
        if floor is not None and now <= floor:
            now = floor + timedelta(microseconds=1)
        self._last_timestamp = now
        return now

    def _schedule_title_refresh(self, session_id: str, original_title: str | None) -> None:
        task = asyncio.create_task(self._refresh_title(session_id, original_title))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _refresh_title(self, session_id: str, original_title: str | None) -> None:
        """Pick up the title the backend generates after the first answer."""
        try:
            summary = await self._directory.get_session(session_id)
        except SessionNotFoundError:
            self._sweep.sweep(session_id)
            return
        except MedChatException as e:
            log_exception_with_context(
                logger, f"{__name__}:refresh_title - Title refresh failed", e, session_id=session_id
            )
            return

        title = (summary.title or "").strip()
        if title and title not in (self._new_session_title, original_title):
            self._registry.apply_title(session_id, title)
            logger.info(
                f"{__name__}:refresh_title - Applied generated title",
                extra={"session_id": session_id},
            )
