"""
Test suite for ChatEngine.

End-to-end flows over the in-memory backend: first send with session
creation, busy rejection, rename with a failing backend, ghost sessions,
delete with auto-selection, local archive and compose selection handling.

System role: Verification of the orchestration facade
"""

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from medchat.application.chat_engine import ChatEngine
from medchat.application.state import SessionViewState
from medchat.boundary.http import MedChatApiClient
from medchat.boundary.memory_backend import InMemoryMedChatBackend
from medchat.configs.engine import EngineSettings
from medchat.core.exceptions import ApiError, ValidationError
from medchat.models.context import ChatMode, ComposeSelection, ContextPayload, MessageMetadata
from medchat.models.message import ChatMessage, MessageRole
from medchat.models.results import SendStatus
from medchat.models.session import SessionPatient


async def seed(backend: InMemoryMedChatBackend, title: str, minutes_ago: int, context: ContextPayload) -> str:
    """Create a backend session whose last activity is `minutes_ago` in the past."""
    session_id = await backend.create_session(context.patient_id, title, context)
    backend.sessions[session_id] = backend.sessions[session_id].model_copy(
        update={"last_activity_at": datetime.now(timezone.utc) - timedelta(minutes=minutes_ago)}
    )
    return session_id


def yielding(call):
    """Wrap a backend coroutine so it yields to the event loop before running."""

    async def wrapper(*args, **kwargs):
        await asyncio.sleep(0)
        return await call(*args, **kwargs)

    return wrapper


class TestSendMessage:
    """Test suite for ChatEngine.send_message."""

    @pytest.mark.asyncio
    async def test_first_message_creates_session_and_adopts_generated_title(
        self, engine: ChatEngine, patient_selection: ComposeSelection
    ) -> None:
        """Test sending 'Hello' with no active session creates, streams and retitles."""
        # Arrange
        await engine.set_selection(patient_selection)

        # Act
        result = await engine.send_message("Hello")
        await engine.pipeline.wait_background()

        # Assert
        assert result.status == SendStatus.COMPLETED
        assert engine.active_session_id == result.session_id
        assert [m.role for m in engine.messages] == [MessageRole.USER, MessageRole.ASSISTANT]
        assert engine.messages[0].content == "Hello"
        assert engine.messages[0].metadata.selected_patient_document_uuids == ["doc-1"]
        assert engine.messages[1].content == "Hello"
        assert engine.messages[1].id == result.message_id
        assert engine.active_session.title == "Hello"
        assert engine.session_state(result.session_id) == SessionViewState.ACTIVE
        assert not engine.is_sending

    @pytest.mark.asyncio
    async def test_send_without_selection_fails_validation(self, engine: ChatEngine) -> None:
        # Act
        result = await engine.send_message("Hello")

        # Assert
        assert result.status == SendStatus.VALIDATION_FAILED
        assert isinstance(engine.error, ValidationError)
        assert engine.sessions == ()

    @pytest.mark.asyncio
    async def test_second_send_while_streaming_is_rejected(self, patient_selection: ComposeSelection) -> None:
        """Test only one send per session is in flight."""
        # Arrange
        backend = InMemoryMedChatBackend(event_delay=0.02)
        async with ChatEngine(backend, backend, backend, settings=EngineSettings(backend_mode="memory")) as engine:
            await engine.set_selection(patient_selection)
            session = await engine.create_session("Consulta")

            # Act
            first = asyncio.create_task(engine.send_message("uma pergunta longa"))
            while not engine.is_sending:
                await asyncio.sleep(0.001)
            second = await engine.send_message("outra")
            first_result = await first

        # Assert
        assert second.status == SendStatus.REJECTED_BUSY
        assert first_result.status == SendStatus.COMPLETED
        assert [m.content for m in engine.transcript(session.id) if m.role == MessageRole.USER] == [
            "uma pergunta longa"
        ]

    @pytest.mark.asyncio
    async def test_abandon_stops_active_send(self, patient_selection: ComposeSelection) -> None:
        # Arrange
        backend = InMemoryMedChatBackend(event_delay=0.05)
        async with ChatEngine(backend, backend, backend) as engine:
            await engine.set_selection(patient_selection)
            session = await engine.create_session()
            task = asyncio.create_task(engine.send_message("a b c d e f"))
            while not engine.is_sending:
                await asyncio.sleep(0.001)

            # Act
            abandoned = engine.abandon()
            result = await task

        # Assert
        assert abandoned
        assert result.status == SendStatus.ABANDONED
        assert engine.transcript(session.id) == ()


class TestSessionOperations:
    """Test suite for create, rename, delete and archive."""

    @pytest.mark.asyncio
    async def test_create_session_without_selection_sets_error(self, engine: ChatEngine) -> None:
        # Act
        created = await engine.create_session()

        # Assert
        assert created is None
        assert isinstance(engine.error, ValidationError)

    @pytest.mark.asyncio
    async def test_rename_keeps_title_when_backend_fails(
        self,
        engine: ChatEngine,
        memory_backend: InMemoryMedChatBackend,
        patient_context: ContextPayload,
    ) -> None:
        """Test renaming to 'Novo título' sticks locally despite a backend error."""
        # Arrange
        session_id = await seed(memory_backend, "Antigo", 1, patient_context)
        await engine.start()
        memory_backend.inject_failure("rename_session", ApiError("Erro interno", status_code=500))

        # Act
        await engine.rename(session_id, "Novo título")

        # Assert
        assert engine.sessions[0].title == "Novo título"
        assert memory_backend.sessions[session_id].title == "Antigo"

    @pytest.mark.asyncio
    async def test_delete_active_loads_next_session(
        self,
        engine: ChatEngine,
        memory_backend: InMemoryMedChatBackend,
        patient_context: ContextPayload,
    ) -> None:
        # Arrange
        older = await seed(memory_backend, "Antiga", 10, patient_context)
        newer = await seed(memory_backend, "Recente", 1, patient_context)
        memory_backend.messages[older] = [ChatMessage(id="m1", session_id=older, role=MessageRole.USER, content="oi")]
        await engine.start()
        await engine.load_conversation(newer)

        # Act
        result = await engine.delete_conversation(newer)

        # Assert
        assert result.deleted
        assert result.next_active_session_id == older
        assert engine.active_session_id == older
        assert [m.id for m in engine.messages] == ["m1"]
        assert engine.session_state(newer) == SessionViewState.DELETED
        assert [s.id for s in engine.sessions] == [older]

    @pytest.mark.asyncio
    async def test_archive_clears_active_view_only(
        self,
        engine: ChatEngine,
        memory_backend: InMemoryMedChatBackend,
        patient_context: ContextPayload,
    ) -> None:
        # Arrange
        session_id = await seed(memory_backend, "Consulta", 1, patient_context)
        await engine.start()
        await engine.load_conversation(session_id)

        # Act
        archived = engine.archive_current_conversation()

        # Assert
        assert archived
        assert engine.active_session_id is None
        assert engine.session_state(session_id) == SessionViewState.ARCHIVED_LOCAL
        assert session_id in memory_backend.sessions
        assert not engine.archive_current_conversation()


class TestGhostSessions:
    """Test suite for sessions deleted outside this engine."""

    @pytest.mark.asyncio
    async def test_loading_ghost_removes_it_everywhere(
        self,
        engine: ChatEngine,
        memory_backend: InMemoryMedChatBackend,
        patient_context: ContextPayload,
    ) -> None:
        # Arrange
        ghost = await seed(memory_backend, "Fantasma", 1, patient_context)
        other = await seed(memory_backend, "Outra", 5, patient_context)
        await engine.start()
        del memory_backend.sessions[ghost]

        # Act
        result = await engine.load_conversation(ghost)

        # Assert
        assert result.not_found
        assert [s.id for s in engine.sessions] == [other]
        assert engine.active_session_id is None
        assert engine.session_state(ghost) == SessionViewState.GHOST

    @pytest.mark.asyncio
    async def test_sending_to_ghost_reports_session_gone(
        self,
        engine: ChatEngine,
        memory_backend: InMemoryMedChatBackend,
        patient_context: ContextPayload,
        patient_selection: ComposeSelection,
    ) -> None:
        # Arrange
        session_id = await seed(memory_backend, "Consulta", 1, patient_context)
        await engine.set_selection(patient_selection)
        await engine.start()
        await engine.load_conversation(session_id)
        del memory_backend.sessions[session_id]

        # Act
        result = await engine.send_message("Ainda aí?")

        # Assert
        assert result.status == SendStatus.SESSION_GONE
        assert engine.sessions == ()
        assert engine.transcript(session_id) == ()


    @pytest.mark.asyncio
    async def test_concurrent_not_found_sweeps_exactly_once(
        self,
        engine: ChatEngine,
        memory_backend: InMemoryMedChatBackend,
        patient_context: ContextPayload,
    ) -> None:
        """Test several operations hitting the same ghost purge it a single time."""
        # Arrange
        ghost = await seed(memory_backend, "Fantasma", 1, patient_context)
        other = await seed(memory_backend, "Outra", 5, patient_context)
        await engine.start()
        await engine.load_conversation(ghost)
        swept: list[str] = []
        engine.sweep.add_listener(swept.append)
        for name in ("get_session", "get_messages", "get_documents", "rename_session"):
            setattr(memory_backend, name, yielding(getattr(memory_backend, name)))
        del memory_backend.sessions[ghost]

        # Act
        load_result, documents, renamed = await asyncio.gather(
            engine.load_conversation(ghost),
            engine.session_documents(ghost, patient_filter="patient-2"),
            engine.rename(ghost, "t"),
        )

        # Assert
        assert swept == [ghost]
        assert load_result.not_found
        assert documents == ()
        assert renamed is None
        assert engine.active_session_id is None
        assert [s.id for s in engine.sessions] == [other]
        assert engine.session_state(ghost) == SessionViewState.GHOST


class TestComposeSelection:
    """Test suite for selection changes and restoration."""

    @pytest.mark.asyncio
    async def test_primary_patient_change_archives_and_reloads(
        self,
        engine: ChatEngine,
        memory_backend: InMemoryMedChatBackend,
        patient_context: ContextPayload,
    ) -> None:
        """Test switching patient clears the active conversation; same patient keeps it."""
        # Arrange
        session_id = await seed(memory_backend, "Consulta", 1, patient_context)
        await engine.set_selection(ComposeSelection(patient_ids=("patient-1",)))
        await engine.start()
        await engine.load_conversation(session_id)

        # Act
        await engine.set_selection(ComposeSelection(patient_ids=("patient-1",), patient_document_uuids=("d1",)))
        kept = engine.active_session_id
        await engine.set_selection(ComposeSelection(patient_ids=("patient-2",)))

        # Assert
        assert kept == session_id
        assert engine.active_session_id is None
        assert engine.session_state(session_id) == SessionViewState.ARCHIVED_LOCAL
        assert [s.id for s in engine.sessions] == [session_id]

    @pytest.mark.asyncio
    async def test_restore_selection_does_not_archive(
        self,
        engine: ChatEngine,
        memory_backend: InMemoryMedChatBackend,
        patient_context: ContextPayload,
    ) -> None:
        """Test restoring a session's selection suppresses the patient-change reload."""
        # Arrange
        session_id = await seed(memory_backend, "Consulta", 1, patient_context)
        memory_backend.patients[session_id] = [
            SessionPatient(id="patient-2", full_name="B"),
            SessionPatient(id="patient-1", full_name="A"),
        ]
        memory_backend.messages[session_id] = [
            ChatMessage(
                id="m1",
                session_id=session_id,
                role=MessageRole.USER,
                content="oi",
                metadata=MessageMetadata(selected_patient_document_uuids=["d9"]),
            )
        ]
        await engine.set_selection(ComposeSelection(patient_ids=("patient-3",)))
        await engine.start()
        await engine.load_conversation(session_id)

        # Act
        selection = await engine.restore_selection()

        # Assert
        assert selection.patient_ids == ("patient-1", "patient-2")
        assert selection.patient_document_uuids == ("d9",)
        assert engine.selection == selection
        assert engine.active_session_id == session_id
        assert not engine.is_restoring_context

    @pytest.mark.asyncio
    async def test_current_context_falls_back_to_active_session(
        self,
        engine: ChatEngine,
        memory_backend: InMemoryMedChatBackend,
        patient_context: ContextPayload,
    ) -> None:
        # Arrange
        session_id = await seed(memory_backend, "Consulta", 1, patient_context)
        await engine.start()

        # Act
        before = engine.current_context()
        await engine.load_conversation(session_id)
        after = engine.current_context()

        # Assert
        assert before is None
        assert after == patient_context

    @pytest.mark.asyncio
    async def test_current_context_resolves_selection(self, engine: ChatEngine) -> None:
        # Arrange
        await engine.set_selection(ComposeSelection(patient_ids=("p1",), reference_document_uuids=("r1",)))

        # Act
        context = engine.current_context()

        # Assert
        assert context.mode == ChatMode.PATIENT_AND_REFERENCES
        assert context.patient_id == "p1"


def build_api_engine(handler) -> ChatEngine:
    """Engine over the REST client with traffic answered by `handler`."""
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://medchat.test")
    client = MedChatApiClient(base_url="http://medchat.test", http_client=http_client, retry_initial_wait=0)
    return ChatEngine(client, client, client, resources=(http_client,))


class TestMalformedBackendRecords:
    """Test suite for schema-violating backend records reaching public operations."""

    @pytest.mark.asyncio
    async def test_start_surfaces_invalid_session_list_as_error(self) -> None:
        # Arrange
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=[{"id": "s1", "title": None}])

        # Act
        async with build_api_engine(handler) as engine:
            sessions = await engine.start()

        # Assert
        assert sessions == ()
        assert isinstance(engine.error, ApiError)

    @pytest.mark.asyncio
    async def test_load_conversation_survives_invalid_history(self) -> None:
        """Test a history with a null message body keeps the cached transcript."""
        # Arrange
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/chat/sessions/s1":
                return httpx.Response(200, json={"id": "s1", "title": "Consulta"})
            if request.url.path == "/chat/sessions/s1/messages":
                return httpx.Response(200, json=[{"id": "m1", "role": "USER", "content": None}])
            return httpx.Response(200, json=[])

        # Act
        async with build_api_engine(handler) as engine:
            result = await engine.load_conversation("s1")

        # Assert
        assert result.ok
        assert result.messages == ()
        assert isinstance(engine.error, ApiError)
        assert engine.active_session_id == "s1"
