"""
Shared test fixtures and configuration for entire test suite.

Provides: In-memory backend, collaborator mocks, engine and service fixtures
Dependencies: pytest, pytest-asyncio
System role: Test infrastructure and fixture management
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from medchat.application.chat_engine import ChatEngine
from medchat.application.services import (
    GhostSessionSweep,
    SessionMembershipService,
    SessionRegistry,
    TranscriptCache,
)
from medchat.application.state import ErrorState, SessionStateTracker
from medchat.boundary.contracts import SessionDirectory
from medchat.boundary.memory_backend import InMemoryMedChatBackend
from medchat.configs.engine import EngineSettings
from medchat.models.context import ChatMode, ComposeSelection, ContextPayload, ReferenceScope
from medchat.models.session import ChatSessionSummary


def make_summary(session_id: str, minutes_ago: int = 0, title: str | None = None, **fields) -> ChatSessionSummary:
    """Build a session summary whose activity is `minutes_ago` in the past."""
    return ChatSessionSummary(
        id=session_id,
        title=title or f"Session {session_id}",
        last_activity_at=datetime.now(timezone.utc) - timedelta(minutes=minutes_ago),
        **fields,
    )


@pytest.fixture(name="make_summary")
def make_summary_fixture():
    """Provide the session summary factory."""
    return make_summary


@pytest.fixture
def patient_context() -> ContextPayload:
    """Provide a patient-only context payload."""
    return ContextPayload(mode=ChatMode.PATIENT_ONLY, patient_id="patient-1")


@pytest.fixture
def reference_context() -> ContextPayload:
    """Provide a references-only context payload."""
    return ContextPayload(
        mode=ChatMode.REFERENCES_ONLY,
        reference_scope=ReferenceScope.GLOBAL_DOCTOR,
    )


@pytest.fixture
def patient_selection() -> ComposeSelection:
    """Provide a compose selection with one patient and one document."""
    return ComposeSelection(patient_ids=("patient-1",), patient_document_uuids=("doc-1",))


@pytest.fixture
def error_state() -> ErrorState:
    return ErrorState()


@pytest.fixture
def state_tracker() -> SessionStateTracker:
    return SessionStateTracker()


@pytest.fixture
def mock_directory() -> MagicMock:
    """
    Create mock SessionDirectory for testing.

    Returns:
        MagicMock: Mocked directory with async methods
    """
    directory = MagicMock(spec=SessionDirectory)
    directory.list_sessions = AsyncMock(return_value=[])
    directory.create_session = AsyncMock(return_value="session-new")
    directory.get_session = AsyncMock()
    directory.rename_session = AsyncMock()
    directory.delete_session = AsyncMock(return_value=None)
    return directory


@pytest.fixture
def registry(mock_directory: MagicMock, error_state: ErrorState) -> SessionRegistry:
    """Provide SessionRegistry over the mocked directory."""
    return SessionRegistry(mock_directory, errors=error_state)


@pytest.fixture
def memory_backend() -> InMemoryMedChatBackend:
    """Provide an empty in-memory backend."""
    return InMemoryMedChatBackend()


@pytest.fixture
def transcripts() -> TranscriptCache:
    return TranscriptCache()


@pytest.fixture
def sweep_parts(memory_backend: InMemoryMedChatBackend, error_state: ErrorState, state_tracker: SessionStateTracker):
    """Provide registry, transcripts, membership and sweep wired together over the memory backend."""
    registry = SessionRegistry(memory_backend, errors=error_state)
    transcripts = TranscriptCache()
    membership = SessionMembershipService(memory_backend)
    sweep = GhostSessionSweep(registry, transcripts, membership=membership, states=state_tracker)
    registry.not_found_handler = sweep.sweep
    return registry, transcripts, membership, sweep


@pytest_asyncio.fixture
async def engine(memory_backend: InMemoryMedChatBackend):
    """
    Provide ChatEngine over the in-memory backend.

    Yields:
        ChatEngine: Engine closed after the test
    """
    chat_engine = ChatEngine(
        memory_backend,
        memory_backend,
        memory_backend,
        settings=EngineSettings(backend_mode="memory"),
        create_session_timeout=5.0,
        stream_open_timeout=5.0,
    )
    yield chat_engine
    await chat_engine.aclose()
