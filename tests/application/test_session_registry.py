"""
Test suite for SessionRegistry.

Covers ordering, token-guarded reloads, optimistic create/rename/touch edits
racing reloads, delete with auto-selection and error surfacing. Uses a
mocked SessionDirectory.

System role: Verification of session list ownership
"""

import asyncio
import inspect
from unittest.mock import AsyncMock, MagicMock

import pytest

from medchat.application.services import SessionRegistry
from medchat.application.state import ErrorState
from medchat.core.exceptions import ApiError, NetworkError, RequestTimeoutError, SessionNotFoundError
from medchat.models.context import ChatMode, ContextPayload


def _context() -> ContextPayload:
    return ContextPayload(mode=ChatMode.PATIENT_ONLY, patient_id="p1")


class TestRegistryLoad:
    """Test suite for SessionRegistry.load."""

    @pytest.mark.asyncio
    async def test_load_should_sort_by_recent_activity(
        self, registry: SessionRegistry, mock_directory: MagicMock, make_summary
    ) -> None:
        """Test loaded sessions are ordered most recent first."""
        # Arrange
        mock_directory.list_sessions.return_value = [
            make_summary("old", minutes_ago=30),
            make_summary("new", minutes_ago=1),
            make_summary("mid", minutes_ago=10),
        ]

        # Act
        sessions = await registry.load()

        # Assert
        assert [s.id for s in sessions] == ["new", "mid", "old"]
        mock_directory.list_sessions.assert_awaited_once_with(None)

    @pytest.mark.asyncio
    async def test_load_failure_should_keep_previous_list(
        self,
        registry: SessionRegistry,
        mock_directory: MagicMock,
        error_state: ErrorState,
        make_summary,
    ) -> None:
        """Test a failed reload keeps the list and surfaces the error."""
        # Arrange
        mock_directory.list_sessions.return_value = [make_summary("s1")]
        await registry.load()
        failure = NetworkError("offline")
        mock_directory.list_sessions.side_effect = failure

        # Act
        sessions = await registry.load()

        # Assert
        assert [s.id for s in sessions] == ["s1"]
        assert error_state.current is failure

    @pytest.mark.asyncio
    async def test_stale_response_should_be_discarded(
        self, registry: SessionRegistry, mock_directory: MagicMock, make_summary
    ) -> None:
        """Test an older load resolving last does not overwrite a newer one."""
        # Arrange
        release_first = asyncio.Event()

        async def list_sessions(patient_filter=None):
            if patient_filter == "slow":
                await release_first.wait()
                return [make_summary("stale")]
            return [make_summary("fresh")]

        mock_directory.list_sessions = AsyncMock(side_effect=list_sessions)

        # Act
        slow = asyncio.create_task(registry.load("slow"))
        await asyncio.sleep(0)
        await registry.load("fast")
        release_first.set()
        await slow

        # Assert
        assert [s.id for s in registry.sessions] == ["fresh"]

    @pytest.mark.asyncio
    async def test_create_racing_reload_is_not_clobbered(
        self, registry: SessionRegistry, mock_directory: MagicMock, make_summary
    ) -> None:
        """Test a session created while a reload is in flight survives the reload."""
        # Arrange
        release = asyncio.Event()

        async def list_sessions(patient_filter=None):
            await release.wait()
            return [make_summary("existing", minutes_ago=5)]

        mock_directory.list_sessions = AsyncMock(side_effect=list_sessions)
        mock_directory.create_session.return_value = "created"

        # Act
        reload_task = asyncio.create_task(registry.load())
        await asyncio.sleep(0)
        await registry.create("p1", "Nova conversa", _context())
        release.set()
        await reload_task

        # Assert
        assert [s.id for s in registry.sessions] == ["created", "existing"]


class TestRegistryCreate:
    """Test suite for SessionRegistry.create."""

    @pytest.mark.asyncio
    async def test_create_should_insert_at_head(
        self, registry: SessionRegistry, mock_directory: MagicMock, make_summary
    ) -> None:
        # Arrange
        mock_directory.list_sessions.return_value = [make_summary("s1")]
        await registry.load()
        mock_directory.create_session.return_value = "s2"

        # Act
        summary = await registry.create("p1", None, _context(), ["p1"])

        # Assert
        assert summary.id == "s2"
        assert summary.title.startswith("Consulta ")
        assert registry.sessions[0].id == "s2"
        mock_directory.create_session.assert_awaited_once_with("p1", None, _context(), ["p1"])

    @pytest.mark.asyncio
    async def test_create_should_time_out(self, mock_directory: MagicMock) -> None:
        """Test a hung create is bounded by the configured timeout."""
        # Arrange
        async def hang(*args, **kwargs):
            await asyncio.sleep(10)

        mock_directory.create_session = AsyncMock(side_effect=hang)
        registry = SessionRegistry(mock_directory, create_timeout=0.01)

        # Act & Assert
        with pytest.raises(RequestTimeoutError):
            await registry.create("p1", "x", _context())
        assert registry.sessions == ()


class TestRegistryRename:
    """Test suite for SessionRegistry.rename."""

    @pytest.mark.asyncio
    async def test_rename_should_keep_local_title_when_backend_fails(
        self, registry: SessionRegistry, mock_directory: MagicMock, make_summary
    ) -> None:
        """Test a failing backend rename still leaves the new title locally."""
        # Arrange
        mock_directory.list_sessions.return_value = [make_summary("s1", title="Antigo")]
        await registry.load()
        mock_directory.rename_session.side_effect = ApiError("Erro interno", status_code=500)

        # Act
        result = await registry.rename("s1", "  Novo título ")

        # Assert
        assert result is not None
        assert registry.get("s1").title == "Novo título"
        mock_directory.rename_session.assert_awaited_once_with("s1", "Novo título")

    @pytest.mark.asyncio
    async def test_rename_should_ignore_blank_titles(
        self, registry: SessionRegistry, mock_directory: MagicMock, make_summary
    ) -> None:
        # Arrange
        mock_directory.list_sessions.return_value = [make_summary("s1", title="Antigo")]
        await registry.load()

        # Act
        result = await registry.rename("s1", "   ")

        # Assert
        assert result is None
        assert registry.get("s1").title == "Antigo"
        mock_directory.rename_session.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rename_should_cap_long_titles(
        self, registry: SessionRegistry, mock_directory: MagicMock, make_summary
    ) -> None:
        # Arrange
        mock_directory.list_sessions.return_value = [make_summary("s1")]
        await registry.load()
        mock_directory.rename_session.side_effect = lambda session_id, title: make_summary(session_id, title=title)

        # Act
        await registry.rename("s1", "a" * 100)

        # Assert
        assert registry.get("s1").title == "a" * 57 + "..."

    @pytest.mark.asyncio
    async def test_rename_survives_reload_issued_before_it(
        self, registry: SessionRegistry, mock_directory: MagicMock, make_summary
    ) -> None:
        """Test a reload carrying the old title does not undo a later rename."""
        # Arrange
        mock_directory.list_sessions.return_value = [make_summary("s1", title="Antigo")]
        await registry.load()
        release = asyncio.Event()

        async def slow_list(patient_filter=None):
            await release.wait()
            return [make_summary("s1", title="Antigo")]

        mock_directory.list_sessions = AsyncMock(side_effect=slow_list)
        mock_directory.rename_session.side_effect = NetworkError("offline")

        # Act
        reload_task = asyncio.create_task(registry.load())
        await asyncio.sleep(0)
        await registry.rename("s1", "Novo título")
        release.set()
        await reload_task

        # Assert
        assert registry.get("s1").title == "Novo título"

    @pytest.mark.asyncio
    async def test_rename_not_found_invokes_handler(
        self, registry: SessionRegistry, mock_directory: MagicMock, make_summary
    ) -> None:
        # Arrange
        mock_directory.list_sessions.return_value = [make_summary("s1")]
        await registry.load()
        mock_directory.rename_session.side_effect = SessionNotFoundError("s1")
        handler = MagicMock()
        registry.not_found_handler = handler

        # Act
        result = await registry.rename("s1", "Novo")

        # Assert
        assert result is None
        handler.assert_called_once_with("s1")


class TestRegistryDelete:
    """Test suite for SessionRegistry.delete."""

    @pytest.mark.asyncio
    async def test_delete_active_should_select_first_of_refreshed_list(
        self, registry: SessionRegistry, mock_directory: MagicMock, make_summary
    ) -> None:
        """Test deleting the active session auto-selects the new head."""
        # Arrange
        mock_directory.list_sessions.return_value = [
            make_summary("s1", minutes_ago=1),
            make_summary("s2", minutes_ago=2),
        ]
        await registry.load()
        registry.activate("s1")
        mock_directory.list_sessions.return_value = [make_summary("s2", minutes_ago=2)]

        # Act
        result = await registry.delete("s1")

        # Assert
        assert result.deleted
        assert result.next_active_session_id == "s2"
        assert registry.active_session_id == "s2"
        assert mock_directory.list_sessions.await_count == 2

    @pytest.mark.asyncio
    async def test_delete_last_session_clears_active(
        self, registry: SessionRegistry, mock_directory: MagicMock, make_summary
    ) -> None:
        # Arrange
        mock_directory.list_sessions.return_value = [make_summary("s1")]
        await registry.load()
        registry.activate("s1")
        mock_directory.list_sessions.return_value = []

        # Act
        result = await registry.delete("s1")

        # Assert
        assert result.next_active_session_id is None
        assert registry.active_session_id is None
        assert registry.sessions == ()

    @pytest.mark.asyncio
    async def test_delete_inactive_keeps_active(
        self, registry: SessionRegistry, mock_directory: MagicMock, make_summary
    ) -> None:
        # Arrange
        mock_directory.list_sessions.return_value = [make_summary("s1"), make_summary("s2", minutes_ago=3)]
        await registry.load()
        registry.activate("s1")
        mock_directory.list_sessions.return_value = [make_summary("s1")]

        # Act
        await registry.delete("s2")

        # Assert
        assert registry.active_session_id == "s1"

    @pytest.mark.asyncio
    async def test_delete_failure_sets_error_and_keeps_entry(
        self,
        registry: SessionRegistry,
        mock_directory: MagicMock,
        error_state: ErrorState,
        make_summary,
    ) -> None:
        # Arrange
        mock_directory.list_sessions.return_value = [make_summary("s1")]
        await registry.load()
        failure = ApiError("Erro interno", status_code=500)
        mock_directory.delete_session.side_effect = failure

        # Act
        result = await registry.delete("s1")

        # Assert
        assert not result.deleted
        assert result.error is failure
        assert error_state.current is failure
        assert registry.contains("s1")


class TestRegistryEdits:
    """Test suite for element-level edits."""

    @pytest.mark.asyncio
    async def test_touch_should_move_session_to_head(
        self, registry: SessionRegistry, mock_directory: MagicMock, make_summary
    ) -> None:
        # Arrange
        mock_directory.list_sessions.return_value = [
            make_summary("s1", minutes_ago=1),
            make_summary("s2", minutes_ago=5),
        ]
        await registry.load()

        # Act
        registry.touch("s2")

        # Assert
        assert [s.id for s in registry.sessions] == ["s2", "s1"]

    @pytest.mark.asyncio
    async def test_remove_clears_active_without_selecting(
        self, registry: SessionRegistry, mock_directory: MagicMock, make_summary
    ) -> None:
        # Arrange
        mock_directory.list_sessions.return_value = [make_summary("s1"), make_summary("s2", minutes_ago=1)]
        await registry.load()
        registry.activate("s1")

        # Act
        removed = registry.remove("s1")

        # Assert
        assert removed
        assert registry.active_session_id is None
        assert [s.id for s in registry.sessions] == ["s2"]

    @pytest.mark.asyncio
    async def test_snapshot_returns_ordered_list(
        self, registry: SessionRegistry, mock_directory: MagicMock, make_summary
    ) -> None:
        """Test snapshot mirrors the ordered sessions without shadowing list annotations."""
        # Arrange
        mock_directory.list_sessions.return_value = [make_summary("s1", minutes_ago=5), make_summary("s2")]
        await registry.load()

        # Act
        snapshot = registry.snapshot()
        patient_ids = inspect.signature(SessionRegistry.create).parameters["patient_ids"]

        # Assert
        assert [s.id for s in snapshot] == ["s2", "s1"]
        assert snapshot == registry.sessions
        assert patient_ids.annotation == (list[str] | None)
        assert "list" not in vars(SessionRegistry)
