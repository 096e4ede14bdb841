"""
Session registry.

Authoritative client-side mirror of the backend session list. The ordered
summary list is only mutated through the operations below:

- load(): token-guarded wholesale replace with backend truth
- create(): backend create, then optimistic insert at the head
- rename(): optimistic, best-effort title change
- delete(): backend delete, full reload, auto-select of the next session
- touch() / apply_title() / upsert(): element-level map-and-replace edits

Element-level edits are stamped with a mutation sequence number. A reload
re-applies edits made after it was issued, so an optimistic edit or insert
racing a reload is not silently dropped.

Dependencies: medchat.boundary.contracts, medchat.application.state
System role: Session list ownership and lifecycle orchestration
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from medchat.application.state import ErrorState
from medchat.boundary.contracts import SessionDirectory
from medchat.core.exceptions import MedChatException, RequestTimeoutError, SessionNotFoundError
from medchat.core.transcript_rules import default_session_title, normalize_title
from medchat.models.context import ContextPayload
from medchat.models.results import DeleteResult
from medchat.models.session import ChatSessionSummary, SessionStatus
from medchat.observability.log_utils import log_exception_with_context

logger = logging.getLogger(__name__)

NotFoundHandler = Callable[[str], Any]


class SessionRegistry:
    """
    Ordered session summaries plus the active session id.

    The list is kept sorted by last activity, most recent first.
    """

    def __init__(
        self,
        directory: SessionDirectory,
        errors: ErrorState | None = None,
        create_timeout: float | None = None,
        title_max_length: int = 60,
    ) -> None:
        """
        Initialize session registry.

        Args:
            directory: Backend session directory
            errors: Shared error state for surfaced failures
            create_timeout: Seconds allowed for session creation, None for unbounded
            title_max_length: Maximum length of renamed titles
        """
        self._directory = directory
        self._errors = errors or ErrorState()
        self._create_timeout = create_timeout
        self._title_max_length = title_max_length

        self._sessions: tuple[ChatSessionSummary, ...] = ()
        self._active_session_id: str | None = None
        self._last_patient_filter: str | None = None

        self._load_token = 0
        self._mutation_seq = 0
        self._field_edits: dict[str, dict[str, tuple[int, Any]]] = {}
        self._inserts: dict[str, tuple[int, ChatSessionSummary]] = {}

        self.not_found_handler: NotFoundHandler | None = None

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def sessions(self) -> tuple[ChatSessionSummary, ...]:
        return self._sessions

    def snapshot(self) -> tuple[ChatSessionSummary, ...]:
        """Snapshot of the ordered session list."""
        return self._sessions

    def get(self, session_id: str) -> ChatSessionSummary | None:
        for session in self._sessions:
            if session.id == session_id:
                return session
        return None

    def contains(self, session_id: str) -> bool:
        return self.get(session_id) is not None

    @property
    def active_session_id(self) -> str | None:
        return self._active_session_id

    def activate(self, session_id: str | None) -> None:
        self._active_session_id = session_id

    @property
    def mutation_seq(self) -> int:
        return self._mutation_seq

    # ------------------------------------------------------------------
    # Backend operations
    # ------------------------------------------------------------------

    async def load(self, patient_filter: str | None = None) -> tuple[ChatSessionSummary, ...]:
        """
        Replace the local list with the backend's.

        Overlapping calls are resolved by request token: only the most
        recently issued load may apply its response.

        Args:
            patient_filter: Restrict to one patient; None loads every session

        Returns:
            tuple[ChatSessionSummary, ...]: The list after the call. On failure
            the previous list is kept and the error state is set.
        """
        self._load_token += 1
        token = self._load_token
        issued_seq = self._mutation_seq

        try:
            fetched = await self._directory.list_sessions(patient_filter)
        except MedChatException as e:
            if token == self._load_token:
                self._errors.set(e)
            log_exception_with_context(
                logger,
                f"{__name__}:load - Session list load failed",
                e,
                patient_filter=patient_filter,
            )
            return self._sessions

        if token != self._load_token:
            logger.debug(
                f"{__name__}:load - Discarding stale response",
                extra={"token": token, "latest_token": self._load_token},
            )
            return self._sessions

        self._last_patient_filter = patient_filter
        merged = {session.id: self._overlay(session, issued_seq) for session in fetched}
        for session_id, (seq, summary) in self._inserts.items():
            if seq > issued_seq and session_id not in merged:
                merged[session_id] = self._overlay(summary, issued_seq)
        self._prune_edits(issued_seq)

        self._sessions = self._sorted(merged.values())
        self._errors.dismiss()

        logger.info(
            f"{__name__}:load - Loaded {len(self._sessions)} sessions",
            extra={"patient_filter": patient_filter, "token": token},
        )
        return self._sessions

    async def create(
        self,
        patient_id: str | None,
        title: str | None,
        context: ContextPayload,
        patient_ids: list[str] | None = None,
    ) -> ChatSessionSummary:
        """
        Create a session and insert it at the head of the list.

        Args:
            patient_id: Primary patient, None for reference-only sessions
            title: Session title, defaults to 'Consulta DD/MM/YYYY'
            context: Default context of the session
            patient_ids: All selected patients

        Returns:
            ChatSessionSummary: Optimistically inserted summary

        Raises:
            RequestTimeoutError: Backend did not answer within create_timeout
            MedChatException: Backend rejected the creation
        """
        now = datetime.now(timezone.utc)
        try:
            session_id = await asyncio.wait_for(
                self._directory.create_session(patient_id, title, context, patient_ids),
                timeout=self._create_timeout,
            )
        except asyncio.TimeoutError as e:
            raise RequestTimeoutError("create_session", self._create_timeout or 0.0) from e

        summary = ChatSessionSummary(
            id=session_id,
            title=title or default_session_title(now),
            patient_id=patient_id,
            status=SessionStatus.OPEN,
            default_mode=context.mode,
            default_reference_scope=(context.reference_scope.value if context.reference_scope else "GLOBAL_DOCTOR"),
            last_activity_at=now,
            default_context=context,
        )

        self._mutation_seq += 1
        self._inserts[session_id] = (self._mutation_seq, summary)
        self._sessions = (summary,) + tuple(s for s in self._sessions if s.id != session_id)

        logger.info(
            f"{__name__}:create - Session created",
            extra={"session_id": session_id, "mode": context.mode.value},
        )
        return summary

    async def rename(self, session_id: str, new_title: str) -> ChatSessionSummary | None:
        """
        Rename a session, best effort.

        The new title is applied locally first and kept even when the backend
        call fails. Blank titles are ignored.

        Returns:
            ChatSessionSummary | None: Local summary after the rename, None when
            the title was blank or the session is unknown
        """
        title = normalize_title(new_title, self._title_max_length)
        if title is None or not self.contains(session_id):
            return None

        self._edit(session_id, title=title)

        try:
            updated = await self._directory.rename_session(session_id, title)
        except SessionNotFoundError:
            self._report_not_found(session_id)
            return None
        except MedChatException as e:
            log_exception_with_context(
                logger,
                f"{__name__}:rename - Backend rename failed, keeping local title",
                e,
                session_id=session_id,
            )
            return self.get(session_id)

        if updated.title and updated.title != title:
            self._edit(session_id, title=updated.title)
        return self.get(session_id)

    async def delete(self, session_id: str) -> DeleteResult:
        """
        Delete a session and reload the list.

        When the deleted session was active, the first session of the
        refreshed list becomes active, or the active state is cleared when the
        list is empty.
        """
        was_active = self._active_session_id == session_id

        try:
            await self._directory.delete_session(session_id)
        except SessionNotFoundError:
            self._report_not_found(session_id)
            return DeleteResult(session_id=session_id, deleted=True)
        except MedChatException as e:
            self._errors.set(e)
            log_exception_with_context(
                logger, f"{__name__}:delete - Delete failed", e, session_id=session_id
            )
            return DeleteResult(session_id=session_id, deleted=False, error=e)

        self.remove(session_id)
        await self.load(self._last_patient_filter)
        # The backend may still list the session right after acknowledging the delete
        self._sessions = tuple(s for s in self._sessions if s.id != session_id)

        next_active: str | None = None
        if was_active:
            next_active = self._sessions[0].id if self._sessions else None
            self._active_session_id = next_active

        logger.info(
            f"{__name__}:delete - Session deleted",
            extra={"session_id": session_id, "next_active": next_active},
        )
        return DeleteResult(session_id=session_id, deleted=True, next_active_session_id=next_active)

    # ------------------------------------------------------------------
    # Element-level edits
    # ------------------------------------------------------------------

    def touch(self, session_id: str, when: datetime | None = None) -> None:
        """Optimistically bump last activity and re-sort."""
        if self.contains(session_id):
            self._edit(session_id, last_activity_at=when or datetime.now(timezone.utc))

    def apply_title(self, session_id: str, title: str) -> None:
        """Apply a backend-generated title."""
        if self.contains(session_id):
            self._edit(session_id, title=title)

    def upsert(self, summary: ChatSessionSummary, issued_seq: int | None = None) -> ChatSessionSummary:
        """
        Refresh one entry from a canonical backend summary.

        Args:
            summary: Summary fetched from the backend
            issued_seq: mutation_seq read before the fetch was issued; edits made
                after it are re-applied over the fetched record

        Returns:
            ChatSessionSummary: Entry as stored
        """
        merged = self._overlay(summary, self._mutation_seq if issued_seq is None else issued_seq)
        self._sessions = self._sorted(
            [s for s in self._sessions if s.id != summary.id] + [merged]
        )
        return merged

    def rekey(self, old_session_id: str, new_session_id: str) -> None:
        """Re-key an entry when the backend reports a different canonical id."""
        if old_session_id == new_session_id or not self.contains(old_session_id):
            return
        self._sessions = tuple(
            s.model_copy(update={"id": new_session_id}) if s.id == old_session_id else s
            for s in self._sessions
            if s.id != new_session_id
        )
        if old_session_id in self._field_edits:
            self._field_edits[new_session_id] = self._field_edits.pop(old_session_id)
        if old_session_id in self._inserts:
            seq, summary = self._inserts.pop(old_session_id)
            self._inserts[new_session_id] = (seq, summary.model_copy(update={"id": new_session_id}))
        if self._active_session_id == old_session_id:
            self._active_session_id = new_session_id

    def remove(self, session_id: str) -> bool:
        """
        Remove a session without any backend call.

        Clears the active session if it was the removed one, without selecting
        a replacement.

        Returns:
            bool: True when the session was present
        """
        present = self.contains(session_id)
        self._sessions = tuple(s for s in self._sessions if s.id != session_id)
        self._field_edits.pop(session_id, None)
        self._inserts.pop(session_id, None)
        if self._active_session_id == session_id:
            self._active_session_id = None
        return present

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _edit(self, session_id: str, **changes: Any) -> None:
        self._mutation_seq += 1
        edits = self._field_edits.setdefault(session_id, {})
        for field_name, value in changes.items():
            edits[field_name] = (self._mutation_seq, value)
        self._sessions = self._sorted(
            s.model_copy(update=changes) if s.id == session_id else s
            for s in self._sessions
        )

    def _overlay(self, summary: ChatSessionSummary, issued_seq: int) -> ChatSessionSummary:
        edits = self._field_edits.get(summary.id)
        if not edits:
            return summary
        newer = {name: value for name, (seq, value) in edits.items() if seq > issued_seq}
        return summary.model_copy(update=newer) if newer else summary

    def _prune_edits(self, issued_seq: int) -> None:
        for session_id in list(self._field_edits):
            remaining = {
                name: entry for name, entry in self._field_edits[session_id].items()
                if entry[0] > issued_seq
            }
            if remaining:
                self._field_edits[session_id] = remaining
            else:
                del self._field_edits[session_id]
        self._inserts = {
            session_id: entry for session_id, entry in self._inserts.items() if entry[0] > issued_seq
        }

    def _report_not_found(self, session_id: str) -> None:
        if self.not_found_handler is not None:
            self.not_found_handler(session_id)
        else:
            self.remove(session_id)

    @staticmethod
    def _sorted(sessions) -> tuple[ChatSessionSummary, ...]:
        return tuple(sorted(sessions, key=lambda s: s.activity_sort_key, reverse=True))
