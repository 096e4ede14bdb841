"""
Session membership service.

Loads the patients and documents attached to a session and caches the
document list per (session, patient filter). Changing the filter of a
session evicts the entries cached for its other filters.

Dependencies: medchat.boundary.contracts
System role: Read-through cache over the session membership collaborator
"""

import logging

from medchat.boundary.contracts import SessionMembership
from medchat.models.session import SessionDocument, SessionPatient

logger = logging.getLogger(__name__)


class SessionMembershipService:
    """Membership reads with a per-session document cache."""

    def __init__(self, membership: SessionMembership) -> None:
        self._membership = membership
        self._patients: dict[str, tuple[SessionPatient, ...]] = {}
        self._documents: dict[tuple[str, str | None], tuple[SessionDocument, ...]] = {}

    async def patients(self, session_id: str, refresh: bool = False) -> tuple[SessionPatient, ...]:
        """
        Patients attached to a session.

        Raises:
            SessionNotFoundError: Session does not exist on the backend
            MedChatException: Backend call failed
        """
        if not refresh and session_id in self._patients:
            return self._patients[session_id]
        patients = tuple(await self._membership.get_patients(session_id))
        self._patients[session_id] = patients
        return patients

    async def documents(
        self,
        session_id: str,
        patient_filter: str | None = None,
        refresh: bool = False,
    ) -> tuple[SessionDocument, ...]:
        """
        Documents attached to a session, optionally for one patient.

        Args:
            session_id: Session to read
            patient_filter: Restrict to one patient's documents
            refresh: Bypass the cache

        Returns:
            tuple[SessionDocument, ...]: Patient and reference documents

        Raises:
            SessionNotFoundError: Session does not exist on the backend
            MedChatException: Backend call failed
        """
        key = (session_id, patient_filter)
        if not refresh and key in self._documents:
            logger.debug(
                f"{__name__}:documents - Cache hit",
                extra={"session_id": session_id, "patient_filter": patient_filter},
            )
            return self._documents[key]

        documents = tuple(await self._membership.get_documents(session_id, patient_filter))
        for cached_key in [k for k in self._documents if k[0] == session_id and k != key]:
            del self._documents[cached_key]
        self._documents[key] = documents
        return documents

    def cached_documents(self, session_id: str) -> tuple[SessionDocument, ...]:
        """Documents cached for a session under any filter, empty when none."""
        for (cached_session, _), documents in self._documents.items():
            if cached_session == session_id:
                return documents
        return ()

    def forget(self, session_id: str) -> None:
        """Drop every cache entry of a session."""
        self._patients.pop(session_id, None)
        for key in [k for k in self._documents if k[0] == session_id]:
            del self._documents[key]
