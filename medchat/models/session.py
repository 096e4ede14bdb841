"""
Session domain models.

Session summaries mirrored from the backend directory, plus the session
membership records (patients and documents) the backend reports.

Dependencies: pydantic
System role: Session contracts for registry, loader and boundary clients
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from medchat.models.context import ChatMode, ContextPayload


class SessionStatus(str, Enum):
    """Backend lifecycle status of a session."""

    OPEN = "OPEN"
    CLOSED = "CLOSED"
    ARCHIVED = "ARCHIVED"


class RetrievalDoc(BaseModel):
    """A document retrieval consulted while answering in a session."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    document_id: str
    patient_id: str | None = None
    message_count: int = 0


class RetrievalSummary(BaseModel):
    """Documents actually used by retrieval, split by pool."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    patient_documents: list[RetrievalDoc] = Field(default_factory=list)
    reference_documents: list[RetrievalDoc] = Field(default_factory=list)


class ChatSessionSummary(BaseModel):
    """
    Client-side mirror of one backend session.

    Accepts both the current backend shape and the legacy one
    (``c_status`` / ``created_at``).
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    title: str = ""
    patient_id: str | None = None
    patient_name: str | None = None
    status: SessionStatus = SessionStatus.OPEN
    default_mode: ChatMode | None = None
    default_reference_scope: str = "GLOBAL_DOCTOR"
    last_activity_at: datetime | None = None
    default_context: ContextPayload | None = None
    retrieval_summary: RetrievalSummary | None = None
    summary: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _normalize_legacy(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "status" not in data and "c_status" in data:
            legacy = data.pop("c_status")
            data["status"] = legacy if legacy in ("CLOSED", "ARCHIVED") else "OPEN"
        if not data.get("lastActivityAt") and not data.get("last_activity_at"):
            data["lastActivityAt"] = data.get("created_at") or data.get("createdAt")
        if data.get("defaultReferenceScope") is None and data.get("default_reference_scope") is None:
            data.pop("defaultReferenceScope", None)
            data.pop("default_reference_scope", None)
        return data

    @field_validator("last_activity_at")
    @classmethod
    def _ensure_aware(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def activity_sort_key(self) -> datetime:
        return self.last_activity_at or datetime.min.replace(tzinfo=timezone.utc)


class SessionPatient(BaseModel):
    """Patient attached to a session."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    full_name: str = ""


class SessionDocument(BaseModel):
    """
    Document cited in a session.

    Attributes:
        id: Document UUID
        title: Display title
        patient_id: Owning patient, None for reference-scoped documents
        d_type: Document type
        source: Optional origin label
        d_status: Processing status
        created_at: Creation timestamp as reported by the backend
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    title: str = ""
    patient_id: str | None = None
    d_type: str = "KNOWLEDGE_PDF"
    source: str | None = None
    d_status: str = "READY"
    created_at: str | None = None

    @property
    def is_reference(self) -> bool:
        return self.patient_id is None
