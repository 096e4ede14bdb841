"""
Context domain models.

Describes which document pools an exchange may draw on: the resolved
context payload sent with every message, the compose-time selection it is
computed from, and the highlight derived from what retrieval actually used.

Dependencies: pydantic
System role: Context contracts shared by resolver, registry and pipeline
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ChatMode(str, Enum):
    """Document pools eligible for retrieval in an exchange."""

    PATIENT_ONLY = "PATIENT_ONLY"
    REFERENCES_ONLY = "REFERENCES_ONLY"
    PATIENT_AND_REFERENCES = "PATIENT_AND_REFERENCES"


class ReferenceScope(str, Enum):
    """Reference document pool qualifier."""

    GLOBAL_DOCTOR = "GLOBAL_DOCTOR"
    CLINIC = "CLINIC"
    PATIENT = "PATIENT"


REFERENCE_MODES = frozenset({ChatMode.REFERENCES_ONLY, ChatMode.PATIENT_AND_REFERENCES})


class ContextPayload(BaseModel):
    """
    Effective context travelling with session creation and every message.

    Attributes:
        mode: Concrete context mode, never empty
        patient_id: Primary patient when the mode uses patient documents
        patient_document_uuids: Optional subset of patient documents
        reference_document_uuids: Optional subset of reference documents
        reference_scope: Reference pool, only set for reference-using modes
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    mode: ChatMode
    patient_id: str | None = None
    patient_document_uuids: list[str] | None = None
    reference_document_uuids: list[str] | None = None
    reference_scope: ReferenceScope | None = None

    @property
    def uses_references(self) -> bool:
        return self.mode in REFERENCE_MODES

    def to_api(self) -> dict:
        """Convert to the camelCase wire shape, omitting unset fields."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class MessageMetadata(BaseModel):
    """Documents the user had selected when a message was sent."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    selected_patient_document_uuids: list[str] = Field(default_factory=list)
    selected_reference_document_uuids: list[str] = Field(default_factory=list)

    def to_api(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class ComposeSelection(BaseModel):
    """
    Current compose-time selections.

    Attributes:
        patient_ids: Selected patients, first entry is the primary one
        patient_document_uuids: Selected patient-scoped documents
        reference_document_uuids: Selected reference-scoped documents
    """

    model_config = ConfigDict(frozen=True)

    patient_ids: tuple[str, ...] = ()
    patient_document_uuids: tuple[str, ...] = ()
    reference_document_uuids: tuple[str, ...] = ()

    @property
    def primary_patient_id(self) -> str | None:
        return self.patient_ids[0] if self.patient_ids else None


class ContextHighlight(BaseModel):
    """
    Patients and documents the backend retrieval actually used in a session.

    Derived from the session's retrieval summary, never from the current
    selection.
    """

    model_config = ConfigDict(frozen=True)

    used_patient_ids: frozenset[str] = frozenset()
    used_patient_document_uuids: frozenset[str] = frozenset()
    used_reference_document_uuids: frozenset[str] = frozenset()
