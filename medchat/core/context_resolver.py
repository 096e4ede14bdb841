"""
Context resolution.

Computes the effective context payload from the current compose-time
selections. Pure and deterministic: safe to call as often as needed.

Dependencies: medchat.models.context
System role: Context resolution for session creation and message sends
"""

from collections.abc import Sequence

from medchat.models.context import (
    REFERENCE_MODES,
    ChatMode,
    ComposeSelection,
    ContextPayload,
    MessageMetadata,
    ReferenceScope,
)


def resolve_context(
    patient_ids: Sequence[str],
    patient_document_uuids: Sequence[str] = (),
    reference_document_uuids: Sequence[str] = (),
    reference_scope: ReferenceScope = ReferenceScope.GLOBAL_DOCTOR,
) -> ContextPayload:
    """
    Resolve the context payload for the given selections.

    Rules:
    1. Primary patient and reference documents -> PATIENT_AND_REFERENCES
    2. Primary patient only -> PATIENT_ONLY
    3. Anything else -> REFERENCES_ONLY

    Args:
        patient_ids: Selected patients, first entry is the primary one
        patient_document_uuids: Selected patient-scoped documents
        reference_document_uuids: Selected reference-scoped documents
        reference_scope: Reference pool used by reference modes

    Returns:
        ContextPayload: Payload with a concrete mode; reference_scope is only
        set for modes that use references
    """
    primary_patient_id = patient_ids[0] if patient_ids else None
    has_reference_docs = len(reference_document_uuids) > 0

    if primary_patient_id and has_reference_docs:
        mode = ChatMode.PATIENT_AND_REFERENCES
    elif primary_patient_id:
        mode = ChatMode.PATIENT_ONLY
    else:
        mode = ChatMode.REFERENCES_ONLY

    return ContextPayload(
        mode=mode,
        patient_id=primary_patient_id or None,
        patient_document_uuids=list(patient_document_uuids) or None,
        reference_document_uuids=list(reference_document_uuids) or None,
        reference_scope=reference_scope if mode in REFERENCE_MODES else None,
    )


def resolve_selection(
    selection: ComposeSelection,
    reference_scope: ReferenceScope = ReferenceScope.GLOBAL_DOCTOR,
) -> ContextPayload:
    """Resolve a ComposeSelection snapshot."""
    return resolve_context(
        selection.patient_ids,
        selection.patient_document_uuids,
        selection.reference_document_uuids,
        reference_scope=reference_scope,
    )


def build_message_metadata(selection: ComposeSelection) -> MessageMetadata:
    """Snapshot the selected documents to store alongside a user message."""
    return MessageMetadata(
        selected_patient_document_uuids=list(selection.patient_document_uuids),
        selected_reference_document_uuids=list(selection.reference_document_uuids),
    )


def selection_from_session(
    default_context: ContextPayload | None,
    patient_ids: Sequence[str] = (),
    last_user_metadata: MessageMetadata | None = None,
) -> ComposeSelection:
    """
    Rebuild the compose selection of a reopened session.

    The most recent user message metadata wins over the session's default
    context, since it reflects what was selected last.

    Args:
        default_context: Context saved when the session was created
        patient_ids: Patients attached to the session
        last_user_metadata: Metadata of the most recent user message

    Returns:
        ComposeSelection: Selection to restore in the compose view
    """
    patients = list(patient_ids)
    if default_context and default_context.patient_id:
        if default_context.patient_id in patients:
            patients.remove(default_context.patient_id)
        patients.insert(0, default_context.patient_id)

    if last_user_metadata is not None:
        patient_docs = last_user_metadata.selected_patient_document_uuids
        reference_docs = last_user_metadata.selected_reference_document_uuids
    elif default_context is not None:
        patient_docs = default_context.patient_document_uuids or []
        reference_docs = default_context.reference_document_uuids or []
    else:
        patient_docs, reference_docs = [], []

    return ComposeSelection(
        patient_ids=tuple(patients),
        patient_document_uuids=tuple(patient_docs),
        reference_document_uuids=tuple(reference_docs),
    )
