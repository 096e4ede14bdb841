"""
Transcript and session derivation rules.

Pure helpers shared by the loader, the pipeline and the registry:
context highlight derivation, last-user-metadata extraction, title
normalization and default titles.

Dependencies: medchat.models
System role: Domain rules with no I/O
"""

from collections.abc import Iterable
from datetime import datetime

from medchat.models.context import ContextHighlight, MessageMetadata
from medchat.models.message import ChatMessage, MessageRole
from medchat.models.session import RetrievalSummary


def derive_context_highlight(retrieval_summary: RetrievalSummary | None) -> ContextHighlight:
    """
    Derive which patients and documents retrieval actually used.

    Args:
        retrieval_summary: Backend retrieval summary, may be absent before the
            first exchange

    Returns:
        ContextHighlight: Deduplicated ids; empty when no summary exists
    """
    if retrieval_summary is None:
        return ContextHighlight()

    return ContextHighlight(
        used_patient_ids=frozenset(
            doc.patient_id for doc in retrieval_summary.patient_documents if doc.patient_id
        ),
        used_patient_document_uuids=frozenset(
            doc.document_id for doc in retrieval_summary.patient_documents
        ),
        used_reference_document_uuids=frozenset(
            doc.document_id for doc in retrieval_summary.reference_documents
        ),
    )


def last_user_metadata(messages: Iterable[ChatMessage]) -> MessageMetadata | None:
    """Return metadata of the most recent user message that carries any."""
    for message in reversed(list(messages)):
        if message.role == MessageRole.USER and message.metadata is not None:
            return message.metadata
    return None


def normalize_title(title: str, max_length: int = 60) -> str | None:
    """
    Trim a user-supplied title and cap its length.

    Returns:
        str | None: Normalized title, or None when the title is blank
    """
    trimmed = title.strip()
    if not trimmed:
        return None
    if len(trimmed) > max_length:
        return f"{trimmed[:max_length - 3]}..."
    return trimmed


def default_session_title(now: datetime) -> str:
    """Title for explicitly created sessions, e.g. 'Consulta 18/10/2026'."""
    return f"Consulta {now.strftime('%d/%m/%Y')}"
