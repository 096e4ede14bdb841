"""
Dependency factories.

Builds the backend collaborator selected by MEDCHAT_ENGINE_BACKEND_MODE and
the chat engine wired to it.

Dependencies: medchat.configs, medchat.boundary, medchat.application
System role: Composition root for the engine
"""

import logging

from dotenv import load_dotenv

from medchat.application.chat_engine import ChatEngine
from medchat.boundary.http import MedChatApiClient
from medchat.boundary.memory_backend import InMemoryMedChatBackend
from medchat.configs import Settings, get_settings
from medchat.observability import configure_logging

load_dotenv()

logger = logging.getLogger(__name__)

Backend = MedChatApiClient | InMemoryMedChatBackend


def get_backend(settings: Settings | None = None) -> Backend:
    """
    Factory function to get the backend collaborator from configuration.

    Returns:
        MedChatApiClient or InMemoryMedChatBackend: Object implementing the
        session directory, message store and session membership contracts

    Raises:
        ValueError: If MEDCHAT_ENGINE_BACKEND_MODE is invalid
    """
    settings = settings or get_settings()
    backend_mode = settings.engine.backend_mode.lower()

    if backend_mode == "memory":
        logger.info(f"{__name__}:get_backend - Creating in-memory backend (local dev mode)")
        return InMemoryMedChatBackend()

    elif backend_mode == "http":
        logger.info(
            f"{__name__}:get_backend - Creating REST API client",
            extra={"base_url": settings.api.base_url},
        )
        return MedChatApiClient(
            base_url=settings.api.base_url,
            auth_token=settings.api.auth_token,
            clinic_id=settings.api.clinic_id,
            request_timeout=settings.api.request_timeout,
            max_retries=settings.api.max_retries,
            message_history_limit=settings.api.message_history_limit,
            session_list_limit=settings.api.session_list_limit,
        )

    else:
        raise ValueError(
            f"Invalid MEDCHAT_ENGINE_BACKEND_MODE: {backend_mode}. "
            f"Must be 'http' (REST API) or 'memory' (local dev)."
        )


def create_engine(
    settings: Settings | None = None,
    backend: Backend | None = None,
    configure_logs: bool = False,
) -> ChatEngine:
    """
    Build a chat engine.

    Args:
        settings: Application settings, defaults to the cached singleton
        backend: Collaborator to use instead of the configured one; the
            engine does not close an injected backend
        configure_logs: Install the stdout log handler at settings.log_level,
            for processes where the engine is the entry point

    Returns:
        ChatEngine: Engine owning the backend it created
    """
    settings = settings or get_settings()
    if configure_logs:
        configure_logging(settings.log_level)
    owned = backend is None
    backend = backend or get_backend(settings)

    resources = (backend,) if owned and isinstance(backend, MedChatApiClient) else ()
    return ChatEngine(
        directory=backend,
        store=backend,
        membership=backend,
        settings=settings.engine,
        create_session_timeout=settings.api.create_session_timeout,
        stream_open_timeout=settings.api.stream_open_timeout,
        resources=resources,
    )
