"""
Engine behaviour settings.

Dependencies: pydantic_settings
System role: Orchestration engine configuration
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from medchat.models.context import ReferenceScope


class EngineSettings(BaseSettings):
    """Session/message orchestration configuration."""

    model_config = SettingsConfigDict(
        env_prefix="MEDCHAT_ENGINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    backend_mode: str = Field(
        default="http",
        description="Collaborator implementation: 'http' (REST API) or 'memory' (local dev)",
    )
    new_session_title: str = Field(
        default="Nova conversa",
        description="Placeholder title for sessions created by a first send",
    )
    default_reference_scope: ReferenceScope = Field(
        default=ReferenceScope.GLOBAL_DOCTOR,
        description="Reference pool used by reference modes",
    )
    title_max_length: int = Field(
        default=60,
        ge=4,
        description="Maximum session title length after rename normalization",
    )
    error_message_template: str = Field(
        default="Houve um erro ao gerar a resposta: {error}",
        description="Content of the synthetic assistant message shown after a stream failure",
    )
