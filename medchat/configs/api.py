"""
MedChat backend API settings.

Connection, authentication and timeout settings for the HTTP collaborator.

Dependencies: pydantic_settings
System role: Backend API configuration
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ApiSettings(BaseSettings):
    """HTTP backend configuration."""

    model_config = SettingsConfigDict(
        env_prefix="MEDCHAT_API_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    base_url: str = Field(
        default="http://localhost:8000",
        description="Base URL of the MedChat REST API",
    )
    auth_token: str | None = Field(
        default=None,
        description="Bearer token sent with every request",
    )
    clinic_id: str | None = Field(
        default=None,
        description="Clinic identifier sent when creating sessions",
    )
    request_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Timeout in seconds for ordinary requests",
    )
    create_session_timeout: float = Field(
        default=15.0,
        gt=0,
        description="Timeout in seconds for session creation",
    )
    stream_open_timeout: float = Field(
        default=60.0,
        gt=0,
        description="Timeout in seconds until the first stream event arrives",
    )
    max_retries: int = Field(
        default=3,
        ge=1,
        description="Attempts for idempotent reads on transport errors",
    )
    message_history_limit: int = Field(
        default=200,
        ge=1,
        description="Messages fetched when loading a conversation",
    )
    session_list_limit: int = Field(
        default=50,
        ge=1,
        description="Sessions fetched per list call",
    )
