"""
Unified application settings.

Aggregates all configuration modules into a single Settings class.

Dependencies: All config modules
System role: Central configuration aggregator for the engine
"""

from functools import lru_cache

from pydantic import Field

from medchat.configs.api import ApiSettings
from medchat.configs.base import BaseSettings
from medchat.configs.engine import EngineSettings


class Settings(BaseSettings):
    """Unified settings aggregating all config modules."""

    api: ApiSettings = Field(default_factory=ApiSettings)
    engine: EngineSettings = Field(default_factory=EngineSettings)


@lru_cache
def get_settings() -> Settings:
    """
    Get application settings singleton.

    Environment variables loaded once on first call.

    Returns:
        Settings: Application settings instance

    Usage:
        from medchat.configs import get_settings
        settings = get_settings()
    """
    return Settings()
