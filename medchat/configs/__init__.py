"""
Configuration management module.

Provides centralized, type-safe configuration using Pydantic Settings.
All config modules support environment variable mapping with validation.
"""

from medchat.configs.api import ApiSettings
from medchat.configs.engine import EngineSettings
from medchat.configs.settings import Settings, get_settings

__all__ = ["ApiSettings", "EngineSettings", "Settings", "get_settings"]
