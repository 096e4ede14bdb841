"""
Observability module.

Provides logging configuration and safe structured-log helpers.
"""

from medchat.observability.log_utils import log_exception_with_context, log_with_context
from medchat.observability.logger import configure_logging

__all__ = ["configure_logging", "log_with_context", "log_exception_with_context"]
