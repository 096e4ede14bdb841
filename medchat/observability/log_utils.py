"""
Structured logging helpers for the chat engine.

Engine log records carry session ids, modes and counts, never the text of a
clinical question or answer. Collections such as selected document ids are
reduced to their size before they reach a handler.

Dependencies: logging (stdlib)
System role: Redaction layer in front of every ``extra`` payload the engine emits
"""

import logging
from typing import Any


def safe_log_value(value: Any, max_length: int = 200) -> str:
    """
    Render a context value the way engine log records expect it.

    Strings pass through, clipped at ``max_length``. Lists, tuples and sets of
    document or patient ids become ``"<type>(<n> items)"`` and mappings
    become ``"dict(<n> keys)"``, so no member leaks into the record.

    Args:
        value: Context value attached to a log call
        max_length: Longest rendering kept before clipping

    Returns:
        str: Rendering placed in the record's ``extra`` field
    """
    try:
        if value is None:
            return "None"
        if isinstance(value, str):
            rendered = value
        elif isinstance(value, (list, tuple, set, frozenset)):
            rendered = f"{type(value).__name__}({len(value)} items)"
        elif isinstance(value, dict):
            rendered = f"dict({len(value)} keys)"
        else:
            rendered = str(value)

        if len(rendered) <= max_length:
            return rendered
        return rendered[:max_length] + f"... (clipped from {len(rendered)} chars)"
    except Exception as e:
        return f"<unrenderable {type(e).__name__}>"


def log_with_context(
    logger: logging.Logger,
    level: int,
    message: str,
    **context,
) -> None:
    """
    Emit an engine event with its session context rendered by safe_log_value.

    Args:
        logger: Module logger of the emitting service
        level: Standard logging level
        message: Event text, ``"<module>:<function> - <event>"``
        **context: Session id, mode, counts and similar identifiers
    """
    extra = {key: safe_log_value(value) for key, value in context.items()}
    logger.log(level, message, extra=extra)


def log_exception_with_context(
    logger: logging.Logger,
    message: str,
    exc: BaseException,
    level: int = logging.WARNING,
    **context,
) -> None:
    """
    Record a collaborator failure the engine absorbed.

    The exception type and clipped message are added to the context. A
    traceback is attached only from ERROR upwards; recoverable backend
    failures stay at WARNING without one.

    Args:
        logger: Module logger of the emitting service
        message: Event text
        exc: Failure being recorded
        level: Standard logging level
        **context: Session id and related identifiers
    """
    extra = {key: safe_log_value(value) for key, value in context.items()}
    extra["error_type"] = type(exc).__name__
    extra["error_msg"] = safe_log_value(str(exc))
    logger.log(level, message, extra=extra, exc_info=level >= logging.ERROR)
