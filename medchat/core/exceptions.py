"""
Exception hierarchy for the MedChat client engine.

Provides layered exception structure for collaborator and domain errors.
All exceptions include context for observability and debugging.

Dependencies: None (pure domain layer)
System role: Centralized exception handling across the engine
"""

from typing import Any


class MedChatException(Exception):
    """Base exception for all MedChat engine errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """
        Initialize base exception with message and optional context.

        Args:
            message: Human-readable error message
            details: Optional dictionary of additional context for debugging
        """
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        """Return string representation including details."""
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ValidationError(MedChatException):
    """Raised when input validation fails before any network call."""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize validation error.

        Args:
            message: Error message
            field: Field name that failed validation
            details: Additional context
        """
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, details)


class SessionNotFoundError(MedChatException):
    """Raised when the backend definitively reports a session as nonexistent."""

    def __init__(self, session_id: str, details: dict[str, Any] | None = None) -> None:
        """
        Initialize session not found error.

        Args:
            session_id: ID of the missing session
            details: Additional context
        """
        details = details or {}
        details["session_id"] = session_id
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}", details)


class NetworkError(MedChatException):
    """Raised when the backend cannot be reached."""

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize network error.

        Args:
            message: Error message
            operation: Operation that failed (list, create, stream, ...)
            details: Additional context
        """
        details = details or {}
        if operation:
            details["operation"] = operation
        super().__init__(message, details)


class RequestTimeoutError(NetworkError):
    """Raised when a bounded backend call exceeds its timeout."""

    def __init__(
        self,
        operation: str,
        timeout: float,
        details: dict[str, Any] | None = None,
    ) -> None:
        details = details or {}
        details["timeout"] = timeout
        super().__init__(f"Timed out after {timeout}s during {operation}", operation, details)


class ApiError(MedChatException):
    """Raised when the backend answers with a non-success status."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize API error.

        Args:
            message: User-facing error message
            status_code: HTTP status code returned by the backend
            code: Backend error code from the response body
            details: Additional context
        """
        details = details or {}
        if status_code is not None:
            details["status_code"] = status_code
        if code:
            details["code"] = code
        self.status_code = status_code
        self.code = code
        super().__init__(message, details)


class AuthorizationError(ApiError):
    """Raised on 401/403 responses."""

    pass


class CapabilityUnavailableError(ApiError):
    """Raised when the backend does not offer the requested endpoint."""

    pass


class StreamError(MedChatException):
    """Raised when an answer stream fails after it was opened."""

    def __init__(
        self,
        message: str,
        session_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize stream error.

        Args:
            message: Error message
            session_id: Session whose stream failed
            details: Additional context
        """
        details = details or {}
        if session_id:
            details["session_id"] = session_id
        super().__init__(message, details)
