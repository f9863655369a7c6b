"""
Error hierarchy for the chat engine.

Every failure the engine can surface derives from ChatError so callers can
catch one type and still branch on the error code.
"""

from typing import Any, Dict, Optional


class ChatError(Exception):
    """Base exception for all chat engine errors."""

    error_code: str = "CHAT_ERROR"

    def __init__(
        self,
        message: str,
        *,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.context = context or {}
        self.__cause__ = cause

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.error_code,
            "message": self.message,
            "context": self.context,
        }


class ValidationError(ChatError):
    """Input rejected before any network call."""
    error_code = "VALIDATION_ERROR"


class RegenerateRejected(ValidationError):
    """Regenerate target is unknown, not an assistant message, or unpaired."""
    error_code = "REGENERATE_REJECTED"


class TransportError(ChatError):
    """Backend exchange failed."""
    error_code = "TRANSPORT_ERROR"

    def __init__(self, message: str, *, status_code: Optional[int] = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.status_code = status_code


class ParseError(ChatError):
    """A single stream record could not be decoded."""
    error_code = "PARSE_ERROR"


class PersistenceError(ChatError):
    """Durable write or read failed."""
    error_code = "PERSISTENCE_ERROR"


class ConversationNotFoundError(PersistenceError):
    error_code = "CONVERSATION_NOT_FOUND"


class TurnNotFoundError(PersistenceError):
    error_code = "TURN_NOT_FOUND"


class CancellationSignal(ChatError):
    """Raised inside an exchange once its token fires. Never shown to users."""
    error_code = "CANCELLED"


class MessageNotFoundError(ChatError, KeyError):
    """No message with the given id in the store."""
    error_code = "MESSAGE_NOT_FOUND"

    def __str__(self) -> str:
        return self.message
