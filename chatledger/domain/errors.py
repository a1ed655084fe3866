"""Domain-level errors and exceptions."""

from typing import Optional


class DomainError(Exception):
    """Base domain error."""
    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code


class ValidationError(DomainError):
    """Validation error."""
    pass


class AuthorizationError(DomainError):
    """Caller does not own the chat or message."""
    pass


class NotFoundError(DomainError):
    """Referenced entity is missing."""
    pass


class ChatNotFoundError(NotFoundError):
    """Raised when a chat cannot be found."""
    pass


class MessageNotFoundError(NotFoundError):
    """Raised when a message cannot be found."""
    pass


class VersionIndexError(NotFoundError):
    """Raised when a response version index is out of range."""
    pass


class RetryContextError(ValidationError):
    """Raised when no user turn precedes the assistant message being retried."""
    pass


class TranscriptWriteError(DomainError):
    """Raised when a durable write to the transcript store keeps failing."""
    pass


class ConfigurationError(DomainError):
    """Configuration error."""
    pass


class LLMError(DomainError):
    """LLM-related error."""
    pass


class LLMServiceError(LLMError):
    """Generic failure reported by the completion provider."""
    pass


class RateLimitError(LLMError):
    """Provider rejected the request because of rate limiting."""
    pass


class LLMTimeoutError(LLMError):
    """Provider request, or the whole generation, took too long."""
    pass


class LLMAuthenticationError(LLMError):
    """Provider rejected the configured credentials."""
    pass
