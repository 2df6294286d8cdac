"""
Tagged error taxonomy for the query pipeline.

Every failure that crosses a component boundary is an `AssistantError` carrying an `ErrorKind`
that is set where the error is raised (the LLM helper, the HTTP helper, the retry helper). Retry
and recovery decisions match on the kind, never on the message text. Each kind also maps to a
stable, user-safe message that the orchestrator surfaces to callers, so internal details never
leak into responses.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    PREPROCESSING = "preprocessing"
    VALIDATION = "validation"
    LLM = "llm"
    PROVIDER = "provider"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    CONNECTION = "connection"
    CONFIGURATION = "configuration"
    UNEXPECTED = "unexpected"


class ValidationErrorKind(str, Enum):
    """Why a classification payload was rejected by the schema validator."""
    NOT_AN_OBJECT = "not_an_object"
    MISSING_FIELD = "missing_field"
    UNKNOWN_FIELD = "unknown_field"
    INVALID_TYPE = "invalid_type"
    INVALID_ENUM = "invalid_enum"
    OUT_OF_RANGE = "out_of_range"
    TOO_MANY_TOKENS = "too_many_tokens"


TRANSIENT_KINDS = frozenset({ErrorKind.RATE_LIMIT, ErrorKind.TIMEOUT, ErrorKind.CONNECTION})

USER_MESSAGES = {
    ErrorKind.PREPROCESSING: "Please enter a question so I can help.",
    ErrorKind.VALIDATION: "I couldn't understand that request. Please try rephrasing it.",
    ErrorKind.LLM: "Service is temporarily unavailable. Please try again later.",
    ErrorKind.PROVIDER: "Service is temporarily unavailable. Please try again later.",
    ErrorKind.RATE_LIMIT: "Service is currently busy. Please try again in a moment.",
    ErrorKind.TIMEOUT: "Request timed out. Please try again.",
    ErrorKind.CONNECTION: "Connection interrupted. Please try again.",
    ErrorKind.CONFIGURATION: (
        "Service configuration error: API key is invalid or not configured properly. "
        "Please check your environment settings."
    ),
    ErrorKind.UNEXPECTED: "An unexpected error occurred. Please try again later.",
}


class AssistantError(Exception):
    """
    Base class for all tagged pipeline errors.

    Subclasses fix the `kind`; the message is meant for logs, while `user_message` is what the
    caller may show to an end user.
    """

    kind: ErrorKind = ErrorKind.UNEXPECTED

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def transient(self) -> bool:
        return self.kind in TRANSIENT_KINDS

    @property
    def user_message(self) -> str:
        return USER_MESSAGES[self.kind]


class PreprocessingError(AssistantError):
    """Raised for empty or unusable input before any network call is made."""

    kind = ErrorKind.PREPROCESSING

    def __init__(self, message: str, step: str = "trim"):
        super().__init__(message)
        self.step = step


class ValidationError(AssistantError):
    """Raised when the classification JSON does not match the Analysis schema."""

    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, error_kind: ValidationErrorKind, field: Optional[str] = None):
        super().__init__(message)
        self.error_kind = error_kind
        self.field = field


class LLMError(AssistantError):
    """Raised when the model returns no content, malformed JSON, or a non-transient API error."""

    kind = ErrorKind.LLM


class ProviderError(AssistantError):
    """A data source answered with a non-2xx status or an unusable body."""

    kind = ErrorKind.PROVIDER

    def __init__(self, message: str, provider: str, status: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status = status


class RateLimitError(AssistantError):
    kind = ErrorKind.RATE_LIMIT

    def __init__(self, message: str, source: str = "llm"):
        super().__init__(message)
        self.source = source


class RequestTimeoutError(AssistantError):
    kind = ErrorKind.TIMEOUT


class NetworkConnectionError(AssistantError):
    kind = ErrorKind.CONNECTION


class ConfigurationError(AssistantError):
    """Missing or rejected credentials. Fatal for the current query and never retried."""

    kind = ErrorKind.CONFIGURATION


class QueryFailedError(Exception):
    """
    The only error the orchestrator raises to its caller.

    `str(error)` is always a user-safe message; the originating kind is kept for status mapping.
    """

    def __init__(self, kind: ErrorKind):
        super().__init__(USER_MESSAGES[kind])
        self.kind = kind
        self.user_message = USER_MESSAGES[kind]
