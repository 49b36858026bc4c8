"""Pipeline exceptions shared across modules."""

from typing import Any


class ChatStreamError(Exception):
    """Base exception for pipeline errors."""

    code = "INTERNAL_ERROR"
    retryable = False

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class ConfigurationError(ChatStreamError):
    """Raised for unknown provider/model pairings or missing provider setup.

    Never retried: the same job will fail the same way on every attempt.
    """

    code = "CONFIGURATION_ERROR"


class RateLimitError(ChatStreamError):
    """Raised when a tenant's request, token or cost ceiling is hit."""

    code = "RATE_LIMIT_EXCEEDED"

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: int | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, {**(context or {}), "retry_after": retry_after})
        self.retry_after = retry_after


class InvalidJobTransition(ChatStreamError):
    """Raised when a job is moved to a status its current status forbids."""

    code = "INVALID_TRANSITION"


def user_safe_message(exc: BaseException) -> str:
    """
    Map an exception to a message that can be shown to an end user.

    Raw provider error text may contain request ids, keys or prompt
    fragments and is never forwarded.
    """
    # Imported here to avoid a cycle (llm.errors subclasses ChatStreamError)
    from chatstream.llm.errors import CapabilityError, LLMProviderError

    if isinstance(exc, RateLimitError):
        if exc.retry_after:
            return f"Too many requests. Please try again in {exc.retry_after} seconds."
        return "Usage limit reached for today. Please try again later."
    if isinstance(exc, ConfigurationError):
        return "This assistant is not configured correctly."
    if isinstance(exc, CapabilityError):
        return "This request is not supported by the configured assistant."
    if isinstance(exc, LLMProviderError):
        return "The assistant is temporarily unavailable. Please try again."
    return "Sorry, something went wrong while generating a response."
