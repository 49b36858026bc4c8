"""Custom exceptions for LLM providers."""

from chatstream.core.errors import ChatStreamError


class LLMProviderError(ChatStreamError):
    """Base exception for LLM provider errors.

    Transient by default: network trouble and provider 5xx responses are
    worth retrying.
    """

    code = "PROVIDER_ERROR"
    retryable = True

    def __init__(self, message: str, provider: str | None = None):
        super().__init__(message, {"provider": provider} if provider else None)
        self.provider = provider


class ProviderRateLimitError(LLMProviderError):
    """Raised when the provider's own rate limit is exceeded."""

    code = "PROVIDER_RATE_LIMIT"

    def __init__(
        self, message: str, provider: str | None = None, retry_after: int | None = None
    ):
        super().__init__(message, provider)
        self.retry_after = retry_after


class QuotaExceededError(LLMProviderError):
    """Raised when the provider account's quota is exhausted."""

    code = "PROVIDER_QUOTA_EXCEEDED"
    retryable = False


class InvalidResponseError(LLMProviderError):
    """Raised when the provider returns a response with no usable content."""

    code = "PROVIDER_INVALID_RESPONSE"
    retryable = False

    def __init__(
        self, message: str, provider: str | None = None, raw_response: str | None = None
    ):
        super().__init__(message, provider)
        self.raw_response = raw_response


class APIError(LLMProviderError):
    """Raised when the provider API returns an error status."""

    code = "PROVIDER_API_ERROR"

    def __init__(
        self, message: str, provider: str | None = None, status_code: int | None = None
    ):
        super().__init__(message, provider)
        self.status_code = status_code
        # 4xx other than 408/429 means the request itself is wrong
        if status_code is not None and 400 <= status_code < 500:
            self.retryable = status_code in (408, 429)


class ProviderTimeoutError(LLMProviderError):
    """Raised when the provider request times out."""

    code = "PROVIDER_TIMEOUT"


class CapabilityError(LLMProviderError):
    """Raised when a provider does not support the requested operation."""

    code = "PROVIDER_CAPABILITY"
    retryable = False
