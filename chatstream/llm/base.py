"""Base abstract class for LLM providers."""

import time
from abc import ABC, abstractmethod
from typing import AsyncIterator, Optional, Union

import httpx

from chatstream.core.logging import get_logger
from chatstream.domain.pricing import estimate_tokens
from chatstream.llm.errors import (
    APIError,
    CapabilityError,
    LLMProviderError,
    ProviderRateLimitError,
    ProviderTimeoutError,
)
from chatstream.llm.models import GenerateOptions, Messages, StreamChunk

logger = get_logger(__name__)

GenerateResult = Union[str, AsyncIterator[StreamChunk]]


class BaseLLMProvider(ABC):
    """Abstract base class for LLM providers."""

    supports_embeddings = True

    def __init__(self, model: str, api_key: str, timeout: float = 30.0):
        """
        Initialize LLM provider.

        Args:
            model: Default model identifier (e.g., "gpt-4-turbo")
            api_key: API key for the provider
            timeout: Outbound request timeout in seconds
        """
        self.model = model
        self.api_key = api_key
        self.timeout = timeout
        self.provider_name = self.__class__.__name__.replace("Provider", "").lower()

    @abstractmethod
    async def generate(
        self, messages: Messages, options: Optional[GenerateOptions] = None
    ) -> GenerateResult:
        """
        Generate a completion for a conversation.

        Args:
            messages: Conversation turns, system prompt first if any
            options: Model, temperature, max tokens and stream flag

        Returns:
            The full text when ``options.stream`` is false, otherwise a lazy,
            single-use async iterator of chunks ending with one whose
            ``is_complete`` is true

        Raises:
            LLMProviderError: If the call fails
        """
        pass

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """
        Embed a text.

        Raises:
            CapabilityError: If the provider has no embedding API
            LLMProviderError: If the call fails
        """
        pass

    def estimate_tokens(self, text: str) -> int:
        return estimate_tokens(text)

    def unsupported(self, operation: str) -> CapabilityError:
        return CapabilityError(
            f"{self.provider_name} does not support {operation}",
            provider=self.provider_name,
        )

    def resolve_options(self, options: Optional[GenerateOptions]) -> GenerateOptions:
        options = options or GenerateOptions()
        if options.model is None:
            options = options.model_copy(update={"model": self.model})
        return options

    def map_http_error(self, e: Exception) -> LLMProviderError:
        """Translate an httpx failure into the provider error family."""
        if isinstance(e, httpx.HTTPStatusError):
            status = e.response.status_code
            if status == 429:
                retry_after = e.response.headers.get("retry-after")
                return ProviderRateLimitError(
                    f"{self.provider_name} rate limit: HTTP 429",
                    provider=self.provider_name,
                    retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
                )
            return APIError(
                f"{self.provider_name} API error: HTTP {status}",
                provider=self.provider_name,
                status_code=status,
            )
        if isinstance(e, httpx.TimeoutException):
            return ProviderTimeoutError(
                f"{self.provider_name} request timed out after {self.timeout}s",
                provider=self.provider_name,
            )
        if isinstance(e, httpx.RequestError):
            return APIError(f"{self.provider_name} request error: {e}", provider=self.provider_name)
        return APIError(f"Unexpected error: {e}", provider=self.provider_name)

    async def _time_execution(self, coro):
        """
        Execute a coroutine and measure execution time.

        Args:
            coro: Coroutine to execute

        Returns:
            Tuple of (result, execution_time_in_seconds)
        """
        start_time = time.time()
        result = await coro
        execution_time = time.time() - start_time
        return result, execution_time

    async def close(self) -> None:
        """Release network resources."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
