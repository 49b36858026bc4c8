"""Anthropic Claude provider implementation."""

from typing import AsyncIterator, Optional

import anthropic
from anthropic import AsyncAnthropic

from chatstream.core.logging import get_logger
from chatstream.llm.base import BaseLLMProvider, GenerateResult
from chatstream.llm.errors import (
    APIError,
    InvalidResponseError,
    LLMProviderError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    QuotaExceededError,
)
from chatstream.llm.models import Completion, GenerateOptions, Messages, StreamChunk, Usage

logger = get_logger(__name__)


class AnthropicProvider(BaseLLMProvider):
    """Anthropic Claude provider. Has no embedding API."""

    supports_embeddings = False

    def __init__(
        self,
        model: str,
        api_key: str,
        timeout: float = 30.0,
        client: AsyncAnthropic | None = None,
    ):
        """
        Initialize Anthropic provider.

        Args:
            model: Default model identifier (e.g., "claude-3-haiku")
            api_key: Anthropic API key
            timeout: Request timeout in seconds
            client: Preconfigured SDK client (tests)
        """
        super().__init__(model, api_key, timeout)
        self.client = client or AsyncAnthropic(api_key=api_key, timeout=timeout)
        self.provider_name = "anthropic"

    def format_messages(self, messages: Messages) -> tuple[str | None, list[dict]]:
        """Split system turns out; the Messages API takes them as a parameter."""
        system = "\n\n".join(m.content for m in messages if m.role == "system") or None
        turns = [{"role": m.role, "content": m.content} for m in messages if m.role != "system"]
        return system, turns

    async def generate(
        self, messages: Messages, options: Optional[GenerateOptions] = None
    ) -> GenerateResult:
        """
        Generate a completion with Claude.

        Raises:
            ProviderRateLimitError: If rate limit is exceeded
            QuotaExceededError: If quota is exceeded
            APIError: If API call fails
            InvalidResponseError: If the response has no text
        """
        options = self.resolve_options(options)
        system, turns = self.format_messages(messages)
        request = {
            "model": options.model,
            "messages": turns,
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
        }
        if system:
            request["system"] = system

        logger.info(
            f"Calling Claude API with model {options.model}",
            message_count=len(turns),
            stream=options.stream,
        )

        try:
            if options.stream:
                stream = await self.client.messages.create(**request, stream=True)
                return self._iter_stream(stream)

            result, execution_time = await self._time_execution(
                self.client.messages.create(**request)
            )
        except anthropic.AnthropicError as e:
            raise self._map_error(e) from e

        input_tokens = result.usage.input_tokens
        output_tokens = result.usage.output_tokens
        logger.info(
            f"Claude API call completed: {input_tokens + output_tokens} tokens, "
            f"time: {execution_time:.2f}s"
        )

        text = "".join(block.text for block in result.content if block.type == "text")
        if not text:
            raise InvalidResponseError("Empty response from Claude", provider=self.provider_name)
        return Completion(
            text,
            Usage(
                prompt_tokens=input_tokens,
                completion_tokens=output_tokens,
                total_tokens=input_tokens + output_tokens,
            ),
        )

    async def _iter_stream(self, stream) -> AsyncIterator[StreamChunk]:
        input_tokens = 0
        output_tokens = 0
        try:
            async for event in stream:
                if event.type == "message_start":
                    input_tokens = event.message.usage.input_tokens
                elif event.type == "content_block_delta":
                    text = getattr(event.delta, "text", None)
                    if text:
                        yield StreamChunk(content=text)
                elif event.type == "message_delta":
                    output_tokens = event.usage.output_tokens
                elif event.type == "message_stop":
                    break
        except anthropic.AnthropicError as e:
            raise self._map_error(e) from e

        yield StreamChunk(
            content="",
            is_complete=True,
            usage=Usage(
                prompt_tokens=input_tokens,
                completion_tokens=output_tokens,
                total_tokens=input_tokens + output_tokens,
            ),
        )

    async def embed(self, text: str) -> list[float]:
        raise self.unsupported("text embeddings")

    def _map_error(self, e: Exception) -> LLMProviderError:
        if isinstance(e, anthropic.RateLimitError):
            logger.error(f"Claude rate limit exceeded: {e}")
            retry_after = e.response.headers.get("retry-after")
            return ProviderRateLimitError(
                f"Claude rate limit exceeded: {e}",
                provider=self.provider_name,
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if isinstance(e, anthropic.APITimeoutError):
            return ProviderTimeoutError(f"Claude request timed out: {e}", provider=self.provider_name)
        if isinstance(e, anthropic.APIStatusError):
            logger.error(f"Claude API error: {e}")
            if e.status_code == 402:
                return QuotaExceededError(f"Claude quota exceeded: {e}", provider=self.provider_name)
            return APIError(
                f"Claude API error: {e}",
                provider=self.provider_name,
                status_code=e.status_code,
            )
        logger.error(f"Unexpected error in Claude provider: {e}", exc_info=True)
        return APIError(f"Claude request error: {e}", provider=self.provider_name)

    async def close(self) -> None:
        await self.client.close()
