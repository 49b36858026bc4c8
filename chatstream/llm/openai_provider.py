"""OpenAI GPT provider implementation."""

from typing import AsyncIterator, Optional

import openai
from openai import AsyncOpenAI

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

EMBEDDING_MODEL = "text-embedding-ada-002"


class OpenAIProvider(BaseLLMProvider):
    """OpenAI GPT provider."""

    def __init__(
        self,
        model: str,
        api_key: str,
        timeout: float = 30.0,
        client: AsyncOpenAI | None = None,
    ):
        """
        Initialize OpenAI provider.

        Args:
            model: Default model identifier (e.g., "gpt-4", "gpt-4-turbo")
            api_key: OpenAI API key
            timeout: Request timeout in seconds
            client: Preconfigured SDK client (tests)
        """
        super().__init__(model, api_key, timeout)
        self.client = client or AsyncOpenAI(api_key=api_key, timeout=timeout)
        self.provider_name = "openai"

    async def generate(
        self, messages: Messages, options: Optional[GenerateOptions] = None
    ) -> GenerateResult:
        """
        Generate a chat completion with OpenAI.

        Raises:
            ProviderRateLimitError: If rate limit is exceeded
            QuotaExceededError: If quota is exceeded
            APIError: If API call fails
            InvalidResponseError: If the response has no content
        """
        options = self.resolve_options(options)
        request = {
            "model": options.model,
            "messages": [m.model_dump() for m in messages],
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
        }

        logger.info(
            f"Calling OpenAI API with model {options.model}",
            message_count=len(messages),
            stream=options.stream,
        )

        try:
            if options.stream:
                stream = await self.client.chat.completions.create(
                    **request,
                    stream=True,
                    stream_options={"include_usage": True},
                )
                return self._iter_stream(stream)

            result, execution_time = await self._time_execution(
                self.client.chat.completions.create(**request)
            )
        except openai.OpenAIError as e:
            raise self._map_error(e) from e

        usage = None
        if result.usage is not None:
            usage = Usage(
                prompt_tokens=result.usage.prompt_tokens,
                completion_tokens=result.usage.completion_tokens,
                total_tokens=result.usage.total_tokens,
            )
            logger.info(
                f"OpenAI API call completed: {usage.total_tokens} tokens, "
                f"time: {execution_time:.2f}s"
            )

        response_text = result.choices[0].message.content if result.choices else None
        if not response_text:
            raise InvalidResponseError("Empty response from OpenAI", provider=self.provider_name)
        return Completion(response_text, usage)

    async def _iter_stream(self, stream) -> AsyncIterator[StreamChunk]:
        usage = None
        try:
            async for event in stream:
                content = ""
                if event.choices:
                    content = event.choices[0].delta.content or ""
                chunk_usage = None
                if event.usage is not None:
                    chunk_usage = Usage(
                        prompt_tokens=event.usage.prompt_tokens,
                        completion_tokens=event.usage.completion_tokens,
                        total_tokens=event.usage.total_tokens,
                    )
                    usage = chunk_usage
                if content or chunk_usage is not None:
                    yield StreamChunk(content=content, usage=chunk_usage)
        except openai.OpenAIError as e:
            raise self._map_error(e) from e
        yield StreamChunk(content="", is_complete=True, usage=usage)

    async def embed(self, text: str) -> list[float]:
        try:
            result = await self.client.embeddings.create(model=EMBEDDING_MODEL, input=text)
        except openai.OpenAIError as e:
            raise self._map_error(e) from e
        return list(result.data[0].embedding)

    def _map_error(self, e: Exception) -> LLMProviderError:
        if isinstance(e, openai.RateLimitError):
            logger.error(f"OpenAI rate limit exceeded: {e}")
            if "quota" in str(e).lower():
                return QuotaExceededError(f"OpenAI quota exceeded: {e}", provider=self.provider_name)
            return ProviderRateLimitError(
                f"OpenAI rate limit exceeded: {e}", provider=self.provider_name
            )
        if isinstance(e, openai.APITimeoutError):
            return ProviderTimeoutError(f"OpenAI request timed out: {e}", provider=self.provider_name)
        if isinstance(e, openai.APIStatusError):
            logger.error(f"OpenAI API error: {e}")
            if "insufficient_quota" in str(e).lower():
                return QuotaExceededError(f"OpenAI quota exceeded: {e}", provider=self.provider_name)
            return APIError(
                f"OpenAI API error: {e}",
                provider=self.provider_name,
                status_code=e.status_code,
            )
        logger.error(f"Unexpected error in OpenAI provider: {e}", exc_info=True)
        return APIError(f"OpenAI request error: {e}", provider=self.provider_name)

    async def close(self) -> None:
        await self.client.close()
