"""Zhipu GLM provider implementation (OpenAI-compatible SSE wire)."""

from typing import AsyncIterator, Optional

import httpx

from chatstream.core.logging import get_logger
from chatstream.llm.base import BaseLLMProvider, GenerateResult
from chatstream.llm.errors import InvalidResponseError
from chatstream.llm.models import Completion, GenerateOptions, Messages, StreamChunk, Usage
from chatstream.llm.parser import iter_sse_events, openai_chunks

logger = get_logger(__name__)

ZHIPU_API_BASE = "https://open.bigmodel.cn/api/paas/v4"
EMBEDDING_MODEL = "embedding-2"


class ZhipuProvider(BaseLLMProvider):
    """Zhipu GLM provider."""

    def __init__(
        self,
        model: str,
        api_key: str,
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize Zhipu provider.

        Args:
            model: Default model identifier (e.g., "glm-4")
            api_key: Zhipu API key
            timeout: Request timeout in seconds
            client: Preconfigured HTTP client (tests)
        """
        super().__init__(model, api_key, timeout)
        self.provider_name = "zhipu"
        self.client = client or httpx.AsyncClient(timeout=timeout)

    @property
    def headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def generate(
        self, messages: Messages, options: Optional[GenerateOptions] = None
    ) -> GenerateResult:
        """
        Generate a completion with Zhipu GLM.

        Raises:
            ProviderRateLimitError: If rate limit is exceeded
            APIError: If API call fails
            InvalidResponseError: If the response has no content
        """
        options = self.resolve_options(options)
        payload = {
            "model": options.model,
            "messages": [m.model_dump() for m in messages],
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "stream": options.stream,
        }

        logger.info(
            f"Calling Zhipu API with model {options.model}",
            message_count=len(messages),
            stream=options.stream,
        )

        if options.stream:
            return self._stream(payload)

        try:
            result, execution_time = await self._time_execution(self._post(payload))
        except httpx.HTTPError as e:
            logger.error(f"Zhipu API error: {e}")
            raise self.map_http_error(e) from e

        usage = Usage.model_validate(result.get("usage") or {})
        logger.info(
            f"Zhipu API call completed: {usage.total_tokens} tokens, "
            f"time: {execution_time:.2f}s"
        )

        choices = result.get("choices", [])
        if not choices:
            raise InvalidResponseError("Empty response from Zhipu", provider=self.provider_name)

        response_text = choices[0].get("message", {}).get("content", "")
        if not response_text:
            raise InvalidResponseError(
                "Empty content in Zhipu response", provider=self.provider_name
            )
        return Completion(response_text, usage)

    async def _post(self, payload: dict) -> dict:
        response = await self.client.post(
            f"{ZHIPU_API_BASE}/chat/completions",
            headers=self.headers,
            json=payload,
        )
        response.raise_for_status()
        return response.json()

    async def _stream(self, payload: dict) -> AsyncIterator[StreamChunk]:
        try:
            async with self.client.stream(
                "POST",
                f"{ZHIPU_API_BASE}/chat/completions",
                headers=self.headers,
                json=payload,
            ) as response:
                response.raise_for_status()
                events = iter_sse_events(response.aiter_lines(), self.provider_name)
                async for chunk in openai_chunks(events):
                    yield chunk
        except httpx.HTTPError as e:
            logger.error(f"Zhipu stream error: {e}")
            raise self.map_http_error(e) from e

    async def embed(self, text: str) -> list[float]:
        try:
            response = await self.client.post(
                f"{ZHIPU_API_BASE}/embeddings",
                headers=self.headers,
                json={"model": EMBEDDING_MODEL, "input": text},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise self.map_http_error(e) from e

        data = response.json().get("data") or []
        if not data or "embedding" not in data[0]:
            raise InvalidResponseError("No embedding returned from Zhipu", provider=self.provider_name)
        return data[0]["embedding"]

    async def close(self) -> None:
        await self.client.aclose()
