"""Google Vertex AI (Gemini) provider implementation."""

from typing import AsyncIterator, Optional

import httpx

from chatstream.core.logging import get_logger
from chatstream.llm.base import BaseLLMProvider, GenerateResult
from chatstream.llm.errors import InvalidResponseError
from chatstream.llm.models import Completion, GenerateOptions, Messages, StreamChunk, Usage
from chatstream.llm.parser import iter_ndjson, vertex_chunks

logger = get_logger(__name__)

EMBEDDING_MODEL = "text-embedding-004"

SAFETY_SETTINGS = [
    {"category": category, "threshold": "BLOCK_ONLY_HIGH"}
    for category in (
        "HARM_CATEGORY_HATE_SPEECH",
        "HARM_CATEGORY_DANGEROUS_CONTENT",
        "HARM_CATEGORY_SEXUALLY_EXPLICIT",
        "HARM_CATEGORY_HARASSMENT",
    )
]


class VertexProvider(BaseLLMProvider):
    """Gemini models on Vertex AI; streams newline-delimited JSON."""

    def __init__(
        self,
        model: str,
        api_key: str,
        project_id: str,
        location: str = "us-central1",
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(model, api_key, timeout)
        self.provider_name = "google"
        self.project_id = project_id
        self.location = location
        self.client = client or httpx.AsyncClient(timeout=timeout)

    def _endpoint(self, model: str, method: str) -> str:
        return (
            f"https://{self.location}-aiplatform.googleapis.com/v1/projects/{self.project_id}"
            f"/locations/{self.location}/publishers/google/models/{model}:{method}"
        )

    @property
    def headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def build_request(self, messages: Messages, options: GenerateOptions) -> dict:
        request = {
            "contents": [
                {
                    "role": "model" if m.role == "assistant" else "user",
                    "parts": [{"text": m.content}],
                }
                for m in messages
                if m.role != "system"
            ],
            "generationConfig": {
                "maxOutputTokens": options.max_tokens,
                "temperature": options.temperature,
                "topK": 40,
                "topP": 0.95,
            },
            "safetySettings": SAFETY_SETTINGS,
        }
        system = [m.content for m in messages if m.role == "system"]
        if system:
            request["systemInstruction"] = {"parts": [{"text": "\n\n".join(system)}]}
        return request

    async def generate(
        self, messages: Messages, options: Optional[GenerateOptions] = None
    ) -> GenerateResult:
        options = self.resolve_options(options)
        request = self.build_request(messages, options)

        logger.info(
            f"Calling Vertex AI with model {options.model}",
            message_count=len(messages),
            stream=options.stream,
        )

        if options.stream:
            return self._stream(self._endpoint(options.model, "streamGenerateContent"), request)

        try:
            response = await self.client.post(
                self._endpoint(options.model, "generateContent"),
                headers=self.headers,
                json=request,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Vertex AI error: {e}")
            raise self.map_http_error(e) from e

        data = response.json()
        candidates = data.get("candidates") or [{}]
        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(p.get("text", "") for p in parts)
        if not text:
            raise InvalidResponseError(
                "No response generated from Vertex AI", provider=self.provider_name
            )

        metadata = data.get("usageMetadata") or {}
        usage = Usage(
            prompt_tokens=metadata.get("promptTokenCount", 0),
            completion_tokens=metadata.get("candidatesTokenCount", 0),
            total_tokens=metadata.get("totalTokenCount", 0),
        )
        return Completion(text, usage)

    async def _stream(self, url: str, request: dict) -> AsyncIterator[StreamChunk]:
        try:
            async with self.client.stream(
                "POST", url, headers=self.headers, json=request
            ) as response:
                response.raise_for_status()
                events = iter_ndjson(response.aiter_lines(), self.provider_name)
                async for chunk in vertex_chunks(events):
                    yield chunk
        except httpx.HTTPError as e:
            logger.error(f"Vertex AI stream error: {e}")
            raise self.map_http_error(e) from e

    async def embed(self, text: str) -> list[float]:
        try:
            response = await self.client.post(
                self._endpoint(EMBEDDING_MODEL, "predict"),
                headers=self.headers,
                json={"instances": [{"content": text, "taskType": "RETRIEVAL_DOCUMENT"}]},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise self.map_http_error(e) from e

        predictions = response.json().get("predictions") or [{}]
        values = (predictions[0].get("embeddings") or {}).get("values")
        if not isinstance(values, list):
            raise InvalidResponseError(
                "No embeddings returned from Vertex AI", provider=self.provider_name
            )
        return values

    async def close(self) -> None:
        await self.client.aclose()
