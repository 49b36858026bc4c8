"""
Tests for the provider adapters and the provider factory.

HTTP providers run against httpx.MockTransport; SDK providers get a
mocked client.
"""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from chatstream.core.errors import ConfigurationError
from chatstream.llm.anthropic_provider import AnthropicProvider
from chatstream.llm.errors import (
    APIError,
    CapabilityError,
    InvalidResponseError,
    ProviderRateLimitError,
)
from chatstream.llm.factory import get_llm_provider, register_provider
from chatstream.llm.models import GenerateOptions
from chatstream.llm.openai_provider import OpenAIProvider
from chatstream.llm.vertex_provider import VertexProvider
from chatstream.llm.zhipu_provider import ZhipuProvider
from chatstream.models.job import ChatMessage

MESSAGES = [
    ChatMessage(role="system", content="Be brief."),
    ChatMessage(role="user", content="Hi"),
]

SSE_BODY = (
    'data: {"choices":[{"delta":{"content":"Hello"}}]}\n\n'
    'data: {"choices":[{"delta":{"content":" world"}}]}\n\n'
    'data: {"choices":[{"delta":{"content":"!"}}],"usage":{"totalTokens":10}}\n\n'
    "data: [DONE]\n\n"
)


def mock_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


async def collect(stream):
    return [chunk async for chunk in stream]


class TestZhipuProvider:
    async def test_streaming(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers["authorization"]
            return httpx.Response(200, text=SSE_BODY)

        provider = ZhipuProvider("glm-4", "key-1", client=mock_client(handler))
        stream = await provider.generate(MESSAGES, GenerateOptions(stream=True))
        chunks = await collect(stream)

        assert "".join(c.content for c in chunks) == "Hello world!"
        assert chunks[-1].is_complete
        assert chunks[-1].usage.total_tokens == 10
        assert seen["body"]["stream"] is True
        assert seen["body"]["model"] == "glm-4"
        assert seen["auth"] == "Bearer key-1"

    async def test_non_streaming(self):
        def handler(request):
            return httpx.Response(
                200,
                json={
                    "choices": [{"message": {"content": "Hi!"}}],
                    "usage": {"prompt_tokens": 2, "completion_tokens": 1, "total_tokens": 3},
                },
            )

        provider = ZhipuProvider("glm-4", "key", client=mock_client(handler))
        result = await provider.generate(MESSAGES)

        assert result == "Hi!"
        assert result.usage.total_tokens == 3

    async def test_rate_limit_maps_to_retryable_error(self):
        provider = ZhipuProvider(
            "glm-4",
            "key",
            client=mock_client(lambda r: httpx.Response(429, headers={"retry-after": "7"})),
        )
        with pytest.raises(ProviderRateLimitError) as exc_info:
            await provider.generate(MESSAGES)
        assert exc_info.value.retryable
        assert exc_info.value.retry_after == 7

    async def test_stream_server_error(self):
        provider = ZhipuProvider(
            "glm-4", "key", client=mock_client(lambda r: httpx.Response(503))
        )
        stream = await provider.generate(MESSAGES, GenerateOptions(stream=True))
        with pytest.raises(APIError) as exc_info:
            await collect(stream)
        assert exc_info.value.retryable
        assert exc_info.value.status_code == 503

    async def test_bad_request_is_not_retryable(self):
        provider = ZhipuProvider("glm-4", "key", client=mock_client(lambda r: httpx.Response(400)))
        with pytest.raises(APIError) as exc_info:
            await provider.generate(MESSAGES)
        assert not exc_info.value.retryable

    async def test_empty_choices(self):
        provider = ZhipuProvider(
            "glm-4", "key", client=mock_client(lambda r: httpx.Response(200, json={"choices": []}))
        )
        with pytest.raises(InvalidResponseError):
            await provider.generate(MESSAGES)

    async def test_embed(self):
        def handler(request):
            assert request.url.path.endswith("/embeddings")
            return httpx.Response(200, json={"data": [{"embedding": [0.5, 0.25]}]})

        provider = ZhipuProvider("glm-4", "key", client=mock_client(handler))
        assert await provider.embed("text") == [0.5, 0.25]


class TestVertexProvider:
    def provider(self, handler):
        return VertexProvider(
            "gemini-pro", "token", project_id="proj", location="europe-west4", client=mock_client(handler)
        )

    async def test_streaming_ndjson(self):
        seen = {}
        body = "\n".join(
            [
                '{"candidates":[{"content":{"parts":[{"text":"Hello"}]}}]}',
                '{"candidates":[{"content":{"parts":[{"text":" there"}]}}],'
                '"usageMetadata":{"promptTokenCount":3,"candidatesTokenCount":2,"totalTokenCount":5}}',
            ]
        )

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, text=body)

        stream = await self.provider(handler).generate(MESSAGES, GenerateOptions(stream=True))
        chunks = await collect(stream)

        assert "".join(c.content for c in chunks) == "Hello there"
        assert chunks[-1].usage.total_tokens == 5
        assert seen["url"].startswith("https://europe-west4-aiplatform.googleapis.com/v1/projects/proj/")
        assert seen["url"].endswith("/models/gemini-pro:streamGenerateContent")
        assert seen["body"]["systemInstruction"] == {"parts": [{"text": "Be brief."}]}
        assert seen["body"]["contents"] == [{"role": "user", "parts": [{"text": "Hi"}]}]

    async def test_assistant_turns_become_model(self):
        request = self.provider(lambda r: httpx.Response(200)).build_request(
            [ChatMessage(role="assistant", content="Earlier reply")], GenerateOptions()
        )
        assert request["contents"][0]["role"] == "model"

    async def test_embed(self):
        def handler(request):
            assert str(request.url).endswith("/models/text-embedding-004:predict")
            return httpx.Response(200, json={"predictions": [{"embeddings": {"values": [1.0, 2.0]}}]})

        assert await self.provider(handler).embed("text") == [1.0, 2.0]


class TestOpenAIProvider:
    async def test_stream_from_sdk_events(self):
        def event(content=None, usage=None):
            choices = [SimpleNamespace(delta=SimpleNamespace(content=content))] if content else []
            return SimpleNamespace(choices=choices, usage=usage)

        async def sdk_stream():
            yield event("Hel")
            yield event("lo")
            yield event(usage=SimpleNamespace(prompt_tokens=1, completion_tokens=2, total_tokens=3))

        client = MagicMock()
        client.chat.completions.create = AsyncMock(return_value=sdk_stream())
        provider = OpenAIProvider("gpt-3.5-turbo", "key", client=client)

        chunks = await collect(await provider.generate(MESSAGES, GenerateOptions(stream=True)))

        assert "".join(c.content for c in chunks) == "Hello"
        assert chunks[-1].is_complete
        assert chunks[-1].usage.total_tokens == 3
        kwargs = client.chat.completions.create.await_args.kwargs
        assert kwargs["stream"] is True
        assert kwargs["model"] == "gpt-3.5-turbo"


class TestAnthropicProvider:
    def test_has_no_embeddings(self):
        provider = AnthropicProvider("claude-3-haiku", "key", client=MagicMock())
        assert provider.supports_embeddings is False

    async def test_embed_raises_capability_error(self):
        provider = AnthropicProvider("claude-3-haiku", "key", client=MagicMock())
        with pytest.raises(CapabilityError) as exc_info:
            await provider.embed("text")
        assert not exc_info.value.retryable

    def test_system_turns_are_split_out(self):
        provider = AnthropicProvider("claude-3-haiku", "key", client=MagicMock())
        system, turns = provider.format_messages(MESSAGES)
        assert system == "Be brief."
        assert turns == [{"role": "user", "content": "Hi"}]


class TestFactory:
    def test_unknown_provider(self):
        with pytest.raises(ConfigurationError):
            get_llm_provider("acme")

    def test_missing_key(self):
        with patch("chatstream.llm.factory.settings") as settings:
            settings.get_provider_config.side_effect = ValueError("ZHIPU_API_KEY is required")
            with pytest.raises(ConfigurationError):
                get_llm_provider("zhipu")

    def test_instances_are_cached(self):
        with patch("chatstream.llm.factory.settings") as settings:
            settings.get_provider_config.return_value = {
                "provider": "zhipu",
                "model": "glm-4",
                "api_key": "key",
                "timeout": 5.0,
            }
            first = get_llm_provider("zhipu")
            assert isinstance(first, ZhipuProvider)
            assert get_llm_provider("ZHIPU") is first
            settings.get_provider_config.assert_called_once()

    def test_registered_provider(self, provider):
        register_provider("fake", provider)
        assert get_llm_provider("fake") is provider
