"""
Shared pytest fixtures for the chatstream test suite.

Everything here runs without Redis or network access: queues and the
broadcast channel use their in-memory backends and providers are fakes
that replay scripted output.
"""

from typing import Optional

import pytest

from chatstream.core.logging import setup_logging
from chatstream.llm.base import BaseLLMProvider
from chatstream.llm.factory import reset_providers
from chatstream.llm.models import Completion, GenerateOptions, StreamChunk, Usage
from chatstream.models.job import AIJob, ChatResponsePayload, ModelConfig
from chatstream.queue.backend import InMemoryJobQueue
from chatstream.realtime.channel import InMemoryBroadcastChannel

setup_logging()


class FakeClock:
    """Manually advanced clock, in seconds."""

    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProvider(BaseLLMProvider):
    """Replays scripted chunks or text; raises ``error`` instead when set.

    ``stream_error`` is raised after the scripted chunks, before the
    final one.
    """

    def __init__(
        self,
        chunks: Optional[list[str]] = None,
        text: str = "Hi there",
        usage: Optional[Usage] = None,
        error: Optional[Exception] = None,
        stream_error: Optional[Exception] = None,
        supports_embeddings: bool = True,
    ):
        super().__init__(model="gpt-3.5-turbo", api_key="test-key")
        self.provider_name = "openai"
        self.chunks = chunks if chunks is not None else ["Hello", " world", "!"]
        self.text = text
        self.usage = usage or Usage(prompt_tokens=4, completion_tokens=6, total_tokens=10)
        self.error = error
        self.stream_error = stream_error
        self.supports_embeddings = supports_embeddings
        self.calls: list[tuple[list, GenerateOptions]] = []

    async def generate(self, messages, options=None):
        self.calls.append((messages, options))
        if self.error is not None:
            raise self.error
        if options is not None and options.stream:
            return self._stream()
        return Completion(self.text, self.usage)

    async def _stream(self):
        for content in self.chunks:
            yield StreamChunk(content=content)
        if self.stream_error is not None:
            raise self.stream_error
        yield StreamChunk(content="", is_complete=True, usage=self.usage)

    async def embed(self, text: str) -> list[float]:
        if not self.supports_embeddings:
            raise self.unsupported("text embeddings")
        if self.error is not None:
            raise self.error
        return [0.1, 0.2, 0.3]


@pytest.fixture(autouse=True)
def _reset_provider_registry():
    reset_providers()
    yield
    reset_providers()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue(clock):
    return InMemoryJobQueue(visibility_timeout_ms=30_000, clock=clock)


@pytest.fixture
def channel():
    return InMemoryBroadcastChannel()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def bot_config():
    return ModelConfig(provider="openai", model="gpt-3.5-turbo", max_tokens=100)


def make_chat_job(
    content: str = "Hello?",
    conversation_id: Optional[str] = "conv-1",
    tenant_id: str = "tenant-1",
    chatbot_config: Optional[ModelConfig] = None,
    stream: bool = True,
) -> AIJob:
    return AIJob.create(
        tenant_id=tenant_id,
        conversation_id=conversation_id,
        payload=ChatResponsePayload(
            chatbot_id="bot-1",
            content=content,
            chatbot_config=chatbot_config,
            stream=stream,
        ),
    )
