"""
Tests for the completion worker.

The worker runs against the in-memory queue and channel with a fake
provider, so every event it publishes can be inspected.
"""

import asyncio
import random
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from chatstream.core.errors import RateLimitError
from chatstream.domain.rate_limit import RateLimits, RateLimitWindow
from chatstream.llm.errors import APIError, QuotaExceededError
from chatstream.models.events import CompleteEvent, ErrorEvent, StreamEvent
from chatstream.models.job import (
    AIJob,
    AnalysisPayload,
    BatchPayload,
    EmbeddingPayload,
    JobStatus,
    ModelConfig,
)
from chatstream.queue.consumer import CompletionWorker, job_error_from
from tests.conftest import FakeProvider, make_chat_job


@pytest.fixture
def make_worker(queue, channel):
    def factory(provider, **kwargs):
        return CompletionWorker(
            queue=queue,
            channel=channel,
            provider_lookup=lambda name: provider,
            rng=random.Random(0),
            poll_interval=0.01,
            **kwargs,
        )

    return factory


async def claim(queue, job):
    await queue.enqueue(job)
    return await queue.dequeue()


class TestStreamingChat:
    async def test_streams_then_completes(self, make_worker, provider, queue, channel, bot_config):
        worker = make_worker(provider)
        job = await claim(queue, make_chat_job(chatbot_config=bot_config))

        result = await worker.process_job(job)

        assert result.status == JobStatus.COMPLETED
        assert result.result.content == "Hello world!"
        assert result.result.usage.total_tokens == 10

        events = channel.published
        assert [type(e) for e in events] == [StreamEvent, StreamEvent, StreamEvent, CompleteEvent]
        assert [e.content for e in events[:3]] == ["Hello", " world", "!"]
        assert events[-1].content == "Hello world!"
        assert events[-1].usage.total_tokens == 10
        assert all(e.conversation_id == "conv-1" for e in events)
        assert (await queue.stats()).completed == 1

    async def test_cost_and_model_are_recorded(self, make_worker, provider, queue, bot_config):
        job = await claim(queue, make_chat_job(chatbot_config=bot_config))
        result = await make_worker(provider).process_job(job)

        assert result.metadata.provider == "openai"
        assert result.metadata.model == "gpt-3.5-turbo"
        # 4 prompt * 0.0005/1k + 6 completion * 0.0015/1k
        assert result.metadata.actual_cost == pytest.approx(0.000011)
        assert result.metadata.cost_estimate > 0
        assert result.metadata.processing_time is not None

    async def test_prompt_is_system_then_context_then_user(self, make_worker, provider, queue):
        config = ModelConfig(model="gpt-4", system_prompt="Be a pirate.")
        job = await claim(queue, make_chat_job("Ahoy?", chatbot_config=config))
        await make_worker(provider).process_job(job)

        messages, options = provider.calls[0]
        assert [(m.role, m.content) for m in messages] == [
            ("system", "Be a pirate."),
            ("user", "Ahoy?"),
        ]
        assert options.model == "gpt-4"
        assert options.stream is True

    async def test_empty_chunks_are_not_published(self, make_worker, queue, channel, bot_config):
        provider = FakeProvider(chunks=["", "Hi", ""])
        job = await claim(queue, make_chat_job(chatbot_config=bot_config))
        await make_worker(provider).process_job(job)

        streamed = [e for e in channel.published if isinstance(e, StreamEvent)]
        assert [e.content for e in streamed] == ["Hi"]

    async def test_non_streaming_publishes_only_complete(self, make_worker, provider, queue, channel, bot_config):
        job = await claim(queue, make_chat_job(chatbot_config=bot_config, stream=False))
        await make_worker(provider).process_job(job)

        assert [type(e) for e in channel.published] == [CompleteEvent]
        assert channel.published[0].content == "Hi there"

    async def test_no_conversation_no_events(self, make_worker, provider, queue, channel, bot_config):
        job = await claim(queue, make_chat_job(conversation_id=None, chatbot_config=bot_config))
        result = await make_worker(provider).process_job(job)

        assert result.status == JobStatus.COMPLETED
        assert channel.published == []


class TestConfigResolution:
    async def test_platform_config_is_used(self, make_worker, provider, queue):
        platform = MagicMock()
        platform.get_chatbot_config = AsyncMock(
            return_value=ModelConfig(provider="openai", model="gpt-4-turbo", temperature=0.1)
        )
        job = await claim(queue, make_chat_job())
        await make_worker(provider, platform=platform).process_job(job)

        platform.get_chatbot_config.assert_awaited_once_with("bot-1")
        assert provider.calls[0][1].model == "gpt-4-turbo"
        assert provider.calls[0][1].temperature == 0.1

    async def test_defaults_without_platform(self, make_worker, provider, queue):
        job = await claim(queue, make_chat_job())
        result = await make_worker(provider).process_job(job)

        assert result.status == JobStatus.COMPLETED
        assert provider.calls[0][1].model == "gpt-3.5-turbo"

    async def test_unpriced_model_fails_before_calling_provider(self, make_worker, provider, queue, channel):
        job = await claim(queue, make_chat_job(chatbot_config=ModelConfig(model="gpt-9")))
        result = await make_worker(provider).process_job(job)

        assert result.status == JobStatus.FAILED
        assert result.error.code == "CONFIGURATION_ERROR"
        assert provider.calls == []
        assert channel.published[-1].error == "This assistant is not configured correctly."


class TestFailures:
    async def test_transient_error_is_retried_with_backoff(self, make_worker, queue, channel, bot_config):
        provider = FakeProvider(error=APIError("upstream 502 req_id=abc", provider="openai", status_code=502))
        job = await claim(queue, make_chat_job(chatbot_config=bot_config))

        result = await make_worker(provider).process_job(job)

        assert result.status == JobStatus.RETRYING
        assert result.metadata.retry_count == 1
        stats = await queue.stats()
        assert (stats.delayed, stats.failed) == (1, 0)
        # the client keeps waiting; a retry is not the end of its stream
        assert channel.published == []

    async def test_recovers_after_one_failure(self, make_worker, queue, clock, channel, bot_config):
        provider = FakeProvider(error=APIError("upstream 502", provider="openai", status_code=502))
        worker = make_worker(provider)
        first = await worker.process_job(await claim(queue, make_chat_job(chatbot_config=bot_config)))
        assert first.status == JobStatus.RETRYING

        provider.error = None
        clock.advance(61)
        result = await worker.process_job(await queue.dequeue())

        assert result.status == JobStatus.COMPLETED
        assert result.metadata.retry_count == 1
        assert [type(e) for e in channel.published] == [
            StreamEvent,
            StreamEvent,
            StreamEvent,
            CompleteEvent,
        ]

    async def test_stream_failure_midway_keeps_sent_chunks(self, make_worker, queue, channel, bot_config):
        provider = FakeProvider(
            chunks=["Hel", "lo"],
            stream_error=APIError("upstream 502", provider="openai", status_code=502),
        )
        job = await claim(queue, make_chat_job(chatbot_config=bot_config))

        result = await make_worker(provider).process_job(job)

        assert result.status == JobStatus.RETRYING
        assert result.metadata.retry_count == 1
        assert [type(e) for e in channel.published] == [StreamEvent, StreamEvent]
        assert [e.content for e in channel.published] == ["Hel", "lo"]
        assert (await queue.stats()).delayed == 1

    async def test_gives_up_after_three_retries(self, make_worker, queue, clock, channel, bot_config):
        provider = FakeProvider(error=APIError("boom req_id=abc", provider="openai", status_code=500))
        worker = make_worker(provider)
        await queue.enqueue(make_chat_job(chatbot_config=bot_config))

        job = None
        for _ in range(5):
            claimed = await queue.dequeue()
            if claimed is None:
                break
            job = await worker.process_job(claimed)
            clock.advance(61)

        assert len(provider.calls) == 4
        assert job.status == JobStatus.FAILED
        assert job.metadata.retry_count == 3
        assert (await queue.stats()).failed == 1
        [error] = channel.published
        assert isinstance(error, ErrorEvent)
        assert "req_id" not in error.error
        assert error.error == "The assistant is temporarily unavailable. Please try again."

    async def test_fatal_provider_error_is_not_retried(self, make_worker, queue, bot_config):
        provider = FakeProvider(error=QuotaExceededError("quota", provider="openai"))
        job = await claim(queue, make_chat_job(chatbot_config=bot_config))

        result = await make_worker(provider).process_job(job)

        assert result.status == JobStatus.FAILED
        assert result.error.code == "PROVIDER_QUOTA_EXCEEDED"
        assert (await queue.stats()).failed == 1

    async def test_rate_limited_tenant_is_rejected(self, make_worker, provider, queue, channel, bot_config):
        usage_store = MagicMock()
        usage_store.get_window = AsyncMock(
            return_value=RateLimitWindow(
                requests=60, reset_at=datetime.now(UTC) + timedelta(seconds=20)
            )
        )
        worker = make_worker(provider, usage_store=usage_store, limits=RateLimits(requests_per_minute=60))
        job = await claim(queue, make_chat_job(chatbot_config=bot_config))

        result = await worker.process_job(job)

        assert result.status == JobStatus.FAILED
        assert result.error.code == "RATE_LIMIT_EXCEEDED"
        assert 0 < result.error.retry_after <= 20
        assert provider.calls == []
        assert channel.published[-1].error.startswith("Too many requests")

    async def test_usage_is_recorded_after_success(self, make_worker, provider, queue, bot_config):
        usage_store = MagicMock()
        usage_store.get_window = AsyncMock(return_value=None)
        usage_store.record = AsyncMock()
        job = await claim(queue, make_chat_job(chatbot_config=bot_config))

        await make_worker(provider, usage_store=usage_store).process_job(job)

        usage_store.record.assert_awaited_once()
        tenant_id, tokens, cost = usage_store.record.await_args.args
        assert (tenant_id, tokens) == ("tenant-1", 10)
        assert cost > 0


class TestOtherJobTypes:
    async def test_sentiment(self, make_worker, queue):
        provider = FakeProvider(text=" positive \n")
        job = await claim(queue, AIJob.create("t", AnalysisPayload(type="sentiment_analysis", content="Love it")))

        result = await make_worker(provider).process_job(job)

        assert result.result.content == "positive"
        messages, options = provider.calls[0]
        assert "sentiment" in messages[0].content
        assert options.stream is False

    async def test_batch(self, make_worker, queue):
        provider = FakeProvider(text="done")
        job = await claim(queue, AIJob.create("t", BatchPayload(items=["a", "b", "c"])))

        result = await make_worker(provider).process_job(job)

        assert result.result.items == ["done", "done", "done"]
        assert result.result.usage.total_tokens == 30

    async def test_embedding(self, make_worker, provider, queue):
        job = await claim(queue, AIJob.create("t", EmbeddingPayload(content="vector me")))
        result = await make_worker(provider).process_job(job)
        assert result.result.embedding == [0.1, 0.2, 0.3]

    async def test_embedding_on_provider_without_support(self, make_worker, queue):
        provider = FakeProvider(supports_embeddings=False)
        job = await claim(queue, AIJob.create("t", EmbeddingPayload(content="x", provider="anthropic")))

        result = await make_worker(provider).process_job(job)

        assert result.status == JobStatus.FAILED
        assert result.error.code == "PROVIDER_CAPABILITY"
        assert (await queue.stats()).failed == 1


class TestConsumerLoop:
    async def test_runs_jobs_until_stopped(self, make_worker, provider, queue, bot_config):
        worker = make_worker(provider, concurrency=2)
        for i in range(3):
            await queue.enqueue(make_chat_job(f"m{i}", chatbot_config=bot_config))

        task = asyncio.create_task(worker.run())
        for _ in range(200):
            if (await queue.stats()).completed == 3:
                break
            await asyncio.sleep(0.01)
        worker.stop()
        await asyncio.wait_for(task, timeout=2)

        assert (await queue.stats()).completed == 3


async def test_invalid_model_settings_are_not_retried(make_worker, provider, queue):
    platform = MagicMock()
    platform.get_chatbot_config = AsyncMock(
        return_value=ModelConfig.model_construct(
            provider="openai", model="gpt-3.5-turbo", temperature=5.0, max_tokens=100, system_prompt=None
        )
    )
    job = await claim(queue, make_chat_job())

    result = await make_worker(provider, platform=platform).process_job(job)

    assert result.status == JobStatus.FAILED
    assert result.error.code == "CONFIGURATION_ERROR"
    assert not result.error.retryable
    assert provider.calls == []
    assert (await queue.stats()).failed == 1


def test_unknown_exceptions_are_retryable():
    error = job_error_from(RuntimeError("socket closed"))
    assert error.code == "INTERNAL_ERROR"
    assert error.retryable


def test_rate_limit_error_keeps_wait_hint():
    error = job_error_from(RateLimitError(retry_after=12))
    assert error.retry_after == 12
    assert not error.retryable
