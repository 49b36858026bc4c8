"""Completion worker - claim AI jobs, call providers, stream results out."""

import asyncio
import os
import random
import signal
import time
from typing import Callable, Optional

from pydantic import ValidationError
from redis.exceptions import RedisError

from chatstream.core.config import settings
from chatstream.core.errors import ChatStreamError, ConfigurationError, user_safe_message
from chatstream.core.logging import get_logger
from chatstream.domain.pricing import (
    PricingConfig,
    default_model_config,
    estimate_cost,
    estimate_tokens,
)
from chatstream.domain.rate_limit import RateLimits, UsageCounterStore, check_rate_limit
from chatstream.domain.retry import next_delay, should_retry
from chatstream.llm.base import BaseLLMProvider
from chatstream.llm.factory import get_llm_provider
from chatstream.llm.models import GenerateOptions, Usage
from chatstream.models.events import CompleteEvent, ErrorEvent, StreamEvent
from chatstream.models.job import (
    AIJob,
    ChatMessage,
    JobError,
    JobResult,
    JobType,
    ModelConfig,
    TokenUsage,
)
from chatstream.platform.client import PlatformClient
from chatstream.queue.backend import JobQueue
from chatstream.realtime.channel import BroadcastChannel

logger = get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."

TASK_PROMPTS = {
    JobType.SENTIMENT_ANALYSIS: (
        "Classify the sentiment of the user's text as positive, negative or "
        "neutral. Reply with the single word only."
    ),
    JobType.INTENT_CLASSIFICATION: (
        "Identify the intent behind the user's message. Reply with a short "
        "snake_case label only."
    ),
    JobType.ENTITY_EXTRACTION: (
        "Extract the named entities from the user's text. Reply with a JSON "
        "array of strings only."
    ),
    JobType.SUMMARIZATION: "Summarize the following conversation in a few sentences.",
}


def job_error_from(exc: BaseException) -> JobError:
    """Describe a failure for the job record. Unknown exceptions are retryable."""
    if isinstance(exc, ChatStreamError):
        return JobError(
            code=exc.code,
            message=exc.message,
            provider=getattr(exc, "provider", None),
            retryable=exc.retryable,
            retry_after=getattr(exc, "retry_after", None),
        )
    if isinstance(exc, ValidationError):
        # Bad settings fail the same way on every attempt
        return JobError(code=ConfigurationError.code, message=str(exc), retryable=False)
    return JobError(code="INTERNAL_ERROR", message=str(exc), retryable=True)


class CompletionWorker:
    """
    Runs AI jobs from one queue in a fixed number of concurrent slots.

    Per job: pending -> processing -> completed, or -> failed and then
    either retrying (re-enqueued with backoff) or terminally failed.
    Stream, complete and error events go to the broadcast channel whether
    or not a client is listening.
    """

    def __init__(
        self,
        queue: JobQueue,
        channel: BroadcastChannel,
        platform: Optional[PlatformClient] = None,
        usage_store: Optional[UsageCounterStore] = None,
        limits: Optional[RateLimits] = None,
        pricing: Optional[PricingConfig] = None,
        provider_lookup: Callable[[str], BaseLLMProvider] = get_llm_provider,
        concurrency: int = 5,
        poll_interval: float = 1.0,
        rng: Optional[random.Random] = None,
    ):
        self.queue = queue
        self.channel = channel
        self.platform = platform
        self.usage_store = usage_store
        self.limits = limits or RateLimits()
        self.pricing = pricing or PricingConfig()
        self.provider_lookup = provider_lookup
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.rng = rng
        self._stopping = asyncio.Event()
        self._tasks: set[asyncio.Task] = set()

    # Job lifecycle

    async def process_job(self, job: AIJob) -> AIJob:
        """Run one claimed job to completion, retry scheduling or failure."""
        job.mark_processing()
        started = time.monotonic()
        logger.info(
            f"Processing job {job.id} (attempt {job.metadata.retry_count + 1})",
            job_id=job.id,
            job_type=job.type.value,
            tenant_id=job.tenant_id,
            conversation_id=job.conversation_id,
        )

        try:
            await self._check_limits(job)
            result = await self._execute(job)
        except Exception as exc:
            job.metadata.processing_time = time.monotonic() - started
            await self._handle_failure(job, exc)
            return job

        job.metadata.processing_time = time.monotonic() - started
        job.mark_completed(result)
        await self.queue.ack_completed(job)
        await self._record_usage(job)

        logger.info(
            f"Job {job.id} completed",
            job_id=job.id,
            processing_time=round(job.metadata.processing_time, 3),
            cost=job.metadata.actual_cost,
        )
        return job

    async def _check_limits(self, job: AIJob) -> None:
        if self.usage_store is None:
            return
        window = await self.usage_store.get_window(job.tenant_id)
        check_rate_limit(window, self.limits)

    async def _handle_failure(self, job: AIJob, exc: Exception) -> None:
        error = job_error_from(exc)
        logger.error(
            f"Job {job.id} failed: {exc}",
            job_id=job.id,
            code=error.code,
            retryable=error.retryable,
            retry_count=job.metadata.retry_count,
            exc_info=not isinstance(exc, ChatStreamError),
        )

        job.mark_failed(error)
        if should_retry(job):
            job.mark_retrying()
            delay = next_delay(job.metadata.retry_count, rng=self.rng)
            await self.queue.enqueue(job, delay_ms=delay)
            logger.info(
                f"Scheduled retry {job.metadata.retry_count} for job {job.id}",
                job_id=job.id,
                delay_ms=delay,
            )
        else:
            # Only a terminal failure ends the client's stream
            if job.conversation_id:
                await self.channel.publish(
                    ErrorEvent(conversation_id=job.conversation_id, error=user_safe_message(exc))
                )
            await self.queue.ack_failed(job)

    async def _record_usage(self, job: AIJob) -> None:
        if self.usage_store is None or job.result is None:
            return
        usage = job.result.usage or TokenUsage()
        try:
            await self.usage_store.record(
                job.tenant_id, usage.total_tokens, job.metadata.actual_cost or 0.0
            )
        except RedisError as e:
            logger.warning(f"Failed to record usage for job {job.id}: {e}", job_id=job.id)

    # Job handlers

    async def _execute(self, job: AIJob) -> JobResult:
        if job.type == JobType.CHAT_RESPONSE:
            return await self._chat_response(job)
        if job.type == JobType.EMBEDDING_GENERATION:
            return await self._embedding(job)
        if job.type == JobType.BATCH_PROCESSING:
            return await self._batch(job)
        return await self._task(job)

    async def _resolve_config(self, job: AIJob) -> ModelConfig:
        payload = job.payload
        if payload.chatbot_config is not None:
            return payload.chatbot_config
        if job.type == JobType.CHAT_RESPONSE and self.platform is not None:
            return await self.platform.get_chatbot_config(payload.chatbot_id)
        return default_model_config(settings.default_provider)

    def _price(self, job: AIJob, config: ModelConfig, usage: TokenUsage) -> None:
        job.metadata.provider = config.provider
        job.metadata.model = config.model
        job.metadata.actual_cost = float(
            estimate_cost(
                config.provider,
                config.model,
                usage.prompt_tokens,
                usage.completion_tokens,
                self.pricing.prices,
            )
        )

    def _preflight(self, job: AIJob, config: ModelConfig, messages: list[ChatMessage]) -> None:
        # Unknown provider/model pairs fail here, before any provider call
        prompt_tokens = sum(estimate_tokens(m.content) for m in messages)
        job.metadata.cost_estimate = float(
            estimate_cost(
                config.provider,
                config.model,
                prompt_tokens,
                config.max_tokens,
                self.pricing.prices,
            )
        )

    async def _chat_response(self, job: AIJob) -> JobResult:
        payload = job.payload
        config = await self._resolve_config(job)
        messages = [
            ChatMessage(role="system", content=config.system_prompt or DEFAULT_SYSTEM_PROMPT),
            *payload.context,
            ChatMessage(role="user", content=payload.content),
        ]
        self._preflight(job, config, messages)

        provider = self.provider_lookup(config.provider)
        options = GenerateOptions(
            model=config.model,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            stream=payload.stream,
        )
        response = await provider.generate(messages, options)

        usage: Optional[Usage] = None
        if isinstance(response, str):
            text = str(response)
            usage = getattr(response, "usage", None)
        else:
            parts = []
            async for chunk in response:
                if chunk.content:
                    parts.append(chunk.content)
                    if job.conversation_id:
                        await self.channel.publish(
                            StreamEvent(conversation_id=job.conversation_id, content=chunk.content)
                        )
                if chunk.usage is not None:
                    usage = chunk.usage
            text = "".join(parts)

        if usage is None:
            prompt_tokens = sum(estimate_tokens(m.content) for m in messages)
            completion_tokens = estimate_tokens(text)
            usage = Usage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            )

        self._price(job, config, usage)
        if job.conversation_id:
            await self.channel.publish(
                CompleteEvent(conversation_id=job.conversation_id, content=text, usage=usage)
            )
        return JobResult(content=text, usage=TokenUsage(**usage.model_dump()))

    async def _complete(
        self, job: AIJob, config: ModelConfig, instruction: str, content: str
    ) -> tuple[str, TokenUsage]:
        messages = [
            ChatMessage(role="system", content=instruction),
            ChatMessage(role="user", content=content),
        ]
        provider = self.provider_lookup(config.provider)
        response = await provider.generate(
            messages,
            GenerateOptions(
                model=config.model,
                temperature=config.temperature,
                max_tokens=config.max_tokens,
            ),
        )
        usage = getattr(response, "usage", None)
        if usage is None:
            prompt_tokens = estimate_tokens(instruction) + estimate_tokens(content)
            completion_tokens = estimate_tokens(response)
            usage = TokenUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            )
        return str(response).strip(), TokenUsage(**usage.model_dump())

    async def _task(self, job: AIJob) -> JobResult:
        """Sentiment, intent, entity and summarization jobs."""
        config = await self._resolve_config(job)
        instruction = TASK_PROMPTS[job.type]
        self._preflight(job, config, [ChatMessage(role="user", content=job.payload.content)])
        text, usage = await self._complete(job, config, instruction, job.payload.content)
        self._price(job, config, usage)
        return JobResult(content=text, usage=usage)

    async def _batch(self, job: AIJob) -> JobResult:
        payload = job.payload
        config = await self._resolve_config(job)
        self._preflight(job, config, [ChatMessage(role="user", content=payload.content)])

        items = []
        total = TokenUsage()
        for item in payload.items:
            text, usage = await self._complete(job, config, payload.instruction, item)
            items.append(text)
            total.prompt_tokens += usage.prompt_tokens
            total.completion_tokens += usage.completion_tokens
            total.total_tokens += usage.total_tokens

        self._price(job, config, total)
        return JobResult(items=items, usage=total)

    async def _embedding(self, job: AIJob) -> JobResult:
        payload = job.payload
        provider = self.provider_lookup(payload.provider)
        if not provider.supports_embeddings:
            raise provider.unsupported("text embeddings")

        vector = await provider.embed(payload.content)
        tokens = estimate_tokens(payload.content)
        job.metadata.provider = payload.provider
        return JobResult(
            embedding=vector,
            usage=TokenUsage(prompt_tokens=tokens, total_tokens=tokens),
        )

    # Consumer loop

    async def _run_slot(self, job: AIJob, slots: asyncio.Semaphore) -> None:
        try:
            await self.process_job(job)
        except Exception as e:
            # Job state could not be recorded; the visibility timeout will
            # hand it to another consumer.
            logger.error(f"Error finishing job {job.id}: {e}", job_id=job.id, exc_info=True)
        finally:
            slots.release()

    async def run(self) -> None:
        """Claim and run jobs until ``stop()`` is called."""
        slots = asyncio.Semaphore(self.concurrency)
        logger.info(
            f"Worker consuming {self.queue.name}",
            queue=self.queue.name,
            concurrency=self.concurrency,
        )

        while not self._stopping.is_set():
            await slots.acquire()
            if self._stopping.is_set():
                slots.release()
                break

            try:
                job = await self.queue.dequeue()
            except Exception as e:
                slots.release()
                logger.error(f"Error in consumer loop: {e}", exc_info=True)
                await self._idle(1.0)
                continue

            if job is None:
                slots.release()
                await self._idle(self.poll_interval)
                continue

            task = asyncio.create_task(self._run_slot(job, slots))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        if self._tasks:
            logger.info(f"Waiting for {len(self._tasks)} in-flight jobs to finish...")
            await asyncio.gather(*self._tasks)
        logger.info("Worker stopped")

    async def _idle(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def stop(self) -> None:
        self._stopping.set()


async def start_health_server(worker: CompletionWorker):
    """Start a minimal HTTP server for health checks when PORT is set."""
    port_str = os.getenv("PORT")
    if not port_str:
        logger.info("PORT not set, skipping health check server")
        return None

    from aiohttp import web

    async def health_check(request):
        stats = await worker.queue.stats()
        return web.json_response({"status": "ok", "queue": stats.model_dump()})

    app = web.Application()
    app.router.add_get("/health", health_check)
    app.router.add_get("/", health_check)

    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", int(port_str))
    await site.start()

    logger.info("Health check server started", port=int(port_str))
    return runner


async def run_worker() -> None:
    """Run the worker process: message intake plus the completion worker."""
    from chatstream.db.redis_client import close_redis, get_redis
    from chatstream.domain.pricing import load_pricing_config
    from chatstream.llm.factory import close_providers
    from chatstream.queue.backend import QueueName, RedisJobQueue
    from chatstream.queue.producer import MessageIntake
    from chatstream.realtime.channel import RedisBroadcastChannel

    redis = await get_redis()
    queue = RedisJobQueue.from_settings(redis, QueueName.AI_PROCESSING.value)
    channel = RedisBroadcastChannel(redis, settings.broadcast_channel)
    platform = PlatformClient()
    worker = CompletionWorker(
        queue=queue,
        channel=channel,
        platform=platform,
        usage_store=UsageCounterStore(redis, settings.queue_prefix),
        limits=RateLimits.from_settings(),
        pricing=load_pricing_config(),
        concurrency=settings.worker_concurrency,
        poll_interval=settings.block_time_ms / 1000,
    )
    intake = MessageIntake(channel, queue)

    def handle_signal(signum: int) -> None:
        logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        worker.stop()

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, handle_signal, signum)

    health_runner = await start_health_server(worker)
    await intake.start()
    intake_task = asyncio.create_task(intake.run())

    logger.info("Completion worker starting...")
    try:
        await worker.run()
    finally:
        intake_task.cancel()
        try:
            await intake_task
        except asyncio.CancelledError:
            pass
        if health_runner:
            await health_runner.cleanup()
        await platform.close()
        await close_providers()
        await close_redis()
        logger.info("Worker shutdown complete")
