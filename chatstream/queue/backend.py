"""Prioritised job queues: Redis for deployments, in-memory for tests."""

import heapq
import itertools
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable

from pydantic import BaseModel
from redis.asyncio import Redis

from chatstream.core.logging import get_logger
from chatstream.models.job import AIJob

logger = get_logger(__name__)

# Pending score = priority * PRIORITY_SCALE - sequence, so ZPOPMAX serves the
# highest priority first and the oldest job within a priority.
PRIORITY_SCALE = 10**12

# How long an enqueued job id blocks duplicates of itself
DEDUPE_TTL_SECONDS = 3600


class QueueName(str, Enum):
    AI_PROCESSING = "ai-processing"
    ANALYTICS = "analytics"
    TENANT_PROVISIONING = "tenant-provisioning"


class QueueStats(BaseModel):
    name: str
    pending: int = 0
    delayed: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0


class JobQueue(ABC):
    """
    A durable, prioritised, multi-consumer queue of AI jobs.

    Each job is handed to exactly one consumer. A claimed job that is not
    acknowledged before the visibility timeout returns to the pending set,
    which is how jobs owned by a crashed worker are recovered.
    """

    def __init__(self, name: str, keep_completed: int = 100, keep_failed: int = 500):
        self.name = name
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed

    @abstractmethod
    async def enqueue(self, job: AIJob, delay_ms: int = 0) -> str:
        """Add (or re-add) a job; it becomes eligible after ``delay_ms``."""

    async def enqueue_once(self, job: AIJob, ttl_seconds: int = DEDUPE_TTL_SECONDS) -> bool:
        """
        Enqueue a job unless one with the same id was enqueued within
        ``ttl_seconds``. Several consumers may offer the same job; exactly
        one of them wins.

        Returns:
            True if this call enqueued the job
        """
        if not await self._mark_seen(job.id, ttl_seconds):
            logger.info(f"Skipping duplicate job {job.id}", job_id=job.id, queue=self.name)
            return False
        await self.enqueue(job)
        return True

    @abstractmethod
    async def _mark_seen(self, job_id: str, ttl_seconds: int) -> bool:
        """Atomically record ``job_id``; False if it was already recorded."""

    @abstractmethod
    async def dequeue(self) -> AIJob | None:
        """Claim the next eligible job, or None when there is nothing to do."""

    @abstractmethod
    async def ack_completed(self, job: AIJob) -> None:
        """Release a claimed job into the retained completed list."""

    @abstractmethod
    async def ack_failed(self, job: AIJob) -> None:
        """Release a claimed job into the retained failed list."""

    @abstractmethod
    async def stats(self) -> QueueStats:
        ...

    @abstractmethod
    async def recent(self, kind: str, limit: int = 20) -> list[AIJob]:
        """Most recent retained jobs of ``kind`` ("completed" or "failed")."""

    async def close(self) -> None:
        pass


_CLAIM_SCRIPT = """
local now = tonumber(ARGV[1])
local function requeue(source)
    local ids = redis.call('ZRANGEBYSCORE', source, '-inf', now)
    for _, id in ipairs(ids) do
        redis.call('ZREM', source, id)
        local score = redis.call('HGET', KEYS[4], id)
        if score then
            redis.call('ZADD', KEYS[1], score, id)
        end
    end
end
requeue(KEYS[2])
requeue(KEYS[3])
while true do
    local popped = redis.call('ZPOPMAX', KEYS[1])
    if #popped == 0 then
        return nil
    end
    local id = popped[1]
    local data = redis.call('HGET', KEYS[5], id)
    if data then
        redis.call('ZADD', KEYS[3], now + tonumber(ARGV[2]), id)
        return {id, data}
    end
end
"""


class RedisJobQueue(JobQueue):
    """
    Queue stored in Redis.

    Keys under ``{prefix}:{name}``: ``jobs`` (hash id -> job JSON),
    ``score`` (hash id -> pending score), ``pending`` (zset by score),
    ``delayed`` (zset by ready time), ``active`` (zset by visibility
    deadline), ``completed``/``failed`` (capped lists of job JSON) and a
    ``seq`` counter, plus one ``seen:{id}`` guard key per job offered through
    ``enqueue_once``. Claiming runs as one Lua script so two consumers can
    never receive the same job.
    """

    def __init__(
        self,
        redis: Redis,
        name: str,
        prefix: str = "chatstream",
        visibility_timeout_ms: int = 120_000,
        keep_completed: int = 100,
        keep_failed: int = 500,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(name, keep_completed, keep_failed)
        self.redis = redis
        self.visibility_timeout_ms = visibility_timeout_ms
        self.clock = clock
        base = f"{prefix}:{name}"
        self.keys = {
            part: f"{base}:{part}"
            for part in (
                "jobs", "score", "pending", "delayed", "active", "completed", "failed", "seq", "seen"
            )
        }
        self._claim = redis.register_script(_CLAIM_SCRIPT)

    @classmethod
    def from_settings(cls, redis: Redis, name: str) -> "RedisJobQueue":
        from chatstream.core.config import settings

        return cls(
            redis,
            name,
            prefix=settings.queue_prefix,
            visibility_timeout_ms=settings.visibility_timeout_seconds * 1000,
            keep_completed=settings.keep_completed,
            keep_failed=settings.keep_failed,
        )

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    async def enqueue(self, job: AIJob, delay_ms: int = 0) -> str:
        seq = await self.redis.incr(self.keys["seq"])
        score = job.priority * PRIORITY_SCALE - seq

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(self.keys["jobs"], job.id, job.model_dump_json())
            pipe.hset(self.keys["score"], job.id, score)
            pipe.zrem(self.keys["active"], job.id)
            if delay_ms > 0:
                pipe.zadd(self.keys["delayed"], {job.id: self._now_ms() + delay_ms})
            else:
                pipe.zadd(self.keys["pending"], {job.id: score})
            await pipe.execute()

        logger.info(
            f"Enqueued job {job.id} on {self.name}",
            job_id=job.id,
            job_type=job.type.value,
            priority=job.priority,
            delay_ms=delay_ms,
        )
        return job.id

    async def _mark_seen(self, job_id: str, ttl_seconds: int) -> bool:
        added = await self.redis.set(f"{self.keys['seen']}:{job_id}", 1, nx=True, ex=ttl_seconds)
        return bool(added)

    async def dequeue(self) -> AIJob | None:
        keys = [self.keys[k] for k in ("pending", "delayed", "active", "score", "jobs")]
        claimed = await self._claim(keys=keys, args=[self._now_ms(), self.visibility_timeout_ms])
        if not claimed:
            return None
        _, data = claimed
        return AIJob.model_validate_json(data)

    async def _release(self, job: AIJob, kind: str, keep: int) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self.keys["active"], job.id)
            pipe.hdel(self.keys["jobs"], job.id)
            pipe.hdel(self.keys["score"], job.id)
            pipe.lpush(self.keys[kind], job.model_dump_json())
            pipe.ltrim(self.keys[kind], 0, keep - 1)
            await pipe.execute()

    async def ack_completed(self, job: AIJob) -> None:
        await self._release(job, "completed", self.keep_completed)

    async def ack_failed(self, job: AIJob) -> None:
        await self._release(job, "failed", self.keep_failed)

    async def stats(self) -> QueueStats:
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.zcard(self.keys["pending"])
            pipe.zcard(self.keys["delayed"])
            pipe.zcard(self.keys["active"])
            pipe.llen(self.keys["completed"])
            pipe.llen(self.keys["failed"])
            pending, delayed, active, completed, failed = await pipe.execute()
        return QueueStats(
            name=self.name,
            pending=pending,
            delayed=delayed,
            active=active,
            completed=completed,
            failed=failed,
        )

    async def recent(self, kind: str, limit: int = 20) -> list[AIJob]:
        if kind not in ("completed", "failed"):
            raise ValueError(f"Unknown job list: {kind}")
        raw = await self.redis.lrange(self.keys[kind], 0, limit - 1)
        return [AIJob.model_validate_json(item) for item in raw]


class InMemoryJobQueue(JobQueue):
    """Single-process queue with the same ordering and recovery rules."""

    def __init__(
        self,
        name: str = QueueName.AI_PROCESSING.value,
        visibility_timeout_ms: int = 120_000,
        keep_completed: int = 100,
        keep_failed: int = 500,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(name, keep_completed, keep_failed)
        self.visibility_timeout_ms = visibility_timeout_ms
        self.clock = clock
        self._seq = itertools.count()
        self._jobs: dict[str, str] = {}
        self._keys: dict[str, tuple[int, int]] = {}
        self._pending: list[tuple[int, int, str]] = []
        self._delayed: dict[str, float] = {}
        self._active: dict[str, float] = {}
        self._completed: list[str] = []
        self._failed: list[str] = []
        self._seen: dict[str, float] = {}

    def _push(self, job_id: str) -> None:
        priority, seq = self._keys[job_id]
        heapq.heappush(self._pending, (-priority, seq, job_id))

    def _requeue_due(self, now: float) -> None:
        for source in (self._delayed, self._active):
            for job_id, ready in list(source.items()):
                if ready <= now:
                    del source[job_id]
                    self._push(job_id)

    async def enqueue(self, job: AIJob, delay_ms: int = 0) -> str:
        self._jobs[job.id] = job.model_dump_json()
        self._keys[job.id] = (job.priority, next(self._seq))
        self._active.pop(job.id, None)
        if delay_ms > 0:
            self._delayed[job.id] = self.clock() + delay_ms / 1000
        else:
            self._push(job.id)
        return job.id

    async def _mark_seen(self, job_id: str, ttl_seconds: int) -> bool:
        now = self.clock()
        expires = self._seen.get(job_id)
        if expires is not None and expires > now:
            return False
        self._seen[job_id] = now + ttl_seconds
        return True

    async def dequeue(self) -> AIJob | None:
        now = self.clock()
        self._requeue_due(now)
        while self._pending:
            _, _, job_id = heapq.heappop(self._pending)
            data = self._jobs.get(job_id)
            if data is None or job_id in self._active or job_id in self._delayed:
                continue
            self._active[job_id] = now + self.visibility_timeout_ms / 1000
            return AIJob.model_validate_json(data)
        return None

    def _release(self, job: AIJob, retained: list[str], keep: int) -> None:
        self._active.pop(job.id, None)
        self._jobs.pop(job.id, None)
        self._keys.pop(job.id, None)
        retained.insert(0, job.model_dump_json())
        del retained[keep:]

    async def ack_completed(self, job: AIJob) -> None:
        self._release(job, self._completed, self.keep_completed)

    async def ack_failed(self, job: AIJob) -> None:
        self._release(job, self._failed, self.keep_failed)

    async def stats(self) -> QueueStats:
        pending = {job_id for _, _, job_id in self._pending if job_id in self._jobs}
        return QueueStats(
            name=self.name,
            pending=len(pending - self._active.keys() - self._delayed.keys()),
            delayed=len(self._delayed),
            active=len(self._active),
            completed=len(self._completed),
            failed=len(self._failed),
        )

    async def recent(self, kind: str, limit: int = 20) -> list[AIJob]:
        if kind == "completed":
            retained = self._completed
        elif kind == "failed":
            retained = self._failed
        else:
            raise ValueError(f"Unknown job list: {kind}")
        return [AIJob.model_validate_json(item) for item in retained[:limit]]
