"""Per-tenant rate and cost limits."""

import math
import time
from datetime import UTC, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field
from redis.asyncio import Redis

from chatstream.core.errors import RateLimitError
from chatstream.core.logging import get_logger

logger = get_logger(__name__)

MINUTE_WINDOW = 60
DAY_WINDOW = 86_400


class RateLimits(BaseModel):
    """Configured ceilings for one tenant."""

    requests_per_minute: int = Field(default=60, gt=0)
    tokens_per_minute: int = Field(default=40000, gt=0)
    cost_per_day: float = Field(default=10.0, ge=0)

    @classmethod
    def from_settings(cls) -> "RateLimits":
        from chatstream.core.config import settings

        return cls(
            requests_per_minute=settings.requests_per_minute,
            tokens_per_minute=settings.tokens_per_minute,
            cost_per_day=settings.cost_per_day,
        )


class RateLimitWindow(BaseModel):
    """Rolling usage counters; meaningless once ``reset_at`` has passed."""

    requests: int = 0
    tokens: int = 0
    cost: float = 0.0
    reset_at: datetime


def check_rate_limit(
    current_usage: Optional[RateLimitWindow],
    limits: RateLimits,
    now: datetime | None = None,
) -> None:
    """
    Reject a job whose tenant is over a ceiling.

    Checks run in a fixed order and the first violation wins: request rate
    and token rate (both recover within the window, so they carry a wait
    hint), then daily cost (no hint, the caller waits for the day to roll).

    Raises:
        RateLimitError: If any ceiling is reached
    """
    if current_usage is None:
        return

    now = now or datetime.now(UTC)
    reset_at = current_usage.reset_at
    if now > reset_at:
        return

    wait_time = math.ceil((reset_at - now).total_seconds())

    if current_usage.requests >= limits.requests_per_minute:
        raise RateLimitError(
            "AI API request rate limit exceeded",
            retry_after=wait_time,
            context={"current": current_usage.requests, "limit": limits.requests_per_minute},
        )

    if current_usage.tokens >= limits.tokens_per_minute:
        raise RateLimitError(
            "AI API token rate limit exceeded",
            retry_after=wait_time,
            context={"current": current_usage.tokens, "limit": limits.tokens_per_minute},
        )

    if current_usage.cost >= limits.cost_per_day:
        raise RateLimitError(
            "Daily AI API cost limit exceeded",
            context={"current": current_usage.cost, "limit": limits.cost_per_day},
        )


class UsageCounterStore:
    """
    Redis-backed usage counters.

    Fixed windows: one hash per tenant per minute for requests/tokens and one
    key per tenant per UTC day for cost. Old windows are never cleared, they
    just stop being read and expire via TTL.

    Reads and increments are separate round trips with no lock, so limits
    are soft: concurrent jobs can overshoot by at most the number in flight.
    """

    def __init__(self, redis: Redis, prefix: str = "chatstream"):
        self.redis = redis
        self.prefix = prefix

    def _minute_key(self, tenant_id: str, epoch: float) -> str:
        return f"{self.prefix}:rl:{tenant_id}:m:{int(epoch // MINUTE_WINDOW)}"

    def _day_key(self, tenant_id: str, epoch: float) -> str:
        return f"{self.prefix}:rl:{tenant_id}:d:{int(epoch // DAY_WINDOW)}"

    async def get_window(self, tenant_id: str, now: float | None = None) -> RateLimitWindow:
        """Current counters for a tenant."""
        now = now or time.time()
        requests, tokens = await self.redis.hmget(
            self._minute_key(tenant_id, now), "requests", "tokens"
        )
        cost = await self.redis.get(self._day_key(tenant_id, now))
        reset_epoch = (int(now // MINUTE_WINDOW) + 1) * MINUTE_WINDOW
        return RateLimitWindow(
            requests=int(requests or 0),
            tokens=int(tokens or 0),
            cost=float(cost or 0),
            reset_at=datetime.fromtimestamp(reset_epoch, UTC),
        )

    async def record(
        self,
        tenant_id: str,
        tokens: int,
        cost: Decimal | float,
        now: float | None = None,
    ) -> None:
        """Add one successful attempt's usage to the tenant's windows."""
        now = now or time.time()
        minute_key = self._minute_key(tenant_id, now)
        day_key = self._day_key(tenant_id, now)

        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.hincrby(minute_key, "requests", 1)
            pipe.hincrby(minute_key, "tokens", int(tokens))
            pipe.expire(minute_key, MINUTE_WINDOW * 2)
            pipe.incrbyfloat(day_key, float(cost))
            pipe.expire(day_key, DAY_WINDOW * 2)
            await pipe.execute()

        logger.debug(
            "Recorded usage",
            tenant_id=tenant_id,
            tokens=tokens,
            cost=float(cost),
        )
