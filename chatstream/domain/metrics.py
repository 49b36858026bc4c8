"""Usage metrics and response cache keys."""

import hashlib
from datetime import datetime
from typing import Iterable

from pydantic import BaseModel

from chatstream.models.job import AIJob


class UsageTotals(BaseModel):
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    total_tokens: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    total_cost: float = 0.0
    average_latency: float = 0.0
    cache_hit_rate: float = 0.0


class UsageMetrics(BaseModel):
    """Aggregate usage for one tenant/provider/model over a period."""

    tenant_id: str
    provider: str
    model: str
    period: datetime
    metrics: UsageTotals


def aggregate_usage_metrics(periods: Iterable[UsageMetrics]) -> UsageTotals:
    """
    Merge several periods into one set of totals.

    Averages are weighted by each period's request count: a quiet period
    must not pull the latency of a busy one towards its own.
    """
    totals = UsageTotals()
    weighted_latency = 0.0
    weighted_hits = 0.0

    for period in periods:
        m = period.metrics
        totals.total_requests += m.total_requests
        totals.successful_requests += m.successful_requests
        totals.failed_requests += m.failed_requests
        totals.total_tokens += m.total_tokens
        totals.input_tokens += m.input_tokens
        totals.output_tokens += m.output_tokens
        totals.total_cost += m.total_cost
        weighted_latency += m.average_latency * m.total_requests
        weighted_hits += m.cache_hit_rate * m.total_requests

    if totals.total_requests > 0:
        totals.average_latency = weighted_latency / totals.total_requests
        totals.cache_hit_rate = weighted_hits / totals.total_requests

    return totals


def cache_key(job: AIJob) -> str:
    """Cache key for a job's response: tenant, type, model settings, content."""
    config = getattr(job.payload, "chatbot_config", None)
    config_key = f"{config.model}_{config.temperature}" if config else "default"
    content = getattr(job.payload, "content", "")
    digest = hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]
    return f"ai_cache:{job.tenant_id}:{job.type.value}:{config_key}:{digest}"
