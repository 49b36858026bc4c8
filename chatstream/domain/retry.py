"""Retry policy for failed AI jobs."""

import random

from chatstream.models.job import MAX_RETRIES, AIJob, JobStatus

BASE_DELAY_MS = 1000
MAX_JITTER_MS = 1000
MAX_DELAY_MS = 60_000


def should_retry(job: AIJob) -> bool:
    """True for a failed job whose error is retryable and which has retries left."""
    if job.status != JobStatus.FAILED or job.error is None:
        return False
    if not job.error.retryable:
        return False
    return job.metadata.retry_count < MAX_RETRIES


def next_delay(
    attempt: int,
    base_ms: int = BASE_DELAY_MS,
    rng: random.Random | None = None,
) -> int:
    """
    Backoff before retry number ``attempt`` (1-based), in milliseconds.

    Exponential growth plus up to a second of jitter so tenants sharing a
    provider do not retry in lockstep; never more than a minute.
    """
    rng = rng or random
    exponential = base_ms * 2 ** (max(attempt, 1) - 1)
    jitter = rng.random() * MAX_JITTER_MS
    return int(min(exponential + jitter, MAX_DELAY_MS))
