"""Durable letter generation job queue helpers (Redis/RQ)."""

from __future__ import annotations

from redis import Redis
from rq import Queue
from rq.job import Job

from config import settings


GENERATION_QUEUE_NAME = "letter_generation"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def _job_timeout() -> int:
    return max(int(settings.GENERATION_TIMEOUT_SECONDS) * 2, 60)


def get_generation_queue() -> Queue:
    """Return the configured letter generation queue."""
    return Queue(
        name=GENERATION_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=_job_timeout(),
    )


def enqueue_letter_generation_job(letter_id: str, attempt_key: str) -> Job:
    """
    Enqueue draft generation for a letter already in `generating`.

    One job per generating attempt and no RQ-level retry: a failed attempt
    fails the letter and releases its allowance. Interrupted workers are
    covered by the stale generation sweep.
    """
    queue = get_generation_queue()
    return queue.enqueue(
        "services.admission.process_letter_generation_job",
        letter_id,
        job_id=f"letter:{letter_id}:{attempt_key}",
        job_timeout=_job_timeout(),
        result_ttl=86400,
        failure_ttl=86400,
    )
