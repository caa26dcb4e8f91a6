"""
Retry policies.

A policy turns a failed attempt into the next attempt of its retry chain.
The attempt index is the number of retries the root already owns, so the
schedule is deterministic for a given chain.

Backoff calculation (ExponentialRetryPolicy):
    delay = base ** attempt_index
    Example with base 5: 1s -> 5s -> 25s -> 125s
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta

from jobqueue.constants import DEFAULT_RETRY_BACKOFF_BASE
from jobqueue.db.models import Job
from jobqueue.utils import utcnow

logger = logging.getLogger(__name__)


class RetryPolicy(ABC):
    """
    Base class for retry policies.

    Subclasses only decide *when* the next attempt may run; the attempt
    itself always copies the root's command, args, queue, priority and
    retry budget, and never copies dependencies or related entities.
    """

    def next_attempt(self, failed_job: Job) -> Job:
        """
        Build the next attempt for the chain ``failed_job`` belongs to.

        Args:
            failed_job: The root or any attempt of the chain.

        Returns:
            A new pending, unpersisted Job. The caller attaches it to the root.
        """
        root = failed_job.original_job
        attempt_index = len(root.retry_jobs)

        retry_job = Job(
            root.command,
            root.args,
            queue=root.queue,
            priority=root.priority,
            max_retries=root.max_retries,
        )
        retry_job.execute_after = self.schedule_next_retry(root)

        logger.debug(
            "Prepared retry attempt",
            extra={
                "job_id": root.id,
                "attempt": attempt_index + 1,
                "execute_after": (
                    retry_job.execute_after.isoformat() if retry_job.execute_after else None
                ),
            },
        )
        return retry_job

    @abstractmethod
    def schedule_next_retry(self, original_job: Job) -> datetime | None:
        """
        Get the earliest time the next attempt may run.

        Args:
            original_job: Root of the retry chain.

        Returns:
            A not-before time, or None to run as soon as a worker polls.
        """


class ExponentialRetryPolicy(RetryPolicy):
    """Wait ``base ** attempt_index`` seconds before each retry."""

    def __init__(self, base: int = DEFAULT_RETRY_BACKOFF_BASE):
        if base < 1:
            raise ValueError("base must be at least 1")
        self.base = base

    def delay_for(self, attempt_index: int) -> timedelta:
        return timedelta(seconds=self.base ** attempt_index)

    def schedule_next_retry(self, original_job: Job) -> datetime | None:
        return utcnow() + self.delay_for(len(original_job.retry_jobs))


class ImmediateRetryPolicy(RetryPolicy):
    """Make every retry available on the next poll."""

    def schedule_next_retry(self, original_job: Job) -> datetime | None:
        return None
