"""
Prometheus metrics collection.
"""

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
)

from jobqueue.constants import (
    METRIC_CLAIM_CONFLICTS,
    METRIC_JOB_DURATION,
    METRIC_JOB_RETRIES,
    METRIC_JOBS_BY_STATE,
    METRIC_JOBS_CASCADE_CANCELED,
    METRIC_JOBS_CLAIMED,
    METRIC_JOBS_CLOSED,
    METRIC_JOBS_CREATED,
    METRIC_STALE_JOBS_TERMINATED,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the job queue.

    Collects metrics for:
    - Job creation, claims and closures
    - Retries and cascading cancellations
    - Claim races lost to other workers
    - Stale jobs terminated by the watchdog
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.jobs_created = Counter(
            METRIC_JOBS_CREATED,
            "Total number of jobs persisted by producers",
            ["queue"],
            registry=self._registry,
        )

        self.jobs_claimed = Counter(
            METRIC_JOBS_CLAIMED,
            "Total number of jobs claimed by workers",
            ["worker_name"],
            registry=self._registry,
        )

        self.jobs_closed = Counter(
            METRIC_JOBS_CLOSED,
            "Total number of jobs closed, by final state",
            ["queue", "state"],
            registry=self._registry,
        )

        self.job_retries = Counter(
            METRIC_JOB_RETRIES,
            "Total number of retry attempts spawned",
            ["queue"],
            registry=self._registry,
        )

        self.cascade_canceled = Counter(
            METRIC_JOBS_CASCADE_CANCELED,
            "Total number of pending jobs canceled because a dependency failed",
            ["queue"],
            registry=self._registry,
        )

        self.claim_conflicts = Counter(
            METRIC_CLAIM_CONFLICTS,
            "Total number of claims lost to a concurrent worker",
            ["worker_name"],
            registry=self._registry,
        )

        self.stale_jobs_terminated = Counter(
            METRIC_STALE_JOBS_TERMINATED,
            "Total number of running jobs terminated for a stale heartbeat",
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Time between claim and close in seconds",
            ["queue", "state"],
            buckets=(0.1, 0.5, 1.0, 5.0, 30.0, 60.0, 300.0, 900.0, 3600.0),
            registry=self._registry,
        )

        self.jobs_by_state = Gauge(
            METRIC_JOBS_BY_STATE,
            "Number of jobs per state",
            ["state"],
            registry=self._registry,
        )

    def record_job_created(self, queue: str) -> None:
        """Record a job persisted by a producer."""
        self.jobs_created.labels(queue=queue).inc()

    def record_job_claimed(self, worker_name: str) -> None:
        """Record a successful claim."""
        self.jobs_claimed.labels(worker_name=worker_name).inc()

    def record_claim_conflict(self, worker_name: str) -> None:
        """Record a claim lost to another worker."""
        self.claim_conflicts.labels(worker_name=worker_name).inc()

    def record_job_closed(
        self,
        queue: str,
        state: str,
        duration_seconds: float | None = None,
    ) -> None:
        """Record a job reaching a final state."""
        self.jobs_closed.labels(queue=queue, state=state).inc()
        if duration_seconds is not None:
            self.job_duration.labels(queue=queue, state=state).observe(
                duration_seconds
            )

    def record_retry(self, queue: str) -> None:
        """Record a retry attempt."""
        self.job_retries.labels(queue=queue).inc()

    def record_cascade_canceled(self, queue: str) -> None:
        """Record a dependent canceled by the cascade."""
        self.cascade_canceled.labels(queue=queue).inc()

    def record_stale_terminated(self, count: int = 1) -> None:
        """Record jobs terminated by the watchdog."""
        self.stale_jobs_terminated.inc(count)

    def update_jobs_by_state(self, stats: dict[str, int]) -> None:
        """Update the per-state gauge from a state -> count mapping."""
        for state, count in stats.items():
            self.jobs_by_state.labels(state=state).set(count)


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
