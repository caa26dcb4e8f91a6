"""
Watchdog for running jobs whose worker went silent.

Workers heartbeat through ``JobManager.touch_job``. A running job whose last
heartbeat (or start, if it never sent one) is older than the threshold is
closed as TERMINATED through the job manager, so its retry policy and the
cancellation of its dependents apply exactly as for a worker-reported failure.
"""

import logging
import signal
import time
from collections.abc import Callable, Generator
from contextlib import contextmanager
from datetime import timedelta
from typing import Any

from sqlalchemy.orm import Session

from jobqueue.config import get_settings
from jobqueue.constants import SPAN_WATCHDOG_RUN, JobState
from jobqueue.db.connection import close_db, get_engine, get_session_context, init_db
from jobqueue.db.models import Job
from jobqueue.manager.events import EventSink
from jobqueue.manager.job_manager import JobManager
from jobqueue.observability.logging import bind_job_context, clear_context, setup_logging
from jobqueue.observability.metrics import MetricsCollector, get_metrics, setup_metrics
from jobqueue.observability.tracing import get_tracer, instrument_sqlalchemy, setup_tracing
from jobqueue.retry.policy import RetryPolicy
from jobqueue.utils import as_utc, utcnow

logger = logging.getLogger(__name__)


class Watchdog:
    """
    Terminates running jobs with a stale heartbeat.

    Runs periodically to:
    1. Find RUNNING jobs not heard from within ``stale_after_seconds``
    2. Close them as TERMINATED (retries and cascades apply)
    3. Refresh the per-state job gauge
    """

    def __init__(
        self,
        interval_seconds: int | None = None,
        stale_after_seconds: int | None = None,
        session_factory: Callable[[], Session] | None = None,
        retry_policy: RetryPolicy | None = None,
        event_sink: EventSink | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the watchdog.

        Args:
            interval_seconds: Seconds between runs.
            stale_after_seconds: Heartbeat age after which a job is terminated.
            session_factory: Session factory. Defaults to the one set up by
                ``init_db``.
            retry_policy: Passed to the job manager.
            event_sink: Passed to the job manager.
            metrics: Metrics collector. Defaults to the process collector.
        """
        settings = get_settings()
        self.interval = interval_seconds or settings.watchdog_interval_seconds
        self.stale_after = stale_after_seconds or settings.watchdog_stale_after_seconds
        self._session_factory = session_factory
        self._retry_policy = retry_policy
        self._event_sink = event_sink
        self._metrics = metrics or get_metrics()
        self._tracer = get_tracer()
        self._running = False

    @contextmanager
    def _session_scope(self) -> Generator[Session]:
        if self._session_factory is None:
            with get_session_context() as session:
                yield session
            return

        with self._session_factory() as session:
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise

    def start(self) -> None:
        """Start the watchdog loop."""
        logger.info(
            "Watchdog starting",
            extra={"interval": self.interval, "stale_after": self.stale_after},
        )
        self._running = True

        while self._running:
            try:
                terminated = self.run_once()
                if terminated > 0:
                    logger.info(
                        "Terminated stale jobs",
                        extra={"count": terminated},
                    )
            except Exception:
                logger.exception("Error in watchdog loop")

            self._sleep()

        logger.info("Watchdog stopped")

    def _sleep(self) -> None:
        # Wake up every second so stop() takes effect promptly
        deadline = time.monotonic() + self.interval
        while self._running and time.monotonic() < deadline:
            time.sleep(min(1.0, max(0.0, deadline - time.monotonic())))

    def stop(self) -> None:
        """Stop the watchdog after the current run."""
        logger.info("Watchdog stopping")
        self._running = False

    def _terminate(self, manager: JobManager, job: Job) -> None:
        last_seen = job.checked_at or job.started_at
        logger.warning(
            "Terminating job with stale heartbeat",
            extra={
                "worker_name": job.worker_name,
                "last_seen": as_utc(last_seen).isoformat() if last_seen else None,
            },
        )
        job.add_error_output(
            f"Terminated by watchdog: no heartbeat from {job.worker_name or 'unknown worker'} "
            f"within {self.stale_after} seconds.\n"
        )
        manager.close_job(job, JobState.TERMINATED)

    def run_once(self) -> int:
        """
        Run the watchdog once (for testing or cron-style execution).

        Returns:
            Number of jobs terminated.
        """
        cutoff = utcnow() - timedelta(seconds=self.stale_after)

        with self._tracer.start_as_current_span(SPAN_WATCHDOG_RUN) as span:
            with self._session_scope() as session:
                manager = JobManager(
                    session,
                    retry_policy=self._retry_policy,
                    event_sink=self._event_sink,
                    metrics=self._metrics,
                )

                stale_jobs = manager.repository.find_stale_running_jobs(cutoff)
                for job in stale_jobs:
                    bind_job_context(job)
                    try:
                        self._terminate(manager, job)
                    finally:
                        clear_context()

                self._metrics.update_jobs_by_state(manager.repository.get_job_stats())

            span.set_attribute("jobqueue.terminated", len(stale_jobs))

        if stale_jobs:
            self._metrics.record_stale_terminated(len(stale_jobs))
        return len(stale_jobs)


def _install_signal_handlers(watchdog: Watchdog) -> None:
    def _handle(signum: int, frame: Any) -> None:
        logger.info("Received signal", extra={"signal": signum})
        watchdog.stop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        signal.signal(sig, _handle)


def run() -> None:
    """Run the watchdog."""
    setup_logging()
    setup_metrics()
    setup_tracing()
    init_db()
    instrument_sqlalchemy(get_engine())

    watchdog = Watchdog()
    _install_signal_handlers(watchdog)

    try:
        watchdog.start()
    finally:
        close_db()


if __name__ == "__main__":
    run()
