"""
Job manager.

The scheduling and completion core of the queue:
- Lookups used by producers (get-or-create, related entities)
- ``find_startable_job``: the worker poll, skipping jobs whose dependencies
  have not finished and claiming the first startable one atomically
- ``close_job``: finalizes a job, applies the retry policy and cancels
  pending dependents of jobs that can no longer succeed

The manager works on a caller-owned ``Session``; it flushes but never
commits, so the caller decides the transaction boundary.
"""

import logging
from collections.abc import Callable, Collection, Generator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import Session

from jobqueue.config import get_settings
from jobqueue.constants import (
    FINAL_STATES,
    OPEN_STATES,
    RETRY_TRIGGER_STATES,
    SPAN_CLOSE_JOB,
    SPAN_FIND_STARTABLE_JOB,
    JobState,
)
from jobqueue.db.models import Job
from jobqueue.db.repository import JobRepository
from jobqueue.exceptions import (
    ConcurrencyConflictError,
    JobNotFoundError,
    LogicViolationError,
    StoreUnavailableError,
)
from jobqueue.graph import blocking_dependencies, dead_dependencies
from jobqueue.manager.events import EventSink, LoggingEventSink
from jobqueue.observability.metrics import MetricsCollector, get_metrics
from jobqueue.observability.tracing import get_tracer
from jobqueue.retry.policy import ExponentialRetryPolicy, RetryPolicy
from jobqueue.types.events import StateChangeEvent
from jobqueue.types.job import RelatedEntityRef, StartableSearch
from jobqueue.utils import as_utc

logger = logging.getLogger(__name__)


@dataclass
class _Closure:
    """Bookkeeping for one ``close_job`` call."""

    visited: set[int] = field(default_factory=set)
    events: list[StateChangeEvent] = field(default_factory=list)
    after_commit: list[Callable[[], None]] = field(default_factory=list)


class JobManager:
    """
    Scheduler and completion logic over a ``JobRepository``.

    Args:
        session: Session owned by the caller (one per worker process).
        retry_policy: Builds retry attempts. Defaults to exponential backoff
            with ``Settings.retry_backoff_base``.
        event_sink: Receives state-change events after each closure.
        metrics: Metrics collector. Defaults to the process collector.
    """

    def __init__(
        self,
        session: Session,
        retry_policy: RetryPolicy | None = None,
        event_sink: EventSink | None = None,
        metrics: MetricsCollector | None = None,
    ):
        settings = get_settings()
        self._session = session
        self._repo = JobRepository(session)
        self._retry_policy = retry_policy or ExponentialRetryPolicy(
            settings.retry_backoff_base
        )
        self._default_queue = settings.default_queue
        self._default_max_retries = settings.default_max_retries
        self._event_sink = event_sink or LoggingEventSink()
        self._metrics = metrics or get_metrics()
        self._tracer = get_tracer()

    @property
    def session(self) -> Session:
        return self._session

    @property
    def repository(self) -> JobRepository:
        return self._repo

    @contextmanager
    def _store_errors(self) -> Generator[None]:
        try:
            yield
        except (OperationalError, InterfaceError) as exc:
            logger.error("Job store unavailable", extra={"error": str(exc)})
            raise StoreUnavailableError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    def add_job(self, job: Job) -> Job:
        """
        Persist a new job together with any new dependencies it references.

        Args:
            job: The job to persist.

        Returns:
            The persisted job, with its id assigned.
        """
        with self._store_errors():
            self._session.add(job)
            self._session.flush()

        self._metrics.record_job_created(job.queue)
        logger.info(
            "Added job",
            extra={"job_id": job.id, "command": job.command, "queue": job.queue},
        )
        return job

    def get_job_by_id(self, job_id: int) -> Job | None:
        with self._store_errors():
            return self._repo.get_job(job_id)

    def get_job(self, command: str, args: Sequence[str] | None = None) -> Job:
        """
        Get the first job created for an exact (command, args) pair.

        Raises:
            JobNotFoundError: If no such job exists.
        """
        args = list(args or [])
        with self._store_errors():
            self._session.flush()
            job = self._repo.find_job(command, args)

        if job is None:
            raise JobNotFoundError(command, args)
        return job

    def get_or_create_if_not_exists(
        self,
        command: str,
        args: Sequence[str] | None = None,
    ) -> Job:
        """
        Get the job for (command, args), creating it when there is none.

        Concurrent callers race on the unique idempotency key; the loser
        gets the winner's job.

        Returns:
            The existing or newly created job.
        """
        args = list(args or [])
        with self._store_errors():
            self._session.flush()
            job = self._repo.find_job(command, args)
            if job is not None:
                return job

            job, created = self._repo.insert_unique(
                Job(
                    command,
                    args,
                    queue=self._default_queue,
                    max_retries=self._default_max_retries,
                )
            )

        if created:
            self._metrics.record_job_created(job.queue)
        return job

    def find_job_for_related_entity(self, command: str, entity: Any) -> Job | None:
        """
        Get the most recent job for ``command`` tagged with ``entity``.

        Args:
            command: The command.
            entity: Anything ``RelatedEntityRef.from_object`` accepts.

        Returns:
            The newest matching job, or None.
        """
        ref = RelatedEntityRef.from_object(entity)
        with self._store_errors():
            self._session.flush()
            return self._repo.find_job_for_related_entity(command, ref)

    def find_open_job_for_related_entity(self, command: str, entity: Any) -> Job | None:
        """Like ``find_job_for_related_entity``, limited to pending and running jobs."""
        ref = RelatedEntityRef.from_object(entity)
        with self._store_errors():
            self._session.flush()
            return self._repo.find_job_for_related_entity(
                command, ref, states=OPEN_STATES
            )

    def get_available_queues(self) -> list[str]:
        with self._store_errors():
            self._session.flush()
            return self._repo.get_available_queues()

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def find_pending_job(
        self,
        excluded_ids: Collection[int] = (),
        excluded_queues: Collection[str] = (),
        include_queues: Collection[str] = (),
    ) -> Job | None:
        """
        Get the next pending job in polling order, without a dependency check.

        Args:
            excluded_ids: Job ids to skip.
            excluded_queues: Queues to skip.
            include_queues: If given, only these queues are searched.

        Returns:
            A pending job whose ``execute_after`` has passed, or None.
        """
        with self._store_errors():
            self._session.flush()
            return self._repo.find_pending_job(
                excluded_ids=excluded_ids,
                excluded_queues=excluded_queues,
                include_queues=include_queues,
            )

    def search_startable_job(
        self,
        worker_name: str,
        excluded_ids: Collection[int] = (),
        excluded_queues: Collection[str] = (),
        include_queues: Collection[str] = (),
    ) -> StartableSearch:
        """
        Scan pending jobs and claim the first one whose dependencies all finished.

        Args:
            worker_name: Recorded on the claimed job.
            excluded_ids: Job ids to skip.
            excluded_queues: Queues to skip.
            include_queues: If given, only these queues are searched.

        Returns:
            StartableSearch with the claimed job (or None) and the ids the
            scan ruled out.
        """
        search = StartableSearch()
        skipped = set(excluded_ids)

        with self._tracer.start_as_current_span(SPAN_FIND_STARTABLE_JOB) as span, self._store_errors():
            span.set_attribute("jobqueue.worker_name", worker_name)
            self._session.flush()

            while True:
                candidate = self._repo.find_pending_job(
                    excluded_ids=skipped,
                    excluded_queues=excluded_queues,
                    include_queues=include_queues,
                )
                if candidate is None:
                    break

                job_id = candidate.id
                skipped.add(job_id)

                self._repo.refresh_dependencies(candidate)
                if not blocking_dependencies(candidate):
                    try:
                        self._repo.claim_job_or_raise(candidate, worker_name)
                    except ConcurrencyConflictError:
                        self._metrics.record_claim_conflict(worker_name)
                        search.contended_ids.append(job_id)
                        logger.info(
                            "Lost claim to another worker",
                            extra={"job_id": job_id, "worker_name": worker_name},
                        )
                        continue

                    search.job = candidate
                    self._metrics.record_job_claimed(worker_name)
                    break

                if dead_dependencies(candidate):
                    search.dead_ids.append(job_id)
                    logger.warning(
                        "Job depends on a job that can never finish",
                        extra={"job_id": job_id},
                    )
                else:
                    search.blocked_ids.append(job_id)

            span.set_attribute("jobqueue.skipped", len(search.excluded_ids))
            if search.job is not None:
                span.set_attribute("jobqueue.job_id", search.job.id)

        return search

    def find_startable_job(
        self,
        worker_name: str,
        excluded_ids: set[int] | None = None,
        excluded_queues: Collection[str] = (),
        include_queues: Collection[str] = (),
    ) -> Job | None:
        """
        Claim the next job a worker can start, or return None.

        Ids ruled out during the scan are added to ``excluded_ids`` so the
        caller can carry them into its next poll. Candidates that can never
        become startable are detached from the session.

        Args:
            worker_name: Recorded on the claimed job.
            excluded_ids: Caller-owned set of ids to skip; updated in place.
            excluded_queues: Queues to skip.
            include_queues: If given, only these queues are searched.

        Returns:
            The claimed job, now running, or None.
        """
        if excluded_ids is None:
            excluded_ids = set()

        search = self.search_startable_job(
            worker_name,
            excluded_ids=excluded_ids,
            excluded_queues=excluded_queues,
            include_queues=include_queues,
        )
        excluded_ids.update(search.excluded_ids)

        for job_id in search.dead_ids:
            dead = self._session.get(Job, job_id)
            if dead is not None:
                self._session.expunge(dead)

        return search.job

    def touch_job(self, job: Job) -> None:
        """Record a heartbeat for a running job."""
        job.touch()
        with self._store_errors():
            self._session.flush()

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def close_job(self, job: Job, final_state: JobState | str) -> None:
        """
        Move a job into a final state and apply the consequences.

        - failed/terminated with retries left: a retry attempt is scheduled
          and the root of the chain keeps its state
        - otherwise the state is recorded on the job and on the root of its
          chain, and unless it is ``finished``, every pending job depending
          on it is canceled, recursively

        The job and the root of its chain are locked and reloaded first, so a
        closure or retry committed by another process is taken into account.
        Closing an already finalized job is a no-op. Events are dispatched
        once the closure has been applied as a whole.

        Raises:
            LogicViolationError: If ``final_state`` is not a final state.
        """
        try:
            final_state = JobState(final_state)
        except ValueError as exc:
            raise LogicViolationError(f"Unknown final state {final_state!r}.") from exc
        if final_state not in FINAL_STATES:
            raise LogicViolationError(
                f"The state {final_state.value!r} is not a final state."
            )

        closure = _Closure()

        with self._tracer.start_as_current_span(SPAN_CLOSE_JOB) as span, self._store_errors():
            self._session.flush()
            span.set_attribute("jobqueue.job_id", job.id)
            span.set_attribute("jobqueue.final_state", final_state.value)

            with self._session.begin_nested():
                self._repo.lock_retry_chain(job)
                self._close(job, final_state, closure)

            span.set_attribute("jobqueue.state_changes", len(closure.events))

        for record in closure.after_commit:
            record()
        for event in closure.events:
            self._event_sink.dispatch(event)

    def _close(self, job: Job, final_state: JobState, closure: _Closure) -> None:
        if id(job) in closure.visited:
            return
        closure.visited.add(id(job))

        if job.is_in_final_state:
            return

        root = job.original_job

        if final_state in RETRY_TRIGGER_STATES and root.is_retry_allowed:
            if job is not root:
                self._apply_state(job, final_state, closure)

            retry_job = self._retry_policy.next_attempt(job)
            root.add_retry_job(retry_job)
            self._session.add(retry_job)

            queue = root.queue
            closure.after_commit.append(lambda: self._metrics.record_retry(queue))
            logger.info(
                "Scheduled retry",
                extra={
                    "job_id": root.id,
                    "attempt": len(root.retry_jobs),
                    "max_retries": root.max_retries,
                },
            )
            return

        self._apply_state(job, final_state, closure)
        if job is not root and not root.is_in_final_state:
            self._apply_state(root, final_state, closure)

        if final_state == JobState.FINISHED:
            return

        self._session.flush()
        dependents = list(self._repo.find_incoming_dependencies(root, for_update=True))
        if job is not root:
            dependents.extend(self._repo.find_incoming_dependencies(job, for_update=True))

        for dependent in dependents:
            if id(dependent) in closure.visited or not dependent.is_pending:
                continue
            logger.info(
                "Canceling dependent job",
                extra={"job_id": dependent.id, "dependency_id": root.id},
            )
            queue = dependent.queue
            closure.after_commit.append(
                lambda queue=queue: self._metrics.record_cascade_canceled(queue)
            )
            self._close(dependent, JobState.CANCELED, closure)

    def _apply_state(self, job: Job, state: JobState, closure: _Closure) -> None:
        old_state = job.state
        job.state = state
        closure.events.append(StateChangeEvent.for_transition(job, old_state, state))

        duration = None
        if job.started_at is not None and job.closed_at is not None:
            duration = (as_utc(job.closed_at) - as_utc(job.started_at)).total_seconds()

        queue = job.queue
        closure.after_commit.append(
            lambda: self._metrics.record_job_closed(queue, state.value, duration)
        )
