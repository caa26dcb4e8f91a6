"""
Job repository for database operations.
Implements the data access patterns the job manager builds on.
"""

import hashlib
import json
import logging
from collections.abc import Collection, Sequence
from datetime import datetime

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased, selectinload

from jobqueue.constants import OPEN_STATES, JobState
from jobqueue.db.models import Job, JobRelatedEntity, job_dependencies
from jobqueue.exceptions import ConcurrencyConflictError
from jobqueue.types.job import RelatedEntityRef
from jobqueue.utils import utcnow

logger = logging.getLogger(__name__)


def idempotency_key_for(command: str, args: Sequence[str]) -> str:
    """Stable key for a (command, args) pair."""
    raw = json.dumps([command, list(args)], separators=(",", ":"))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class JobRepository:
    """
    Repository for job database operations.

    Implements atomic operations for:
    - Idempotent creation guarded by a unique constraint
    - Claiming with a conditional update on the job state
    - Pending and reverse-dependency lookups for the scheduler
    """

    def __init__(self, session: Session):
        """
        Initialize the repository with a database session.

        Args:
            session: The database session.
        """
        self._session = session

    @property
    def session(self) -> Session:
        return self._session

    def get_job(self, job_id: int) -> Job | None:
        """
        Get a job by ID.

        Args:
            job_id: The job id.

        Returns:
            The Job or None if not found.
        """
        return self._session.get(Job, job_id)

    def find_job(self, command: str, args: Sequence[str]) -> Job | None:
        """
        Get the first job created for an exact (command, args) pair.

        Args:
            command: The command.
            args: The command arguments.

        Returns:
            The oldest matching Job or None.
        """
        stmt = (
            select(Job)
            .where(
                and_(
                    Job.command == command,
                    Job.args == list(args),
                )
            )
            .order_by(Job.id.asc())
            .limit(1)
        )
        return self._session.scalars(stmt).first()

    def find_job_by_idempotency_key(self, idempotency_key: str) -> Job | None:
        stmt = select(Job).where(Job.idempotency_key == idempotency_key)
        return self._session.scalars(stmt).one_or_none()

    def insert_unique(self, job: Job) -> tuple[Job, bool]:
        """
        Insert a job keyed by its (command, args) idempotency key.

        Runs inside a SAVEPOINT so a uniqueness conflict only rolls back this
        insert, then returns the job that won the race.

        Args:
            job: A new, unpersisted job.

        Returns:
            Tuple of (Job, created) where created is True if ``job`` was inserted.
        """
        job.idempotency_key = idempotency_key_for(job.command, job.args)

        try:
            with self._session.begin_nested():
                self._session.add(job)
                self._session.flush()
        except IntegrityError:
            existing = self.find_job_by_idempotency_key(job.idempotency_key)
            if existing is None:
                raise
            logger.info(
                "Returned existing job (idempotent)",
                extra={"job_id": existing.id, "command": existing.command},
            )
            return existing, False

        logger.info(
            "Created new job",
            extra={"job_id": job.id, "command": job.command},
        )
        return job, True

    def find_pending_job(
        self,
        excluded_ids: Collection[int] = (),
        excluded_queues: Collection[str] = (),
        include_queues: Collection[str] = (),
        now: datetime | None = None,
    ) -> Job | None:
        """
        Get the next pending job in polling order.

        Jobs are ordered by priority (highest first) then by creation (id).
        Jobs whose ``execute_after`` lies in the future are skipped.

        Args:
            excluded_ids: Job ids to skip.
            excluded_queues: Queues to skip.
            include_queues: If given, only these queues are searched.
            now: Reference time for ``execute_after``.

        Returns:
            A pending Job or None.
        """
        now = now or utcnow()

        filters = [
            Job.state == JobState.PENDING,
            or_(Job.execute_after.is_(None), Job.execute_after <= now),
        ]
        if excluded_ids:
            filters.append(Job.id.not_in(list(excluded_ids)))
        if excluded_queues:
            filters.append(Job.queue.not_in(list(excluded_queues)))
        if include_queues:
            filters.append(Job.queue.in_(list(include_queues)))

        stmt = (
            select(Job)
            .where(and_(*filters))
            .order_by(Job.priority.desc(), Job.id.asc())
            .limit(1)
        )
        return self._session.scalars(stmt).first()

    def claim_job(self, job: Job, worker_name: str) -> bool:
        """
        Atomically move a job from PENDING to RUNNING.

        The conditional update is the only arbitration between workers: of
        two concurrent claims on the same row, exactly one sees rowcount 1.

        Args:
            job: The candidate job.
            worker_name: The claiming worker.

        Returns:
            True if this worker now owns the job.
        """
        now = utcnow()
        stmt = (
            update(Job)
            .where(
                and_(
                    Job.id == job.id,
                    Job.state == JobState.PENDING,
                )
            )
            .values(
                state=JobState.RUNNING,
                worker_name=worker_name,
                started_at=now,
                checked_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        result = self._session.execute(stmt)
        if result.rowcount != 1:
            # Whatever we hold in memory is stale now
            self._session.expire(job)
            return False

        self._session.refresh(job)
        logger.info(
            "Claimed job",
            extra={"job_id": job.id, "worker_name": worker_name},
        )
        return True

    def claim_job_or_raise(self, job: Job, worker_name: str) -> Job:
        """
        Claim a job, raising if another worker got there first.

        Raises:
            ConcurrencyConflictError: If the job is no longer pending.
        """
        if not self.claim_job(job, worker_name):
            raise ConcurrencyConflictError(job.id, worker_name)
        return job

    def lock_retry_chain(self, job: Job) -> None:
        """
        Lock ``job`` and the root of its retry chain, and reload both.

        Other processes may have closed either row or added retry attempts
        since the session loaded them. The root's ``retry_jobs`` are reloaded
        with it. Rows are locked in id order. Flush before calling.

        Args:
            job: A job about to be closed.
        """
        ids = {job.id, job.original_job_id} - {None}
        if not ids:
            return

        stmt = (
            select(Job)
            .where(Job.id.in_(ids))
            .order_by(Job.id.asc())
            .options(selectinload(Job.retry_jobs))
            .with_for_update(of=Job)
            .execution_options(populate_existing=True)
        )
        self._session.scalars(stmt).all()

    def find_incoming_dependencies(self, job: Job, for_update: bool = False) -> Sequence[Job]:
        """
        Get the jobs that list ``job`` as a dependency.

        With ``for_update`` the rows are locked and reloaded over whatever the
        session holds; flush before calling.

        Args:
            job: The dependency.
            for_update: Lock and reload the dependents.

        Returns:
            Dependent jobs in creation order.
        """
        if job.id is None:
            return []

        stmt = (
            select(Job)
            .join(job_dependencies, job_dependencies.c.source_job_id == Job.id)
            .where(job_dependencies.c.dest_job_id == job.id)
            .order_by(Job.id.asc())
        )
        if for_update:
            stmt = stmt.with_for_update(of=Job).execution_options(populate_existing=True)
        return self._session.scalars(stmt).all()

    def refresh_dependencies(self, job: Job) -> Sequence[Job]:
        """
        Reload the direct dependencies of ``job`` from the store.

        Loaded rows overwrite what the session holds, so states committed by
        other workers are visible. Flush before calling.

        Args:
            job: The dependent job.

        Returns:
            The dependencies in creation order.
        """
        if job.id is None:
            return list(job.dependencies)

        stmt = (
            select(Job)
            .join(job_dependencies, job_dependencies.c.dest_job_id == Job.id)
            .where(job_dependencies.c.source_job_id == job.id)
            .order_by(Job.id.asc())
            .execution_options(populate_existing=True)
        )
        return self._session.scalars(stmt).all()

    def find_job_for_related_entity(
        self,
        command: str,
        ref: RelatedEntityRef,
        states: Collection[JobState] = (),
    ) -> Job | None:
        """
        Get the most recent job for a command tagged with an entity.

        Args:
            command: The command.
            ref: The related entity reference.
            states: If given, only jobs in these states are considered.

        Returns:
            The newest matching Job or None.
        """
        filters = [
            Job.command == command,
            JobRelatedEntity.type_tag == ref.type_tag,
            JobRelatedEntity.identifier == ref.identifier,
        ]
        if states:
            filters.append(Job.state.in_(list(states)))

        stmt = (
            select(Job)
            .join(JobRelatedEntity, JobRelatedEntity.job_id == Job.id)
            .where(and_(*filters))
            .order_by(Job.id.desc())
            .limit(1)
        )
        return self._session.scalars(stmt).first()

    def find_stale_running_jobs(self, checked_before: datetime) -> Sequence[Job]:
        """
        Get running jobs whose last heartbeat is older than ``checked_before``.

        Jobs that never sent a heartbeat are judged by their start time. Roots
        waiting on an open retry attempt are not stale: the attempt carries
        the work.

        Args:
            checked_before: Heartbeat cutoff.

        Returns:
            Stale running jobs.
        """
        last_seen = func.coalesce(Job.checked_at, Job.started_at)
        attempt = aliased(Job)
        has_open_attempt = (
            select(attempt.id)
            .where(
                and_(
                    attempt.original_job_id == Job.id,
                    attempt.state.in_(list(OPEN_STATES)),
                )
            )
            .exists()
        )
        stmt = (
            select(Job)
            .where(
                and_(
                    Job.state == JobState.RUNNING,
                    last_seen < checked_before,
                    ~has_open_attempt,
                )
            )
            .order_by(Job.id.asc())
        )
        return self._session.scalars(stmt).all()

    def get_available_queues(self) -> list[str]:
        """Get the queues that currently hold open jobs."""
        stmt = (
            select(Job.queue)
            .where(Job.state.in_(list(OPEN_STATES)))
            .distinct()
            .order_by(Job.queue)
        )
        return list(self._session.scalars(stmt).all())

    def get_job_stats(self, queue: str | None = None) -> dict[str, int]:
        """
        Get job statistics by state.

        Args:
            queue: Optional queue filter.

        Returns:
            Dictionary of state -> count.
        """
        stmt = select(Job.state, func.count()).group_by(Job.state)
        if queue is not None:
            stmt = stmt.where(Job.queue == queue)

        result = self._session.execute(stmt)
        return {state.value: count for state, count in result.all()}
