"""
Unit tests for the job repository.
"""

from datetime import timedelta

import pytest
from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from jobqueue.constants import JobState
from jobqueue.db.models import Job
from jobqueue.db.repository import JobRepository, idempotency_key_for
from jobqueue.exceptions import ConcurrencyConflictError
from jobqueue.types.job import RelatedEntityRef
from jobqueue.utils import utcnow


class TestJobRepository:
    """Tests for JobRepository."""

    @pytest.fixture
    def repo(self, db_session: Session) -> JobRepository:
        """Create a repository instance."""
        return JobRepository(db_session)

    def persist(self, session: Session, *jobs: Job) -> None:
        # One flush per job keeps ids in argument order
        for job in jobs:
            session.add(job)
            session.flush()

    def test_idempotency_key_is_stable(self):
        assert idempotency_key_for("a", ["x"]) == idempotency_key_for("a", ["x"])
        assert idempotency_key_for("a", ["x"]) != idempotency_key_for("a", ["x", "y"])
        assert len(idempotency_key_for("a", [])) == 64

    def test_get_job(self, repo: JobRepository, db_session: Session):
        job = Job("a")
        self.persist(db_session, job)

        assert repo.get_job(job.id) is job
        assert repo.get_job(job.id + 100) is None

    def test_find_job_matches_args_exactly(self, repo: JobRepository, db_session: Session):
        a = Job("a", ["foo"])
        a2 = Job("a")
        self.persist(db_session, a, a2)

        assert repo.find_job("a", ["foo"]) is a
        assert repo.find_job("a", []) is a2
        assert repo.find_job("a", ["foo", "bar"]) is None

    def test_args_round_trip(self, repo: JobRepository, db_session: Session, session_factory):
        job = Job("a", ["--name", "ünïcode", "with space"])
        self.persist(db_session, job)
        db_session.commit()

        with session_factory() as other:
            reloaded = JobRepository(other).get_job(job.id)
            assert reloaded.args == ["--name", "ünïcode", "with space"]

    def test_insert_unique_creates(self, repo: JobRepository):
        job, created = repo.insert_unique(Job("a", ["x"]))

        assert created is True
        assert job.id is not None
        assert job.idempotency_key == idempotency_key_for("a", ["x"])

    def test_insert_unique_returns_existing(self, repo: JobRepository, db_session: Session):
        """Test that a uniqueness conflict returns the job that won."""
        first, created1 = repo.insert_unique(Job("a", ["x"]))
        db_session.commit()

        second, created2 = repo.insert_unique(Job("a", ["x"]))

        assert created1 is True
        assert created2 is False
        assert second is first
        # The losing insert was rolled back, not the whole transaction
        assert db_session.scalars(select(Job.id)).all() == [first.id]

    def test_find_pending_job_order(self, repo: JobRepository, db_session: Session):
        """Test that polling order is priority first, then creation."""
        low = Job("low", priority=-5)
        normal1 = Job("normal1")
        high = Job("high", priority=5)
        normal2 = Job("normal2")
        self.persist(db_session, low, normal1, high, normal2)

        assert repo.find_pending_job() is high
        assert repo.find_pending_job(excluded_ids=[high.id]) is normal1
        assert repo.find_pending_job(excluded_ids=[high.id, normal1.id]) is normal2
        assert repo.find_pending_job(excluded_ids=[high.id, normal1.id, normal2.id]) is low

    def test_find_pending_job_skips_future_jobs(self, repo: JobRepository, db_session: Session):
        later = Job("later", execute_after=utcnow() + timedelta(hours=1))
        due = Job("due", execute_after=utcnow() - timedelta(seconds=1))
        self.persist(db_session, later, due)

        assert repo.find_pending_job() is due
        assert repo.find_pending_job(excluded_ids=[due.id]) is None
        assert repo.find_pending_job(now=utcnow() + timedelta(hours=2)) is later

    def test_find_pending_job_queue_filters(self, repo: JobRepository, db_session: Session):
        a = Job("a")
        b = Job("b", queue="other_queue")
        self.persist(db_session, a, b)

        assert repo.find_pending_job() is a
        assert repo.find_pending_job(include_queues=["other_queue"]) is b
        assert repo.find_pending_job(excluded_queues=["default"]) is b
        assert repo.find_pending_job(excluded_queues=["default", "other_queue"]) is None

    def test_claim_job(self, repo: JobRepository, db_session: Session):
        job = Job("a")
        self.persist(db_session, job)

        assert repo.claim_job(job, "worker-1") is True
        assert job.state == JobState.RUNNING
        assert job.worker_name == "worker-1"
        assert job.started_at is not None
        assert job.checked_at is not None

    def test_claim_job_conflict(self, repo: JobRepository, db_session: Session):
        """Test that a second claim on the same row fails."""
        job = Job("a")
        self.persist(db_session, job)

        assert repo.claim_job(job, "worker-1") is True
        assert repo.claim_job(job, "worker-2") is False
        assert job.worker_name == "worker-1"

    def test_claim_job_lost_to_concurrent_update(self, repo: JobRepository, db_session: Session):
        job = Job("a")
        self.persist(db_session, job)

        # Another worker claims the row behind our back
        db_session.execute(
            update(Job)
            .where(Job.id == job.id)
            .values(state=JobState.RUNNING, worker_name="worker-2")
            .execution_options(synchronize_session=False)
        )

        with pytest.raises(ConcurrencyConflictError) as exc_info:
            repo.claim_job_or_raise(job, "worker-1")

        assert exc_info.value.job_id == job.id
        assert job.worker_name == "worker-2"

    def test_find_incoming_dependencies(self, repo: JobRepository, db_session: Session):
        a = Job("a")
        b = Job("b")
        c = Job("c")
        b.add_dependency(a)
        c.add_dependency(a)
        self.persist(db_session, a, b, c)

        assert list(repo.find_incoming_dependencies(a)) == [b, c]
        assert list(repo.find_incoming_dependencies(b)) == []
        assert repo.find_incoming_dependencies(Job("new")) == []

    def test_find_incoming_dependencies_for_update_reloads(
        self,
        repo: JobRepository,
        db_session: Session,
    ):
        a = Job("a")
        b = Job("b")
        b.add_dependency(a)
        self.persist(db_session, a, b)

        db_session.execute(
            update(Job)
            .where(Job.id == b.id)
            .values(state=JobState.CANCELED)
            .execution_options(synchronize_session=False)
        )
        assert b.state == JobState.PENDING

        assert list(repo.find_incoming_dependencies(a, for_update=True)) == [b]
        assert b.state == JobState.CANCELED

    def test_lock_retry_chain_reloads_root_and_attempts(
        self,
        repo: JobRepository,
        db_session: Session,
        session_factory: sessionmaker[Session],
    ):
        root = Job("a", max_retries=2)
        root.state = JobState.RUNNING
        self.persist(db_session, root)
        assert root.retry_jobs == []
        db_session.commit()

        with session_factory() as other:
            other_root = other.get(Job, root.id)
            other_root.add_retry_job(Job("a"))
            other_root.state = JobState.FAILED
            other.commit()
            attempt_id = other_root.retry_jobs[0].id

        repo.lock_retry_chain(root)

        assert root.state == JobState.FAILED
        assert [attempt.id for attempt in root.retry_jobs] == [attempt_id]

    def test_lock_retry_chain_reloads_root_of_attempt(
        self,
        repo: JobRepository,
        db_session: Session,
    ):
        root = Job("a", max_retries=1)
        root.state = JobState.RUNNING
        attempt = Job("a")
        root.add_retry_job(attempt)
        self.persist(db_session, root)

        db_session.execute(
            update(Job)
            .where(Job.id == root.id)
            .values(state=JobState.TERMINATED)
            .execution_options(synchronize_session=False)
        )

        repo.lock_retry_chain(attempt)

        assert root.state == JobState.TERMINATED
        assert attempt.original_job is root

    def test_lock_retry_chain_ignores_transient_job(self, repo: JobRepository):
        repo.lock_retry_chain(Job("new"))

    def test_refresh_dependencies_sees_external_changes(self, repo: JobRepository, db_session: Session):
        a = Job("a")
        b = Job("b")
        b.add_dependency(a)
        self.persist(db_session, a, b)

        db_session.execute(
            update(Job)
            .where(Job.id == a.id)
            .values(state=JobState.RUNNING)
            .execution_options(synchronize_session=False)
        )
        assert a.state == JobState.PENDING

        assert list(repo.refresh_dependencies(b)) == [a]
        assert a.state == JobState.RUNNING

    def test_find_job_for_related_entity(self, repo: JobRepository, db_session: Session):
        ref = RelatedEntityRef(type_tag="billing.Invoice", identifier="1")
        older = Job("b")
        older.add_related_entity(ref)
        newer = Job("b")
        newer.add_related_entity(ref)
        untagged = Job("b")
        self.persist(db_session, older, newer, untagged)

        assert repo.find_job_for_related_entity("b", ref) is newer
        assert repo.find_job_for_related_entity("c", ref) is None

        newer.state = JobState.CANCELED
        db_session.flush()
        assert (
            repo.find_job_for_related_entity("b", ref, states=[JobState.PENDING]) is older
        )

    def test_find_stale_running_jobs(self, repo: JobRepository, db_session: Session):
        stale = Job("stale")
        fresh = Job("fresh")
        never_touched = Job("never_touched")
        pending = Job("pending")
        self.persist(db_session, stale, fresh, never_touched, pending)
        for job in (stale, fresh, never_touched):
            repo.claim_job(job, "worker-1")

        stale.checked_at = utcnow() - timedelta(minutes=10)
        never_touched.checked_at = None
        never_touched.started_at = utcnow() - timedelta(minutes=10)
        db_session.flush()

        cutoff = utcnow() - timedelta(minutes=5)
        assert list(repo.find_stale_running_jobs(cutoff)) == [stale, never_touched]

    def test_find_stale_running_jobs_skips_roots_with_open_attempts(
        self,
        repo: JobRepository,
        db_session: Session,
    ):
        root = Job("a", max_retries=1)
        self.persist(db_session, root)
        repo.claim_job(root, "worker-1")
        root.checked_at = utcnow() - timedelta(minutes=10)
        root.add_retry_job(Job("a"))
        db_session.flush()

        assert list(repo.find_stale_running_jobs(utcnow())) == []

    def test_get_available_queues(self, repo: JobRepository, db_session: Session):
        done = Job("done", queue="archive")
        done.state = JobState.CANCELED
        self.persist(db_session, Job("a", queue="mail"), Job("b"), Job("c", queue="mail"), done)

        assert repo.get_available_queues() == ["default", "mail"]

    def test_get_job_stats(self, repo: JobRepository, db_session: Session):
        running = Job("running")
        running.state = JobState.RUNNING
        self.persist(db_session, Job("a"), Job("b", queue="mail"), running)

        assert repo.get_job_stats() == {"pending": 2, "running": 1}
        assert repo.get_job_stats(queue="mail") == {"pending": 1}
