"""
Unit tests for the Job entity.
"""

from dataclasses import dataclass

import pytest

from jobqueue.constants import PRIORITY_WEIGHTS, JobPriority, JobState
from jobqueue.db.models import Job
from jobqueue.exceptions import InvalidStateTransitionError, LogicViolationError
from jobqueue.types.job import RelatedEntityRef, type_tag_for


@dataclass
class Invoice:
    id: int | None


def running_job(command: str = "a", **kwargs) -> Job:
    job = Job(command, **kwargs)
    job.state = JobState.RUNNING
    return job


class TestJobConstruction:
    """Tests for creating jobs."""

    def test_construct(self):
        """Test that a new job is pending with its command and args."""
        job = Job("a:b", ["a", "b", "c"])

        assert job.command == "a:b"
        assert job.args == ["a", "b", "c"]
        assert job.created_at is not None
        assert job.state == JobState.PENDING
        assert job.started_at is None
        assert job.queue == "default"
        assert job.max_retries == 0

    def test_args_default_to_empty_list(self):
        assert Job("a").args == []

    def test_priority_enum_maps_to_weight(self):
        """Test that priority levels are stored as their ordering weight."""
        assert Job("a", priority=JobPriority.HIGH).priority == PRIORITY_WEIGHTS[JobPriority.HIGH]
        assert Job("a", priority=JobPriority.LOW).priority == -5
        assert Job("a", priority=42).priority == 42

    def test_repr_does_not_touch_relationships(self):
        job = Job("a", queue="foo")
        assert repr(job) == "Job(id=None, command='a', state=pending, queue='foo')"


class TestJobStateMachine:
    """Tests for the state transition table."""

    def test_pending_to_failed_is_invalid(self):
        job = Job("a")

        with pytest.raises(InvalidStateTransitionError) as exc_info:
            job.state = JobState.FAILED

        assert exc_info.value.from_state == JobState.PENDING
        assert exc_info.value.to_state == JobState.FAILED
        assert job.state == JobState.PENDING

    def test_unknown_state_is_invalid(self):
        job = Job("a")

        with pytest.raises(InvalidStateTransitionError):
            job.state = "exploded"

    def test_pending_to_running_sets_started_at_once(self):
        """Test that running -> running keeps the first start time."""
        job = Job("a")
        job.state = JobState.RUNNING

        assert job.state == JobState.RUNNING
        started_at = job.started_at
        assert started_at is not None

        job.state = JobState.RUNNING
        assert job.started_at is started_at
        assert job.closed_at is None

    @pytest.mark.parametrize(
        "final_state",
        [JobState.FAILED, JobState.TERMINATED, JobState.FINISHED],
    )
    def test_running_to_final_state(self, final_state: JobState):
        job = running_job()
        job.state = final_state

        assert job.state == final_state
        assert job.is_in_final_state
        assert job.closed_at is not None

    def test_pending_to_canceled(self):
        job = Job("a")
        job.state = JobState.CANCELED

        assert job.state == JobState.CANCELED
        assert job.closed_at is not None
        assert job.started_at is None

    def test_final_states_are_terminal(self):
        job = running_job()
        job.state = JobState.FINISHED

        with pytest.raises(InvalidStateTransitionError):
            job.state = JobState.RUNNING

    def test_states_accept_plain_strings(self):
        job = Job("a")
        job.state = "running"
        assert job.state is JobState.RUNNING
        assert job.is_running


class TestJobOutput:
    """Tests for output buffers."""

    def test_add_output(self):
        job = Job("foo")
        assert job.output is None

        job.add_output("foo")
        assert job.output == "foo"
        job.add_output("bar")
        assert job.output == "foobar"

    def test_add_error_output(self):
        job = Job("foo")
        assert job.error_output is None

        job.add_error_output("foo")
        assert job.error_output == "foo"
        job.add_error_output("bar")
        assert job.error_output == "foobar"

    def test_set_output_replaces(self):
        job = Job("foo")
        job.output = "foo"
        job.output = "bar"
        assert job.output == "bar"

        job.error_output = "foo"
        job.error_output = "bar"
        assert job.error_output == "bar"

    def test_touch_updates_checked_at(self):
        job = Job("a")
        assert job.checked_at is None

        job.touch()
        first = job.checked_at
        assert first is not None

        job.touch()
        assert job.checked_at >= first


class TestJobDependencies:
    """Tests for dependency edges."""

    def test_add_dependency(self):
        a = Job("a")
        b = Job("b")
        assert len(a.dependencies) == 0
        assert len(b.dependencies) == 0

        a.add_dependency(b)

        assert len(a.dependencies) == 1
        assert len(b.dependencies) == 0
        assert a.dependencies[0] is b

    def test_same_dependency_is_not_added_twice(self):
        a = Job("a")
        b = Job("b")

        a.add_dependency(b)
        a.add_dependency(b)

        assert len(a.dependencies) == 1

    def test_has_dependency(self):
        a = Job("a")
        b = Job("b")

        assert not a.has_dependency(b)
        a.add_dependency(b)
        assert a.has_dependency(b)

    def test_add_dependency_to_persisted_job(self):
        """Test that edges cannot be added once the job has an id."""
        job = running_job()
        job.id = 1

        with pytest.raises(LogicViolationError) as exc_info:
            job.add_dependency(Job("b"))

        assert str(exc_info.value) == (
            "You cannot add dependencies to a job which might have been started already."
        )

    def test_self_dependency_is_rejected(self):
        job = Job("a")

        with pytest.raises(LogicViolationError):
            job.add_dependency(job)

    def test_cycle_is_rejected(self):
        a = Job("a")
        b = Job("b")
        c = Job("c")
        a.add_dependency(b)
        b.add_dependency(c)

        with pytest.raises(LogicViolationError):
            c.add_dependency(a)

        assert len(c.dependencies) == 0

    def test_is_startable(self):
        a = Job("a")
        b = running_job("b")
        a.add_dependency(b)
        assert not a.is_startable

        b.state = JobState.FINISHED
        assert a.is_startable

    def test_job_without_dependencies_is_startable(self):
        assert Job("a").is_startable


class TestJobRetries:
    """Tests for retry chains."""

    def test_add_retry_job(self):
        a = running_job()
        b = Job("b")
        a.add_retry_job(b)

        assert len(a.retry_jobs) == 1
        assert a.retry_jobs[0] is b

    def test_is_retry_job(self):
        a = running_job()
        b = Job("b")
        a.add_retry_job(b)

        assert not a.is_retry_job
        assert b.is_retry_job

    def test_original_job(self):
        a = running_job()
        b = Job("b")
        a.add_retry_job(b)

        assert a.original_job is a
        assert b.original_job is a

    def test_retry_jobs_cannot_have_retries(self):
        """Test that retry chains stay flat."""
        a = running_job()
        b = Job("a")
        a.add_retry_job(b)

        with pytest.raises(LogicViolationError):
            b.add_retry_job(Job("a"))

    def test_is_retry_allowed(self):
        job = Job("a")
        assert not job.is_retry_allowed

        job.max_retries = 1
        assert job.is_retry_allowed

        job.state = JobState.RUNNING
        job.add_retry_job(Job("a"))
        assert not job.is_retry_allowed

    def test_can_never_finish(self):
        job = running_job(max_retries=1)
        assert not job.can_never_finish

        job.state = JobState.FAILED
        # The chain still has a retry left
        assert not job.can_never_finish

        job.add_retry_job(Job("a"))
        assert job.can_never_finish

    def test_canceled_job_can_never_finish(self):
        job = Job("a", max_retries=3)
        job.state = JobState.CANCELED
        assert job.can_never_finish


class TestJobRelatedEntities:
    """Tests for related entity tags."""

    def test_add_related_entity_from_object_with_id(self):
        job = Job("a")
        ref = job.add_related_entity(Invoice(id=7))

        assert ref == RelatedEntityRef(type_tag=type_tag_for(Invoice), identifier="7")
        assert job.related_entity_refs == [ref]

    def test_add_related_entity_from_tuple(self):
        job = Job("a")
        job.add_related_entity(("billing.Invoice", 12))

        assert job.find_related_entity("billing.Invoice") == RelatedEntityRef(
            type_tag="billing.Invoice", identifier="12"
        )

    def test_same_entity_is_not_added_twice(self):
        job = Job("a")
        job.add_related_entity(Invoice(id=7))
        job.add_related_entity(Invoice(id=7))

        assert len(job.related_entities) == 1

    def test_find_related_entity_by_class(self):
        job = Job("a")
        job.add_related_entity(("other.Type", "1"))
        job.add_related_entity(Invoice(id=3))

        ref = job.find_related_entity(Invoice)
        assert ref is not None
        assert ref.identifier == "3"
        assert job.find_related_entity("missing.Type") is None

    def test_entity_without_id_is_rejected(self):
        job = Job("a")

        with pytest.raises(LogicViolationError):
            job.add_related_entity(Invoice(id=None))

    def test_unpersisted_mapped_entity_is_rejected(self):
        job = Job("a")

        with pytest.raises(LogicViolationError):
            job.add_related_entity(Job("b"))
