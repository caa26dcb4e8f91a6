"""
SQLAlchemy database models.
Defines the jobs table, the dependency edges between jobs and related-entity tags.
"""

import json
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import (
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    SmallInteger,
    String,
    Table,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
    validates,
)
from sqlalchemy.types import TypeDecorator

from jobqueue.constants import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_PRIORITY,
    DEFAULT_QUEUE,
    FINAL_STATES,
    PRIORITY_WEIGHTS,
    RETRY_TRIGGER_STATES,
    STATE_TRANSITIONS,
    JobPriority,
    JobState,
)
from jobqueue.exceptions import InvalidStateTransitionError, LogicViolationError
from jobqueue.graph import creates_cycle
from jobqueue.types.job import RelatedEntityRef, type_tag_for
from jobqueue.utils import utcnow


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class JsonList(TypeDecorator):
    """
    List of strings stored as compact JSON text.

    The encoding is deterministic, so ``Job.args == [...]`` compares in SQL.
    """

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Sequence[str] | None, dialect: Any) -> str | None:
        if value is None:
            return None
        return json.dumps(list(value), separators=(",", ":"))

    def process_result_value(self, value: str | None, dialect: Any) -> list[str] | None:
        if value is None:
            return None
        return json.loads(value)


job_dependencies = Table(
    "job_dependencies",
    Base.metadata,
    Column(
        "source_job_id",
        Integer,
        ForeignKey("jobs.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "dest_job_id",
        Integer,
        ForeignKey("jobs.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    # Reverse lookups: who depends on a job
    Index("ix_job_dependencies_dest", "dest_job_id"),
)


class Job(Base):
    """
    Job model representing a unit of work in the queue.

    The state machine is enforced on every assignment to ``state``.

    Key constraints:
    - dependencies can only be added before the job is persisted
    - retry attempts hang off the root of their chain (chains are flat)
    - idempotency_key is unique, used by get-or-create for (command, args)
    """

    __tablename__ = "jobs"

    # Primary key, assigned on first flush
    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )

    # Work description
    command: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    args: Mapped[list[str]] = mapped_column(
        JsonList,
        nullable=False,
        default=list,
    )

    # State and scheduling
    state: Mapped[JobState] = mapped_column(
        Enum(JobState, name="job_state", create_constraint=True, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=JobState.PENDING,
        index=True,
    )
    queue: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default=DEFAULT_QUEUE,
    )
    priority: Mapped[int] = mapped_column(
        SmallInteger,
        nullable=False,
        default=0,
    )
    execute_after: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    worker_name: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    # Idempotent creation
    idempotency_key: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    checked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    closed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Outcome
    output: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_output: Mapped[str | None] = mapped_column(Text, nullable=True)
    exit_code: Mapped[int | None] = mapped_column(SmallInteger, nullable=True)

    # Retry tracking
    max_retries: Mapped[int] = mapped_column(
        SmallInteger,
        nullable=False,
        default=DEFAULT_MAX_RETRIES,
    )
    original_job_id: Mapped[int | None] = mapped_column(
        ForeignKey("jobs.id"),
        nullable=True,
        index=True,
    )

    root_job: Mapped["Job | None"] = relationship(
        "Job",
        remote_side="Job.id",
        back_populates="retry_jobs",
    )
    retry_jobs: Mapped[list["Job"]] = relationship(
        "Job",
        back_populates="root_job",
        order_by="Job.id",
    )
    dependencies: Mapped[list["Job"]] = relationship(
        "Job",
        secondary=job_dependencies,
        primaryjoin=lambda: Job.id == job_dependencies.c.source_job_id,
        secondaryjoin=lambda: Job.id == job_dependencies.c.dest_job_id,
        order_by=lambda: Job.id,
    )
    related_entities: Mapped[list["JobRelatedEntity"]] = relationship(
        back_populates="job",
        cascade="all, delete-orphan",
    )

    # Table constraints and indexes
    __table_args__ = (
        # Store-level uniqueness for get-or-create on (command, args)
        UniqueConstraint("idempotency_key", name="uq_jobs_idempotency_key"),
        # Index for efficient queue polling
        Index(
            "ix_jobs_pending_poll",
            "state",
            "priority",
            "id",
            postgresql_where=text("state = 'pending'"),
        ),
        # Index for stale heartbeat checks
        Index(
            "ix_jobs_running_checked",
            "state",
            "checked_at",
            postgresql_where=text("state = 'running'"),
        ),
    )

    def __init__(
        self,
        command: str,
        args: Sequence[str] | None = None,
        queue: str = DEFAULT_QUEUE,
        priority: JobPriority | int = DEFAULT_PRIORITY,
        max_retries: int = DEFAULT_MAX_RETRIES,
        **kwargs: Any,
    ):
        if isinstance(priority, JobPriority):
            priority = PRIORITY_WEIGHTS[priority]

        super().__init__(
            command=command,
            args=list(args or []),
            queue=queue,
            priority=priority,
            max_retries=max_retries,
            state=JobState.PENDING,
            created_at=utcnow(),
            **kwargs,
        )

    @validates("state")
    def _validate_state(self, key: str, new_state: JobState | str) -> JobState:
        current = self.state
        try:
            new_state = JobState(new_state)
        except ValueError as exc:
            raise InvalidStateTransitionError(current, str(new_state)) from exc

        # Initial assignment from the constructor
        if current is None:
            return new_state

        if new_state not in STATE_TRANSITIONS.get(current, frozenset()):
            raise InvalidStateTransitionError(current, new_state)

        if new_state == JobState.RUNNING and self.started_at is None:
            self.started_at = utcnow()
        if new_state in FINAL_STATES:
            self.closed_at = utcnow()

        return new_state

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def is_pending(self) -> bool:
        return self.state == JobState.PENDING

    @property
    def is_running(self) -> bool:
        return self.state == JobState.RUNNING

    @property
    def is_in_final_state(self) -> bool:
        """Check if the job has reached one of the terminal states."""
        return self.state in FINAL_STATES

    @property
    def can_never_finish(self) -> bool:
        """
        Check if the job is dead: canceled, or failed/terminated with the
        retry budget of its chain used up.
        """
        if self.state == JobState.CANCELED:
            return True
        return self.state in RETRY_TRIGGER_STATES and not self.original_job.is_retry_allowed

    def touch(self) -> None:
        """Record a liveness heartbeat."""
        self.checked_at = utcnow()

    # ------------------------------------------------------------------
    # Dependencies
    # ------------------------------------------------------------------

    def add_dependency(self, job: "Job") -> None:
        """
        Make this job wait for ``job`` to finish.

        Raises:
            LogicViolationError: If this job has already been persisted, or the
                edge would be a self loop or close a cycle.
        """
        if self.id is not None:
            raise LogicViolationError(
                "You cannot add dependencies to a job which might have been started already."
            )
        if job is self:
            raise LogicViolationError("A job cannot depend on itself.")
        if self.has_dependency(job):
            return
        if creates_cycle(self, job):
            raise LogicViolationError(
                f"Adding {job!r} as a dependency of {self!r} would create a cycle."
            )

        self.dependencies.append(job)

    def has_dependency(self, job: "Job") -> bool:
        for dependency in self.dependencies:
            if dependency is job:
                return True
            if job.id is not None and dependency.id == job.id:
                return True
        return False

    @property
    def is_startable(self) -> bool:
        """Check if every dependency has finished."""
        return all(dep.state == JobState.FINISHED for dep in self.dependencies)

    # ------------------------------------------------------------------
    # Retry chain
    # ------------------------------------------------------------------

    def add_retry_job(self, job: "Job") -> None:
        """
        Attach a retry attempt to this job.

        Raises:
            LogicViolationError: If this job is itself a retry attempt.
        """
        if self.is_retry_job:
            raise LogicViolationError(
                "Retry jobs can only be added to the original job of a retry chain."
            )
        # The backref sets job.root_job
        self.retry_jobs.append(job)

    @property
    def is_retry_job(self) -> bool:
        return self.root_job is not None

    @property
    def original_job(self) -> "Job":
        """The root of the retry chain; the job itself when it is not a retry."""
        if self.root_job is None:
            return self
        return self.root_job

    @property
    def is_retry_allowed(self) -> bool:
        return self.max_retries > len(self.retry_jobs)

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def add_output(self, output: str) -> None:
        self.output = (self.output or "") + output

    def add_error_output(self, output: str) -> None:
        self.error_output = (self.error_output or "") + output

    # ------------------------------------------------------------------
    # Related entities
    # ------------------------------------------------------------------

    def add_related_entity(self, entity: Any) -> RelatedEntityRef:
        """Tag this job with a caller-defined entity. Adding the same entity twice is a no-op."""
        ref = RelatedEntityRef.from_object(entity)
        if ref not in self.related_entity_refs:
            self.related_entities.append(
                JobRelatedEntity(type_tag=ref.type_tag, identifier=ref.identifier)
            )
        return ref

    @property
    def related_entity_refs(self) -> list[RelatedEntityRef]:
        return [related.ref for related in self.related_entities]

    def find_related_entity(self, type_tag: str | type) -> RelatedEntityRef | None:
        """
        Get the reference for the related entity of the given type.

        Args:
            type_tag: Dotted type tag, or the entity class itself.

        Returns:
            The first matching reference, or None.
        """
        if isinstance(type_tag, type):
            type_tag = type_tag_for(type_tag)
        for ref in self.related_entity_refs:
            if ref.type_tag == type_tag:
                return ref
        return None

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, command={self.command!r}, "
            f"state={self.state}, queue={self.queue!r})"
        )


class JobRelatedEntity(Base):
    """Association between a job and an opaque (type_tag, identifier) pair."""

    __tablename__ = "job_related_entities"

    job_id: Mapped[int] = mapped_column(
        ForeignKey("jobs.id", ondelete="CASCADE"),
        primary_key=True,
    )
    type_tag: Mapped[str] = mapped_column(String(255), primary_key=True)
    identifier: Mapped[str] = mapped_column(String(255), primary_key=True)

    job: Mapped[Job] = relationship(back_populates="related_entities")

    __table_args__ = (
        Index("ix_job_related_entities_ref", "type_tag", "identifier"),
    )

    @property
    def ref(self) -> RelatedEntityRef:
        return RelatedEntityRef(type_tag=self.type_tag, identifier=self.identifier)

    def __repr__(self) -> str:
        return f"JobRelatedEntity(job_id={self.job_id}, {self.type_tag}#{self.identifier})"
