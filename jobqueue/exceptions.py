"""
Job queue exceptions.

Structural violations (bad transitions, edges added after persistence) are
programmer errors and surface immediately. Claim conflicts are expected
under concurrency and are handled by the scheduler.
"""


class JobQueueError(Exception):
    """Base exception for all job queue errors."""
    pass


class InvalidStateTransitionError(JobQueueError):
    """Raised when a job is moved between two states the state machine does not connect."""

    def __init__(self, from_state: str | None, to_state: str):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"The job cannot be transitioned from state {from_state!r} to {to_state!r}."
        )


class JobNotFoundError(JobQueueError):
    """Raised when a lookup by key found nothing."""

    def __init__(self, command: str, args: list[str] | None = None):
        self.command = command
        self.job_args = list(args or [])
        super().__init__(
            f"Found no job for command {command!r} with args {self.job_args!r}."
        )


class LogicViolationError(JobQueueError):
    """
    Raised when an operation violates a structural invariant.

    Examples:
    - Adding dependencies to a job that has already been persisted
    - A dependency edge that would introduce a cycle
    - Closing a job with an unsupported final state
    """
    pass


class ConcurrencyConflictError(JobQueueError):
    """
    Raised when a claim lost the race against another worker.

    The conditional update found the job no longer pending.
    """

    def __init__(self, job_id: int, worker_name: str):
        self.job_id = job_id
        self.worker_name = worker_name
        super().__init__(
            f"Job {job_id} could not be claimed by {worker_name!r}: it is no longer pending."
        )


class StoreUnavailableError(JobQueueError):
    """Raised when the backing store cannot be reached. Fatal for the operation, not the process."""
    pass
