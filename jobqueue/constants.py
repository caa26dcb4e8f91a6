"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobState(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - PENDING -> RUNNING (claimed by a worker, sets started_at)
    - RUNNING -> RUNNING (no-op)
    - RUNNING -> FINISHED | FAILED | TERMINATED
    - PENDING -> CANCELED (a dependency can no longer succeed)
    """

    PENDING = "pending"
    RUNNING = "running"
    FINISHED = "finished"
    FAILED = "failed"
    TERMINATED = "terminated"
    CANCELED = "canceled"


class JobPriority(StrEnum):
    """Job priority levels for queue ordering."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


# Priority weights for ordering (higher = processed first)
PRIORITY_WEIGHTS: dict[JobPriority, int] = {
    JobPriority.LOW: -5,
    JobPriority.NORMAL: 0,
    JobPriority.HIGH: 5,
    JobPriority.CRITICAL: 100,
}

# Allowed transitions, keyed by the current state
STATE_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.PENDING: frozenset({JobState.RUNNING, JobState.CANCELED}),
    JobState.RUNNING: frozenset(
        {JobState.RUNNING, JobState.FINISHED, JobState.FAILED, JobState.TERMINATED}
    ),
}

FINAL_STATES: frozenset[JobState] = frozenset(
    {JobState.FINISHED, JobState.FAILED, JobState.TERMINATED, JobState.CANCELED}
)

# Closing a job into one of these may spawn a retry attempt
RETRY_TRIGGER_STATES: frozenset[JobState] = frozenset(
    {JobState.FAILED, JobState.TERMINATED}
)

OPEN_STATES: frozenset[JobState] = frozenset({JobState.PENDING, JobState.RUNNING})

# Default values
DEFAULT_QUEUE = "default"
DEFAULT_MAX_RETRIES = 0
DEFAULT_PRIORITY = JobPriority.NORMAL
DEFAULT_RETRY_BACKOFF_BASE = 5

# Metrics names
METRIC_JOBS_CREATED = "jobqueue_jobs_created_total"
METRIC_JOBS_CLAIMED = "jobqueue_jobs_claimed_total"
METRIC_JOBS_CLOSED = "jobqueue_jobs_closed_total"
METRIC_JOB_RETRIES = "jobqueue_job_retries_total"
METRIC_JOBS_CASCADE_CANCELED = "jobqueue_jobs_cascade_canceled_total"
METRIC_CLAIM_CONFLICTS = "jobqueue_claim_conflicts_total"
METRIC_STALE_JOBS_TERMINATED = "jobqueue_stale_jobs_terminated_total"
METRIC_JOB_DURATION = "jobqueue_job_duration_seconds"
METRIC_JOBS_BY_STATE = "jobqueue_jobs"

# Trace span names
SPAN_FIND_STARTABLE_JOB = "find_startable_job"
SPAN_CLOSE_JOB = "close_job"
SPAN_WATCHDOG_RUN = "watchdog_run"

# Event types
EVENT_JOB_STATE_CHANGE = "job.state_change"
