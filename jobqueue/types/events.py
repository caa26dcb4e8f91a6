"""
Event type definitions for state-change notifications.
"""

from datetime import datetime
from typing import TYPE_CHECKING

from pydantic import BaseModel

from jobqueue.constants import EVENT_JOB_STATE_CHANGE, JobState
from jobqueue.utils import utcnow

if TYPE_CHECKING:
    from jobqueue.db.models import Job


class StateChangeEvent(BaseModel):
    """
    Event emitted when a job's state actually changes while it is being closed.
    """

    event_type: str = EVENT_JOB_STATE_CHANGE
    job_id: int | None
    command: str
    old_state: JobState | None
    new_state: JobState
    is_retry_job: bool = False
    timestamp: datetime

    @classmethod
    def for_transition(
        cls,
        job: "Job",
        old_state: JobState | None,
        new_state: JobState,
    ) -> "StateChangeEvent":
        """Create an event for a transition that has just been applied to ``job``."""
        return cls(
            job_id=job.id,
            command=job.command,
            old_state=old_state,
            new_state=new_state,
            is_retry_job=job.is_retry_job,
            timestamp=utcnow(),
        )

    def as_log_fields(self) -> dict:
        """Flatten the event for structured logging."""
        return {
            "job_id": self.job_id,
            "command": self.command,
            "old_state": self.old_state.value if self.old_state else None,
            "new_state": self.new_state.value,
            "is_retry_job": self.is_retry_job,
        }
