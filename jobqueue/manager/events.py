"""
State-change event sinks.

The job manager hands every state change made while closing a job to an
``EventSink`` once the change has been committed to the savepoint.
"""

import logging
from typing import Protocol, runtime_checkable

from jobqueue.types.events import StateChangeEvent

logger = logging.getLogger(__name__)


@runtime_checkable
class EventSink(Protocol):
    """Receiver for job state-change events."""

    def dispatch(self, event: StateChangeEvent) -> None:
        ...


class LoggingEventSink:
    """Default sink: writes each event as a structured log record."""

    def __init__(self, level: int = logging.INFO):
        self.level = level

    def dispatch(self, event: StateChangeEvent) -> None:
        logger.log(self.level, "Job state changed", extra=event.as_log_fields())


class InMemoryEventSink:
    """Collects events in a list. Useful in tests and for batching callers."""

    def __init__(self) -> None:
        self.events: list[StateChangeEvent] = []

    def dispatch(self, event: StateChangeEvent) -> None:
        self.events.append(event)

    def transitions(self) -> list[tuple[int | None, str | None, str]]:
        """Get ``(job_id, old_state, new_state)`` for every event received."""
        return [
            (
                event.job_id,
                event.old_state.value if event.old_state else None,
                event.new_state.value,
            )
            for event in self.events
        ]

    def clear(self) -> None:
        self.events.clear()
