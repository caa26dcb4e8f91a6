"""
Manager module.
Contains the job manager and the state-change event sinks.
"""

from jobqueue.manager.events import EventSink, InMemoryEventSink, LoggingEventSink
from jobqueue.manager.job_manager import JobManager

__all__ = ["JobManager", "EventSink", "LoggingEventSink", "InMemoryEventSink"]
