"""
Type definitions for the job queue.
Contains value types shared between the models, the manager and the sinks.
"""

from jobqueue.types.events import StateChangeEvent
from jobqueue.types.job import RelatedEntityRef, StartableSearch, type_tag_for

__all__ = [
    # Job types
    "RelatedEntityRef",
    "StartableSearch",
    "type_tag_for",
    # Event types
    "StateChangeEvent",
]
