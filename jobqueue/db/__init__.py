"""
Database module.
Contains database connection, models, and repository implementations.
"""

from jobqueue.db.connection import (
    close_db,
    create_db_engine,
    create_session_factory,
    get_engine,
    get_session_context,
    init_db,
)
from jobqueue.db.models import Base, Job, JobRelatedEntity, job_dependencies

__all__ = [
    "create_db_engine",
    "create_session_factory",
    "get_session_context",
    "get_engine",
    "init_db",
    "close_db",
    "Job",
    "JobRelatedEntity",
    "job_dependencies",
    "Base",
]
