"""
Helpers over the dependency DAG.

Edges live on the jobs themselves (``Job.dependencies``). These functions walk
them in memory; the reverse direction (who depends on a job) is a store query,
see ``JobRepository.find_incoming_dependencies``.
"""

from collections import deque
from collections.abc import Iterator
from typing import TYPE_CHECKING

from jobqueue.constants import JobState

if TYPE_CHECKING:
    from jobqueue.db.models import Job


def iter_dependencies(job: "Job") -> Iterator["Job"]:
    """
    Yield every transitive dependency of ``job`` once, nearest first.

    Args:
        job: The job whose ancestors to walk.

    Yields:
        Jobs that ``job`` depends on, directly or indirectly.
    """
    seen: set[int] = {id(job)}
    queue = deque(job.dependencies)
    while queue:
        dependency = queue.popleft()
        if id(dependency) in seen:
            continue
        seen.add(id(dependency))
        yield dependency
        queue.extend(dependency.dependencies)


def creates_cycle(job: "Job", dependency: "Job") -> bool:
    """Whether adding the edge ``job -> dependency`` would close a cycle."""
    if dependency is job:
        return True
    return any(ancestor is job for ancestor in iter_dependencies(dependency))


def blocking_dependencies(job: "Job") -> list["Job"]:
    """Direct dependencies that have not finished yet."""
    return [dep for dep in job.dependencies if dep.state != JobState.FINISHED]


def dead_dependencies(job: "Job") -> list["Job"]:
    """Direct dependencies that can never reach ``finished``."""
    return [dep for dep in job.dependencies if dep.can_never_finish]
