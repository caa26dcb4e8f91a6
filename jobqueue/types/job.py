"""
Job-related type definitions for internal use.
"""

import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy import inspect

from jobqueue.exceptions import LogicViolationError

if TYPE_CHECKING:
    from jobqueue.db.models import Job


def type_tag_for(cls: type) -> str:
    """Dotted path used as the type tag of related entities of this class."""
    return f"{cls.__module__}.{cls.__qualname__}"


@dataclass(frozen=True)
class RelatedEntityRef:
    """
    Loose reference to a caller-defined domain object.

    Jobs store only the (type_tag, identifier) pair; resolving it back to an
    object is up to the caller.
    """

    type_tag: str
    identifier: str

    @classmethod
    def from_object(cls, entity: Any) -> "RelatedEntityRef":
        """
        Build a reference from a ref, a (type_tag, identifier) tuple,
        a persisted SQLAlchemy-mapped object, or any object with an ``id``.

        Raises:
            LogicViolationError: If the object has no identity yet.
        """
        if isinstance(entity, RelatedEntityRef):
            return entity

        if isinstance(entity, tuple):
            if len(entity) != 2:
                raise LogicViolationError(
                    "Related entity tuples must be (type_tag, identifier)."
                )
            return cls(type_tag=str(entity[0]), identifier=str(entity[1]))

        type_tag = type_tag_for(type(entity))

        state = inspect(entity, raiseerr=False)
        if state is not None:
            identity = state.identity
            if identity is None:
                raise LogicViolationError(
                    f"{type_tag} must be persisted before it can be related to a job."
                )
            if len(identity) == 1:
                return cls(type_tag=type_tag, identifier=str(identity[0]))
            return cls(type_tag=type_tag, identifier=json.dumps(list(identity), default=str))

        identifier = getattr(entity, "id", None)
        if identifier is None:
            raise LogicViolationError(
                f"{type_tag} has no identifier and cannot be related to a job."
            )
        return cls(type_tag=type_tag, identifier=str(identifier))


@dataclass
class StartableSearch:
    """
    Outcome of one scheduling poll.

    Holds the claimed job (if any) together with the ids the scan ruled out:
    - blocked_ids: waiting on a dependency that is still in flight
    - dead_ids: depending on a job that can never finish; callers should
      evict these from any local cache
    - contended_ids: claimed by another worker between the scan and the update
    """

    job: "Job | None" = None
    blocked_ids: list[int] = field(default_factory=list)
    dead_ids: list[int] = field(default_factory=list)
    contended_ids: list[int] = field(default_factory=list)

    @property
    def excluded_ids(self) -> list[int]:
        """All ids ruled out during the scan, in discovery order."""
        return [*self.blocked_ids, *self.dead_ids, *self.contended_ids]

    @property
    def found(self) -> bool:
        return self.job is not None
