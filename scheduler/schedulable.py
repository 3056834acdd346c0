"""Scheduling capability contract a job class must satisfy to be supervised."""
import importlib
from datetime import datetime
from typing import Any, Optional, Protocol, Sequence, runtime_checkable

from sqlmodel import Session

REQUIRED_QUERIES = ("running", "queued", "find")
REQUIRED_METHODS = ("perform", "schedule")
REQUIRED_FIELDS = ("status", "pid")


class SchedulableContractError(TypeError):
    """Raised when the configured job class cannot be driven by the supervisor."""


class JobNotQueuedError(RuntimeError):
    """Raised by perform when the job was already claimed or is no longer queued."""


@runtime_checkable
class Schedulable(Protocol):
    """
    Protocol for job classes managed by the supervisor.

    Class-level queries read the store; instance methods run either inside a
    worker process (perform) or in the supervisor's shutdown path (schedule).
    """

    id: Any
    status: str
    pid: Optional[int]

    @classmethod
    def running(cls, session: Session) -> Sequence["Schedulable"]:
        """Jobs currently marked running."""
        ...

    @classmethod
    def queued(
        cls, session: Session, due_before: Optional[datetime] = None
    ) -> Sequence["Schedulable"]:
        """Queued jobs ordered ascending by scheduled time."""
        ...

    @classmethod
    def find(cls, session: Session, job_id: Any) -> Optional["Schedulable"]:
        """Fresh copy of the job, or None if it no longer exists."""
        ...

    def perform(self, session: Session, worker_pid: int, config: Any = None) -> None:
        """
        Claim the job for worker_pid (queued -> running), execute, mark terminal.

        Raises JobNotQueuedError without running anything if the claim fails.
        """
        ...

    def schedule(self, session: Session) -> None:
        """Return the job to the queue."""
        ...


def validate_job_class(job_class: Any) -> type:
    """
    Check that job_class exposes every member of the scheduling contract.

    Returns the class unchanged; raises SchedulableContractError listing what
    is missing otherwise.
    """
    if not isinstance(job_class, type):
        raise SchedulableContractError(f"The given job class '{job_class!r}' is not a class.")

    missing = [name for name in REQUIRED_FIELDS if not hasattr(job_class, name)]
    missing += [
        name
        for name in REQUIRED_QUERIES + REQUIRED_METHODS
        if not callable(getattr(job_class, name, None))
    ]
    if missing:
        raise SchedulableContractError(
            f"The given job class '{job_class.__name__}' is not a Schedulable class. "
            f"Missing: {', '.join(missing)}."
        )
    return job_class


def load_job_class(path: str) -> type:
    """Import a job class from 'package.module:ClassName' and validate it."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise SchedulableContractError(
            f"Invalid job class path '{path}', expected 'module:ClassName'."
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise SchedulableContractError(f"Cannot import job class module '{module_name}': {e}") from e
    try:
        job_class = getattr(module, attr)
    except AttributeError:
        raise SchedulableContractError(f"Module '{module_name}' has no attribute '{attr}'.") from None
    return validate_job_class(job_class)
