import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from sqlalchemy import Column, Text, update
from sqlmodel import Field, Session, SQLModel, create_engine, select

from scheduler.config import SupervisorConfig, get_db_url
from scheduler.handlers import get_handler
from scheduler.schedulable import JobNotQueuedError

logger = logging.getLogger("Models")


def get_utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus:
    """Status values stored in ScheduledJob.status."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    # Anything outside ACTIVE is terminal.
    ACTIVE = (QUEUED, RUNNING)


class ScheduledJob(SQLModel, table=True):
    """
    Model representing a unit of work picked up by the supervisor.

    Attributes:
        name: The display name of the job.
        handler: Name of the registered handler executed by the worker process.
        arguments: JSON encoded handler arguments.
        status: One of JobStatus (queued, running, completed, failed).
        scheduled_at: When the job becomes due. Queued jobs are dispatched in ascending order.
        pid: OS process id of the worker currently (or most recently) executing the job.
        started_at: When the worker marked the job running.
        completed_at: When the worker marked the job completed or failed.
        error_message: Error details of the last failed execution.
        log_output: Output captured from the last execution.
    """

    __tablename__ = "scheduled_jobs"
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, nullable=False)
    handler: str = Field(default="script", nullable=False, max_length=100)
    arguments: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    status: str = Field(default=JobStatus.QUEUED, nullable=False, max_length=20, index=True)
    scheduled_at: datetime = Field(default_factory=get_utc_now, nullable=False, index=True)
    pid: Optional[int] = Field(default=None, nullable=True)
    created_at: datetime = Field(default_factory=get_utc_now, nullable=False)
    started_at: Optional[datetime] = Field(default=None, nullable=True)
    completed_at: Optional[datetime] = Field(default=None, nullable=True)
    error_message: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    log_output: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))

    @classmethod
    def running(cls, session: Session) -> Sequence["ScheduledJob"]:
        statement = (
            select(cls)
            .where(cls.status == JobStatus.RUNNING)
            .order_by(cls.id)
            .execution_options(populate_existing=True)
        )
        return session.exec(statement).all()

    @classmethod
    def queued(
        cls, session: Session, due_before: Optional[datetime] = None
    ) -> Sequence["ScheduledJob"]:
        """
        Queued jobs ordered by scheduled_at, oldest first.

        If due_before is given, only jobs scheduled at or before it are returned.
        Ties on scheduled_at are broken by id so the order is stable.
        """
        statement = select(cls).where(cls.status == JobStatus.QUEUED)
        if due_before is not None:
            statement = statement.where(cls.scheduled_at <= due_before)
        statement = statement.order_by(cls.scheduled_at, cls.id).execution_options(
            populate_existing=True
        )
        return session.exec(statement).all()

    @classmethod
    def find(cls, session: Session, job_id: Any) -> Optional["ScheduledJob"]:
        """Reload a job from the database, bypassing the session cache."""
        return session.get(cls, int(job_id), populate_existing=True)

    @classmethod
    def enqueue(
        cls,
        session: Session,
        name: str,
        handler: str = "script",
        arguments: Optional[dict] = None,
        scheduled_at: Optional[datetime] = None,
    ) -> "ScheduledJob":
        """Create a new queued job, due immediately unless scheduled_at is given."""
        job = cls(
            name=name,
            handler=handler,
            arguments=json.dumps(arguments) if arguments is not None else None,
            status=JobStatus.QUEUED,
            scheduled_at=scheduled_at or get_utc_now(),
        )
        session.add(job)
        session.commit()
        session.refresh(job)
        logger.info(f"Enqueued job '{job.name}' (ID: {job.id}) for {job.scheduled_at.isoformat()}")
        return job

    def get_arguments(self) -> dict:
        if not self.arguments:
            return {}
        return json.loads(self.arguments)

    def claim(self, session: Session, worker_pid: int) -> None:
        """
        Atomically move the job from queued to running under worker_pid.

        Raises JobNotQueuedError if the job is no longer queued, e.g. because
        another worker claimed it first.
        """
        table = type(self).__table__
        statement = (
            update(table)
            .where(table.c.id == self.id)
            .where(table.c.status == JobStatus.QUEUED)
            .values(
                status=JobStatus.RUNNING,
                pid=worker_pid,
                started_at=get_utc_now(),
                completed_at=None,
                error_message=None,
            )
        )
        result = session.connection().execute(statement)
        session.commit()
        session.refresh(self)
        if result.rowcount != 1:
            raise JobNotQueuedError(f"Job {self.id} is {self.status}, not {JobStatus.QUEUED}")

    def perform(
        self, session: Session, worker_pid: int, config: Optional[SupervisorConfig] = None
    ) -> None:
        """
        Execute the job inside the calling worker process.

        Claims the job for worker_pid, runs its handler and marks it completed.
        If the handler raises, the job is marked failed and the exception is
        re-raised to the caller. A job that cannot be claimed is left untouched.
        """
        self.claim(session, worker_pid)

        try:
            output = get_handler(self.handler)(self, config or SupervisorConfig())
        except Exception as e:
            self.status = JobStatus.FAILED
            self.completed_at = get_utc_now()
            self.error_message = f"{e.__class__.__name__}: {e}"[:500]
            session.add(self)
            session.commit()
            raise

        self.status = JobStatus.COMPLETED
        self.completed_at = get_utc_now()
        self.log_output = output
        session.add(self)
        session.commit()

    def schedule(self, session: Session, scheduled_at: Optional[datetime] = None) -> None:
        """Put the job back in the queue, keeping its place unless scheduled_at is given."""
        self.status = JobStatus.QUEUED
        self.pid = None
        self.started_at = None
        self.completed_at = None
        if scheduled_at is not None:
            self.scheduled_at = scheduled_at
        session.add(self)
        session.commit()


def init_db(db_url: Optional[str] = None):
    """
    Initialize the database schema.

    Creates all tables defined in the SQLModel metadata. Used by migrate_db.py
    and enqueue_job.py so the job table exists before it is written to.
    """
    engine = create_engine(db_url or get_db_url())
    SQLModel.metadata.create_all(engine)
    return engine
