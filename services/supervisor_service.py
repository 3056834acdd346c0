"""
Standalone Job Supervisor Service

This service runs independently and handles:
1. Counting running jobs and computing free capacity
2. Spawning one worker process per due job, oldest first
3. Reaping worker processes whose jobs reached a terminal status
4. Requeueing running jobs when it receives SIGINT, SIGTERM or SIGQUIT
"""
import logging
import os
import signal
import sys
import threading
from typing import Callable, Dict, Optional, Set

from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

from scheduler.config import ConfigurationError, SupervisorConfig, configure_logging
from scheduler.models import JobStatus, get_utc_now
from scheduler.processes import spawn_worker, terminate_process
from scheduler.schedulable import SchedulableContractError, load_job_class, validate_job_class

MIN_POLLING_INTERVAL = 1  # seconds
SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGQUIT)


def plan_capacity(running_count: int, max_concurrent_jobs: int) -> int:
    """Number of jobs that may be dispatched without exceeding max_concurrent_jobs."""
    return max(0, max_concurrent_jobs - running_count)


class Supervisor:
    """
    Polls the job store and keeps up to max_concurrent_jobs workers running.

    The in-flight registry holds ids of jobs dispatched by this instance only;
    the store stays authoritative for their status. A dispatched job still
    queued in the store counts as starting: it takes a capacity slot and is
    not dispatched again until its worker exits without claiming it.
    """

    def __init__(
        self,
        config: SupervisorConfig,
        logger: Optional[logging.Logger] = None,
        engine: Optional[Engine] = None,
        job_class: Optional[type] = None,
        spawn: Callable = spawn_worker,
    ):
        self.config = config
        self.logger = logger or logging.getLogger("SupervisorService")
        self.pid = os.getpid()
        self.job_class = (
            validate_job_class(job_class) if job_class is not None else load_job_class(config.job_class)
        )
        self.engine = engine or create_engine(config.db_url)
        self.spawn = spawn
        self.max_concurrent_jobs = config.max_concurrent_jobs

        self.polling_interval = config.polling_interval
        if self.polling_interval < MIN_POLLING_INTERVAL:
            self.logger.warning(
                f"[Supervisor:{self.pid}] Specified a polling interval lesser than "
                f"{MIN_POLLING_INTERVAL}: it will be forced to {MIN_POLLING_INTERVAL}."
            )
            self.polling_interval = MIN_POLLING_INTERVAL

        self.in_flight: Set = set()
        self.workers: Dict = {}
        self.consecutive_failures = 0
        self._stop_event = threading.Event()
        self._shutdown_done = False

    # --- Signals ---

    def install_signal_handlers(self) -> None:
        for signum in SHUTDOWN_SIGNALS:
            signal.signal(signum, self._handle_signal)

    def _handle_signal(self, signum, frame) -> None:
        self.logger.warning(
            f"[Supervisor:{self.pid}] Received {signal.Signals(signum).name}, terminating supervisor.."
        )
        self.request_stop()

    def request_stop(self) -> None:
        self._stop_event.set()

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    # --- Iteration steps ---

    def starting_count(self, session: Session) -> int:
        """Number of in-flight jobs whose worker has not claimed them yet."""
        return sum(1 for job in self.job_class.queued(session) if job.id in self.in_flight)

    def dispatch(self, session: Session, capacity: int) -> list:
        """
        Spawn a worker for each of the first `capacity` due jobs not already in flight.

        Returns the ids of the jobs launched.
        """
        queued_jobs = [
            job
            for job in self.job_class.queued(session, due_before=get_utc_now())
            if job.id not in self.in_flight
        ]
        launched = []
        for job in queued_jobs[:capacity]:
            process = self.spawn(job.id, self.config)
            self.workers[job.id] = process
            self.in_flight.add(job.id)
            launched.append(job.id)

        if launched:
            self.logger.info(
                f"[Supervisor:{self.pid}] Launched {len(launched)} jobs: "
                f"{', '.join(str(job_id) for job_id in launched)}."
            )
        elif not queued_jobs:
            self.logger.info(f"[Supervisor:{self.pid}] No jobs in queue.")
        else:
            self.logger.warning(
                f"[Supervisor:{self.pid}] No jobs launched, reached maximum number of "
                f"concurrent jobs. Jobs in queue: {len(queued_jobs)}."
            )
        return launched

    def reap(self, session: Session) -> list:
        """
        Drop registry entries whose jobs are gone or finished, signalling finished workers.

        Returns the ids removed. Safe to call repeatedly.
        """
        removed = []
        for job_id in list(self.in_flight):
            job = self.job_class.find(session, job_id)
            if job is None:
                self.logger.debug(f"[Supervisor:{self.pid}] Job {job_id} no longer exists.")
            elif job.status == JobStatus.QUEUED and self._worker_exited(job_id):
                self.logger.warning(
                    f"[Supervisor:{self.pid}] Worker for job {job_id} exited before starting it, "
                    "job stays queued."
                )
            elif job.status in JobStatus.ACTIVE:
                continue
            else:
                self.logger.info(
                    f"[Supervisor:{self.pid}] Removed process {job.pid}, job {job_id} is {job.status}."
                )
                terminate_process(job.pid)
            self.in_flight.discard(job_id)
            removed.append(job_id)

        # Collect exit statuses of finished workers without blocking. Handles of
        # in-flight jobs are kept until the job leaves the registry.
        self.workers = {
            job_id: process
            for job_id, process in self.workers.items()
            if job_id in self.in_flight or process.poll() is None
        }
        return removed

    def _worker_exited(self, job_id) -> bool:
        process = self.workers.get(job_id)
        return process is not None and process.poll() is not None

    def run_iteration(self) -> None:
        with Session(self.engine) as session:
            busy_count = len(self.job_class.running(session)) + self.starting_count(session)
            capacity = plan_capacity(busy_count, self.max_concurrent_jobs)
            self.dispatch(session, capacity)
            self.reap(session)

    def shutdown(self) -> int:
        """
        Stop every running worker and put its job back in the queue.

        Runs once; later calls do nothing. Returns the number of jobs requeued.
        A job that finished just before the signal may be requeued and run again.
        A failure on one job is logged and does not stop the others.
        """
        if self._shutdown_done:
            return 0
        self._shutdown_done = True
        self._stop_event.set()

        requeued = 0
        with Session(self.engine) as session:
            for job in self.job_class.running(session):
                job_id = job.id
                try:
                    try:
                        terminate_process(job.pid)
                    finally:
                        job.schedule(session)
                except Exception as e:
                    session.rollback()
                    self.logger.error(
                        f"[Supervisor:{self.pid}] Could not reschedule job {job_id}: "
                        f"{e.__class__.__name__}: {e}",
                        exc_info=True,
                    )
                    continue
                requeued += 1
                self.logger.info(f"[Supervisor:{self.pid}] Rescheduled job {job_id}.")

        self.in_flight.clear()
        self.logger.info(f"[Supervisor:{self.pid}] Rescheduled {requeued} running jobs.")
        return requeued

    # --- Main loop ---

    def run(self) -> int:
        """Loop until a stop is requested, then shut down. Returns the process exit code."""
        self.logger.info(f"[Supervisor:{self.pid}] Starting main loop..")
        self.logger.info(
            f"Configuration: poll_interval={self.polling_interval}s, "
            f"max_concurrent_jobs={self.max_concurrent_jobs}, "
            f"job_class={self.job_class.__name__}"
        )
        exit_code = 0
        while not self.stopping:
            try:
                self.run_iteration()
                self.consecutive_failures = 0
            except Exception as e:
                self.consecutive_failures += 1
                self.logger.error(
                    f"[Supervisor:{self.pid}] Error {e.__class__.__name__}: {e}", exc_info=True
                )
                limit = self.config.max_consecutive_failures
                if limit and self.consecutive_failures >= limit:
                    self.logger.critical(
                        f"[Supervisor:{self.pid}] {self.consecutive_failures} consecutive failed "
                        "iterations, stopping supervisor."
                    )
                    exit_code = 1
                    break

            self._stop_event.wait(self.polling_interval)

        try:
            self.shutdown()
        except Exception as e:
            self.logger.error(f"[Supervisor:{self.pid}] Error during shutdown: {e}", exc_info=True)
            exit_code = 1
        return exit_code


def main():
    """Entry point for the supervisor service."""
    try:
        config = SupervisorConfig.from_env()
    except ConfigurationError as e:
        configure_logging()
        logging.getLogger("SupervisorService").error(f"Invalid configuration: {e}")
        sys.exit(1)

    configure_logging(config.log_level)
    logger = logging.getLogger("SupervisorService")
    logger.info("Initializing supervisor service...")
    logger.info(f"Connecting to database: {config.db_url}")
    engine = create_engine(config.db_url)

    try:
        supervisor = Supervisor(config, logger=logger, engine=engine)
    except SchedulableContractError as e:
        logger.error(f"Supervisor startup failed: {e}")
        sys.exit(1)

    try:
        SQLModel.metadata.create_all(engine)
    except Exception as e:
        # The configured job class may live in a store we do not manage.
        logger.error(f"Error creating database tables: {e}", exc_info=True)

    supervisor.install_signal_handlers()
    sys.exit(supervisor.run())


if __name__ == "__main__":
    main()
