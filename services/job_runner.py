"""
Worker process entry point.

Spawned by the supervisor as `python -m services.job_runner <job_id>`. Loads the
job, claims it for this process and performs it. Errors raised by the job are
logged here and never reach the supervisor. A job that was already claimed or
is no longer queued is skipped.
"""
import logging
import os
import sys

from sqlmodel import Session, create_engine

from scheduler.config import SupervisorConfig, configure_logging
from scheduler.schedulable import JobNotQueuedError, load_job_class

logger = logging.getLogger("JobRunner")


def run_job(job_id: str, config: SupervisorConfig, engine=None) -> int:
    """Perform a single job. Returns the process exit code."""
    job_class = load_job_class(config.job_class)
    engine = engine or create_engine(config.db_url)
    worker_pid = os.getpid()

    with Session(engine) as session:
        job = job_class.find(session, job_id)
        if job is None:
            logger.warning(f"[Worker:{worker_pid}] Job {job_id} not found, nothing to do.")
            return 0

        logger.info(f"[Worker:{worker_pid}] Performing job {job_id}")
        try:
            job.perform(session, worker_pid, config=config)
        except JobNotQueuedError as e:
            logger.warning(f"[Worker:{worker_pid}] Skipping job {job_id}: {e}.")
            return 0
        except Exception as e:
            logger.error(f"[Worker:{worker_pid}] Error {e.__class__.__name__}: {e}.", exc_info=True)
            return 1

    logger.info(f"[Worker:{worker_pid}] Job {job_id} finished")
    return 0


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    if len(argv) != 1:
        print("usage: python -m services.job_runner <job_id>", file=sys.stderr)
        sys.exit(2)

    config = SupervisorConfig.from_env()
    configure_logging(config.log_level)
    sys.exit(run_job(argv[0], config))


if __name__ == "__main__":
    main()
