import logging
import os
import signal
import subprocess
import sys
from typing import Optional

from scheduler.config import SupervisorConfig

logger = logging.getLogger("Processes")

WORKER_MODULE = "services.job_runner"
WORKER_STOP_SIGNAL = signal.SIGTERM

# "No such process", "not found" and "permission denied" all mean the worker
# can no longer be signalled by us.
IGNORED_KILL_ERRORS = (ProcessLookupError, FileNotFoundError, PermissionError)


def build_worker_command(job_id) -> list:
    return [sys.executable, "-m", WORKER_MODULE, str(job_id)]


def spawn_worker(job_id, config: SupervisorConfig) -> subprocess.Popen:
    """
    Start a detached worker process executing a single job.

    The child runs in its own session so terminal signals aimed at the
    supervisor do not reach it directly. The caller never waits on it.
    """
    process = subprocess.Popen(
        build_worker_command(job_id),
        env=config.worker_env(),
        stdin=subprocess.DEVNULL,
        start_new_session=True,
    )
    logger.debug(f"Spawned worker {process.pid} for job {job_id}")
    return process


def terminate_process(pid: Optional[int], sig: int = WORKER_STOP_SIGNAL) -> bool:
    """
    Send sig to the process group led by pid, best effort.

    Workers are spawned as session leaders, so their group also holds any
    scripts they started. If pid leads no group the signal goes to pid alone.
    Returns True if the signal was delivered. A missing pid, an already exited
    process or one we may not signal returns False without raising.
    """
    if not pid:
        return False
    try:
        try:
            os.killpg(pid, sig)
        except ProcessLookupError:
            os.kill(pid, sig)
    except IGNORED_KILL_ERRORS as e:
        logger.debug(f"Could not signal process {pid}: {e.__class__.__name__}")
        return False
    return True
