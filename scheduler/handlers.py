"""
Named job handlers executed inside worker processes.

A handler receives the job being performed and the worker's SupervisorConfig
and returns the output to store on the job. Raising marks the job as failed.
"""
import logging
import os
import shlex
import subprocess
import sys
from typing import TYPE_CHECKING, Callable, Dict, Optional

if TYPE_CHECKING:
    from scheduler.config import SupervisorConfig
    from scheduler.models import ScheduledJob

logger = logging.getLogger("Handlers")

Handler = Callable[["ScheduledJob", "SupervisorConfig"], Optional[str]]
HANDLERS: Dict[str, Handler] = {}


class UnknownHandlerError(KeyError):
    """Raised when a job names a handler that was never registered."""


class ScriptExecutionError(RuntimeError):
    """Raised when a script job exits non-zero or times out."""


def register_handler(name: str) -> Callable[[Handler], Handler]:
    def decorator(func: Handler) -> Handler:
        HANDLERS[name] = func
        return func

    return decorator


def get_handler(name: str) -> Handler:
    try:
        return HANDLERS[name]
    except KeyError:
        raise UnknownHandlerError(f"No handler registered under '{name}'") from None


def build_script_command(script_path: str, script_args: Optional[str] = None) -> list:
    """Determine the command for a script based on its file extension."""
    cmd = [script_path]
    if script_path.endswith(".py"):
        cmd = [sys.executable, script_path]
    elif script_path.endswith(".sh"):
        cmd = ["/bin/bash", script_path]
    elif script_path.endswith(".bat"):
        cmd = ["cmd.exe", "/c", script_path]
    if script_args:
        cmd.extend(shlex.split(script_args))
    return cmd


@register_handler("script")
def run_script(job: "ScheduledJob", config: "SupervisorConfig") -> str:
    """
    Run arguments["script_path"] with optional arguments["args"].

    Returns the captured stdout/stderr. Raises ScriptExecutionError on a
    non-zero exit code or when config.job_script_timeout is exceeded.
    """
    arguments = job.get_arguments()
    script_path = arguments.get("script_path")
    if not script_path or not os.path.exists(script_path):
        raise FileNotFoundError(f"Script not found: {script_path}")

    cmd = build_script_command(script_path, arguments.get("args"))
    logger.info(f"Executing job {job.id} ({job.name}): {' '.join(cmd)}")
    try:
        process = subprocess.run(
            cmd, capture_output=True, text=True, timeout=config.job_script_timeout
        )
    except subprocess.TimeoutExpired:
        raise ScriptExecutionError(
            f"Execution timed out after {config.job_script_timeout} seconds"
        ) from None

    log_output = f"STDOUT:\n{process.stdout}\n\nSTDERR:\n{process.stderr}"
    if process.returncode != 0:
        raise ScriptExecutionError(
            f"Exit code {process.returncode}\n\n{log_output}"
        )
    return log_output


@register_handler("noop")
def run_noop(job: "ScheduledJob", config: "SupervisorConfig") -> str:
    logger.info(f"Job {job.id} ({job.name}) has nothing to do")
    return ""
