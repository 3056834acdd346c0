import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Mapping, Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

DEFAULT_POLLING_INTERVAL = 5  # seconds
DEFAULT_MAX_CONCURRENT_JOBS = 4
DEFAULT_JOB_CLASS = "scheduler.models:ScheduledJob"
DEFAULT_JOB_SCRIPT_TIMEOUT = 600  # 10 minutes


class ConfigurationError(ValueError):
    """Raised when an environment setting cannot be used."""


def get_db_url() -> str:
    """
    Retrieve the database URL from the environment or return a default SQLite path.

    The supervisor hands this value to its worker processes so both sides
    read and write the same job table.
    """
    return os.getenv("SCHEDULER_DB_URL", "sqlite:///scheduler.db")


def _read_number(environ: Mapping[str, str], key: str, default, cast):
    raw = environ.get(key)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be a number, got '{raw}'") from None


@dataclass(frozen=True)
class SupervisorConfig:
    """
    Settings for one supervisor process.

    Attributes:
        polling_interval: Seconds between iterations. Clamped to 1 by the supervisor.
        max_concurrent_jobs: Hard cap on simultaneously running jobs.
        job_class: Import path ('module:ClassName') of the job type driving the loop.
        db_url: Database URL shared with worker processes.
        log_level: Level name for logging.basicConfig.
        max_consecutive_failures: Stop after this many failed iterations in a row. 0 never stops.
        job_script_timeout: Seconds a script job may run inside its worker before it is failed.
    """

    polling_interval: float = DEFAULT_POLLING_INTERVAL
    max_concurrent_jobs: int = DEFAULT_MAX_CONCURRENT_JOBS
    job_class: str = DEFAULT_JOB_CLASS
    db_url: str = field(default_factory=get_db_url)
    log_level: str = "INFO"
    max_consecutive_failures: int = 0
    job_script_timeout: int = DEFAULT_JOB_SCRIPT_TIMEOUT

    def __post_init__(self):
        if self.max_concurrent_jobs < 0:
            raise ConfigurationError(
                f"max_concurrent_jobs must be >= 0, got {self.max_concurrent_jobs}"
            )
        if self.max_consecutive_failures < 0:
            raise ConfigurationError(
                f"max_consecutive_failures must be >= 0, got {self.max_consecutive_failures}"
            )
        if self.job_script_timeout <= 0:
            raise ConfigurationError(
                f"job_script_timeout must be > 0, got {self.job_script_timeout}"
            )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "SupervisorConfig":
        environ = os.environ if environ is None else environ
        return cls(
            polling_interval=_read_number(
                environ, "SUPERVISOR_POLLING_INTERVAL", DEFAULT_POLLING_INTERVAL, float
            ),
            max_concurrent_jobs=_read_number(
                environ, "SUPERVISOR_MAX_CONCURRENT_JOBS", DEFAULT_MAX_CONCURRENT_JOBS, int
            ),
            job_class=environ.get("SUPERVISOR_JOB_CLASS") or DEFAULT_JOB_CLASS,
            db_url=environ.get("SCHEDULER_DB_URL") or get_db_url(),
            log_level=(environ.get("SUPERVISOR_LOG_LEVEL") or "INFO").upper(),
            max_consecutive_failures=_read_number(
                environ, "SUPERVISOR_MAX_CONSECUTIVE_FAILURES", 0, int
            ),
            job_script_timeout=_read_number(
                environ, "JOB_SCRIPT_TIMEOUT", DEFAULT_JOB_SCRIPT_TIMEOUT, int
            ),
        )

    def worker_env(self) -> dict:
        """Environment for worker processes so they reach the same store and job class."""
        env = dict(os.environ)
        env["SCHEDULER_DB_URL"] = self.db_url
        env["SUPERVISOR_JOB_CLASS"] = self.job_class
        env["SUPERVISOR_LOG_LEVEL"] = self.log_level
        env["JOB_SCRIPT_TIMEOUT"] = str(self.job_script_timeout)
        return env


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
