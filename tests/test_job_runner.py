"""
Unit tests for the worker side: the job runner entry point, process helpers
and the built-in job handlers.
"""

import json
import os
import signal
import subprocess
import sys
import tempfile
import textwrap
import unittest
from unittest import mock

from sqlmodel import Session, SQLModel, create_engine

# Add parent directory to path to import app modules
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from scheduler.config import SupervisorConfig
from scheduler.handlers import (
    HANDLERS,
    ScriptExecutionError,
    UnknownHandlerError,
    build_script_command,
    get_handler,
    register_handler,
)
from scheduler.models import JobStatus, ScheduledJob
from scheduler.processes import build_worker_command, spawn_worker, terminate_process
from services.job_runner import main as job_runner_main
from services.job_runner import run_job


class TestRunJob(unittest.TestCase):
    """Test performing a job inside the worker process."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db_url = f"sqlite:///{os.path.join(self.tmpdir.name, 'jobs.db')}"
        self.engine = create_engine(self.db_url)
        SQLModel.metadata.create_all(self.engine)
        self.config = SupervisorConfig(db_url=self.db_url)

        @register_handler("test-fail")
        def fail(job, config):
            raise RuntimeError("job body blew up")

    def tearDown(self):
        HANDLERS.pop("test-fail", None)
        self.engine.dispose()
        self.tmpdir.cleanup()

    def add_job(self, handler):
        with Session(self.engine) as session:
            job = ScheduledJob.enqueue(session, f"{handler} job", handler=handler)
            return job.id

    def get_job(self, job_id):
        with Session(self.engine) as session:
            return session.get(ScheduledJob, job_id)

    def test_successful_job(self):
        job_id = self.add_job("noop")

        exit_code = run_job(str(job_id), self.config, engine=self.engine)

        job = self.get_job(job_id)
        self.assertEqual(exit_code, 0)
        self.assertEqual(job.status, JobStatus.COMPLETED)
        self.assertEqual(job.pid, os.getpid())

    def test_job_errors_are_contained(self):
        """An exception in the job body is logged and turned into an exit code."""
        job_id = self.add_job("test-fail")

        with self.assertLogs("JobRunner", level="ERROR") as captured:
            exit_code = run_job(str(job_id), self.config, engine=self.engine)

        self.assertEqual(exit_code, 1)
        self.assertIn("RuntimeError: job body blew up", captured.output[0])
        job = self.get_job(job_id)
        self.assertEqual(job.status, JobStatus.FAILED)

    def test_job_already_claimed_is_skipped(self):
        """A second worker for the same job exits cleanly without touching it."""
        job_id = self.add_job("noop")
        with Session(self.engine) as session:
            ScheduledJob.find(session, job_id).claim(session, 1234)

        with self.assertLogs("JobRunner", level="WARNING") as captured:
            exit_code = run_job(str(job_id), self.config, engine=self.engine)

        self.assertEqual(exit_code, 0)
        self.assertIn(f"Skipping job {job_id}", captured.output[0])
        job = self.get_job(job_id)
        self.assertEqual((job.status, job.pid), (JobStatus.RUNNING, 1234))

    def test_missing_job(self):
        with self.assertLogs("JobRunner", level="WARNING"):
            exit_code = run_job("987", self.config, engine=self.engine)
        self.assertEqual(exit_code, 0)

    def test_main_requires_job_id(self):
        with self.assertRaises(SystemExit) as ctx:
            job_runner_main([])
        self.assertEqual(ctx.exception.code, 2)


class TestProcesses(unittest.TestCase):
    """Test worker spawning and signalling."""

    def test_worker_command(self):
        self.assertEqual(
            build_worker_command(12),
            [sys.executable, "-m", "services.job_runner", "12"],
        )

    def test_spawn_worker_is_detached(self):
        config = SupervisorConfig(db_url="sqlite:///jobs.db")
        with mock.patch("scheduler.processes.subprocess.Popen") as popen:
            process = spawn_worker(5, config)

        self.assertIs(process, popen.return_value)
        args, kwargs = popen.call_args
        self.assertEqual(args[0], build_worker_command(5))
        self.assertTrue(kwargs["start_new_session"])
        self.assertEqual(kwargs["env"]["SCHEDULER_DB_URL"], "sqlite:///jobs.db")

    def test_terminate_signals_process_group(self):
        with mock.patch("scheduler.processes.os.killpg") as killpg, \
                mock.patch("scheduler.processes.os.kill") as kill:
            self.assertTrue(terminate_process(321))
        killpg.assert_called_once_with(321, signal.SIGTERM)
        kill.assert_not_called()

    def test_terminate_falls_back_to_single_process(self):
        """A pid that leads no process group is signalled directly."""
        with mock.patch("scheduler.processes.os.killpg", side_effect=ProcessLookupError), \
                mock.patch("scheduler.processes.os.kill") as kill:
            self.assertTrue(terminate_process(321))
        kill.assert_called_once_with(321, signal.SIGTERM)

    def test_terminate_without_pid(self):
        with mock.patch("scheduler.processes.os.killpg") as killpg, \
                mock.patch("scheduler.processes.os.kill") as kill:
            self.assertFalse(terminate_process(None))
        killpg.assert_not_called()
        kill.assert_not_called()

    def test_terminate_ignores_dead_or_foreign_processes(self):
        for error in (ProcessLookupError, FileNotFoundError, PermissionError):
            with mock.patch("scheduler.processes.os.killpg", side_effect=error), \
                    mock.patch("scheduler.processes.os.kill", side_effect=error):
                self.assertFalse(terminate_process(321))

    def test_terminate_real_exited_process(self):
        """Signalling a reaped child reports failure instead of raising."""
        child = subprocess.Popen([sys.executable, "-c", "pass"])
        child.wait()
        self.assertFalse(terminate_process(child.pid))


class TestHandlers(unittest.TestCase):
    """Test the handler registry and the script handler."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()

    def tearDown(self):
        self.tmpdir.cleanup()

    def write_script(self, body):
        path = os.path.join(self.tmpdir.name, "job.py")
        with open(path, "w") as f:
            f.write(textwrap.dedent(body))
        return path

    def run_script(self, arguments, config=None):
        return get_handler("script")(self.make_job(arguments), config or SupervisorConfig())

    def make_job(self, arguments):
        job = ScheduledJob(id=1, name="script job", handler="script")
        job.arguments = None if arguments is None else json.dumps(arguments)
        return job

    def test_unknown_handler(self):
        with self.assertRaises(UnknownHandlerError):
            get_handler("missing")

    def test_builtin_handlers_registered(self):
        self.assertIn("script", HANDLERS)
        self.assertIn("noop", HANDLERS)

    def test_build_script_command(self):
        self.assertEqual(build_script_command("run.py"), [sys.executable, "run.py"])
        self.assertEqual(build_script_command("run.sh", "--fast 'a b'"), ["/bin/bash", "run.sh", "--fast", "a b"])
        self.assertEqual(build_script_command("./tool"), ["./tool"])

    def test_script_success_captures_output(self):
        path = self.write_script("""
            import sys
            print("hello " + sys.argv[1])
        """)
        output = self.run_script({"script_path": path, "args": "world"})
        self.assertIn("hello world", output)

    def test_script_non_zero_exit(self):
        path = self.write_script("""
            import sys
            sys.exit(3)
        """)
        with self.assertRaises(ScriptExecutionError) as ctx:
            self.run_script({"script_path": path})
        self.assertIn("Exit code 3", str(ctx.exception))

    def test_script_missing_file(self):
        with self.assertRaises(FileNotFoundError):
            self.run_script({"script_path": "/nonexistent/job.py"})

    def test_script_timeout_comes_from_config(self):
        path = self.write_script("print('x')")
        config = SupervisorConfig(job_script_timeout=7)
        timeout = subprocess.TimeoutExpired(cmd="job.py", timeout=7)
        with mock.patch("scheduler.handlers.subprocess.run", side_effect=timeout) as run:
            with self.assertRaises(ScriptExecutionError) as ctx:
                self.run_script({"script_path": path}, config)
        self.assertEqual(run.call_args.kwargs["timeout"], 7)
        self.assertIn("timed out after 7 seconds", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
