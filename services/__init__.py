"""
Standalone services for job supervision and execution.

This package contains the processes that run outside of any web frontend:
- supervisor_service: Polls for due jobs, spawns workers, reaps them and requeues on shutdown
- job_runner: Worker process entry point that performs a single job
"""
