"""
Cron scheduling of the ledger jobs on a durable workflow engine.

Jobs only see WorkflowEngine; app.py picks the DBOS backend.
"""

from workflow.engine import WorkflowEngine
from workflow.scheduler import build_jobs, job_tick, register_jobs

__all__ = ["WorkflowEngine", "build_jobs", "job_tick", "register_jobs"]
