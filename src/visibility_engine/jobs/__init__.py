"""Celery job definitions."""

from visibility_engine.jobs.visibility_tasks import (
    dispatch_batch_run_task,
    enqueue_batch_run,
    process_schedules_task,
)

__all__ = [
    "dispatch_batch_run_task",
    "enqueue_batch_run",
    "process_schedules_task",
]
