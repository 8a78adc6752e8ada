"""Celery tasks for batch run dispatch and recurring schedules."""

from typing import Any
from uuid import UUID

from visibility_engine.logging import get_logger
from visibility_engine.services.orchestrator import BatchRunOrchestrator, RunNotFoundError
from visibility_engine.services.scheduler import tick
from visibility_engine.utils.async_utils import run_async
from visibility_engine.worker import celery_app

logger = get_logger(__name__)


def enqueue_batch_run(run_id: UUID) -> None:
    """Queue a pending batch run for the dispatch worker."""
    dispatch_batch_run_task.delay(str(run_id))
    logger.info("batch_run_enqueued", run_id=str(run_id))


@celery_app.task(
    bind=True,
    name="visibility.dispatch_batch_run",
    max_retries=0,  # Redelivery resumes the run; items are never re-attempted
)
def dispatch_batch_run_task(self: Any, run_id: str) -> dict[str, Any]:
    """Run every pending item of a batch run and settle its credits.

    Args:
        run_id: UUID of the batch run

    Returns:
        Dict with the run's terminal counters
    """
    task_id = self.request.id
    logger.info("dispatch_batch_run_started", task_id=task_id, run_id=run_id)

    orchestrator = BatchRunOrchestrator(dispatcher=enqueue_batch_run)
    try:
        snapshot = run_async(orchestrator.dispatch(UUID(run_id)))
    except RunNotFoundError:
        logger.warning("dispatch_batch_run_missing", task_id=task_id, run_id=run_id)
        return {"success": False, "run_id": run_id, "error": "not_found"}

    return {
        "success": snapshot.status == "completed",
        "run_id": run_id,
        "status": str(snapshot.status),
        "successful_checks": snapshot.successful_checks,
        "failed_checks": snapshot.failed_checks,
        "error_message": snapshot.error_message,
    }


@celery_app.task(bind=True, name="visibility.process_schedules")
def process_schedules_task(self: Any) -> dict[str, Any]:
    """Scheduler tick: activate due scheduled runs and fire recurring schedules."""
    task_id = self.request.id
    logger.info("process_schedules_started", task_id=task_id)

    result = tick(BatchRunOrchestrator(dispatcher=enqueue_batch_run))

    return {
        "activated": [str(run_id) for run_id in result.activated_run_ids],
        "started": [str(run_id) for run_id in result.started_run_ids],
        "skipped": {str(schedule_id): reason for schedule_id, reason in result.skipped.items()},
    }
