"""Celery worker configuration."""

from celery import Celery

from visibility_engine.config import settings
from visibility_engine.logging import setup_logging

# Setup logging before anything else
setup_logging()

# Create Celery app
celery_app = Celery(
    "visibility_engine",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # Task execution
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=3600,  # Large batches with slow providers
    task_soft_time_limit=3300,
    # Worker settings
    worker_prefetch_multiplier=1,
    worker_concurrency=4,
    # Result backend
    result_expires=86400,  # 24 hours
    # Task routing
    task_routes={
        "visibility.dispatch_batch_run": {"queue": "batch"},
        "visibility.process_schedules": {"queue": "default"},
    },
    # Beat scheduler (for periodic tasks)
    beat_schedule={
        "process-visibility-schedules": {
            "task": "visibility.process_schedules",
            "schedule": settings.scheduler_tick_seconds,
            "options": {"queue": "default"},
        },
    },
)

# Auto-discover tasks
celery_app.autodiscover_tasks(["visibility_engine.jobs"], related_name="visibility_tasks")
