"""Application services."""

from visibility_engine.services.orchestrator import (
    BatchRunOrchestrator,
    get_batch_run_orchestrator,
)
from visibility_engine.services.scheduler import ScheduleTickResult

__all__ = [
    "BatchRunOrchestrator",
    "ScheduleTickResult",
    "get_batch_run_orchestrator",
]
