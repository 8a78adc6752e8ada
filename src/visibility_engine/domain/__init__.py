"""Domain enumerations and value objects."""

from visibility_engine.domain.enums import (
    ACTIVE_RUN_STATUSES,
    TERMINAL_RUN_STATUSES,
    BatchItemStatus,
    BatchRunStatus,
    LedgerEntryType,
    LLMProvider,
    ReservationStatus,
    ScheduleFrequency,
    TrendGranularity,
)
from visibility_engine.domain.models import (
    ActiveRunInfo,
    BatchPreview,
    BatchRunSnapshot,
    ConsistencyStat,
    CreditBalanceSnapshot,
    QuestionItem,
    RateStat,
    ReservationToken,
    TrendPeriod,
    VisibilitySummary,
)

__all__ = [
    "ACTIVE_RUN_STATUSES",
    "TERMINAL_RUN_STATUSES",
    "ActiveRunInfo",
    "BatchItemStatus",
    "BatchPreview",
    "BatchRunSnapshot",
    "BatchRunStatus",
    "ConsistencyStat",
    "CreditBalanceSnapshot",
    "LLMProvider",
    "LedgerEntryType",
    "QuestionItem",
    "RateStat",
    "ReservationStatus",
    "ReservationToken",
    "ScheduleFrequency",
    "TrendGranularity",
    "TrendPeriod",
    "VisibilitySummary",
]
