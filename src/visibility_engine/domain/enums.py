"""Domain enumerations."""

from enum import StrEnum


class LLMProvider(StrEnum):
    """AI assistants queried for citations and brand mentions."""

    CHATGPT = "chatgpt"
    CLAUDE = "claude"
    GEMINI = "gemini"
    PERPLEXITY = "perplexity"
    AI_OVERVIEW = "ai_overview"  # Google AI Overview on the results page

    @classmethod
    def parse_many(cls, values: list[str] | tuple[str, ...] | None) -> list["LLMProvider"]:
        """Parse provider names, dropping unknown ones and duplicates (order kept)."""
        parsed: list[LLMProvider] = []
        for value in values or []:
            try:
                provider = cls(value.strip().lower())
            except ValueError:
                continue
            if provider not in parsed:
                parsed.append(provider)
        return parsed


class BatchRunStatus(StrEnum):
    """Lifecycle of a batch run."""

    SCHEDULED = "scheduled"
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_RUN_STATUSES


ACTIVE_RUN_STATUSES = (
    BatchRunStatus.SCHEDULED,
    BatchRunStatus.PENDING,
    BatchRunStatus.PROCESSING,
)
TERMINAL_RUN_STATUSES = (
    BatchRunStatus.COMPLETED,
    BatchRunStatus.FAILED,
    BatchRunStatus.CANCELLED,
)


class BatchItemStatus(StrEnum):
    """Status of one (question, provider, repetition) work item."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"  # Run cancelled before the item was attempted


class ReservationStatus(StrEnum):
    """State of a credit reservation. Leaves HELD exactly once."""

    HELD = "held"
    DEBITED = "debited"
    REFUNDED = "refunded"


class LedgerEntryType(StrEnum):
    """Kinds of credit ledger entries."""

    GRANT = "grant"
    RESERVE = "reserve"
    DEBIT = "debit"
    REFUND = "refund"


class ScheduleFrequency(StrEnum):
    """Recurrence of a visibility schedule."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class TrendGranularity(StrEnum):
    """Window size for trend reports."""

    WEEKLY = "weekly"
    MONTHLY = "monthly"
