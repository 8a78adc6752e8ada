"""Domain value objects shared by services, tasks and routes."""

from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from visibility_engine.domain.enums import BatchRunStatus, LLMProvider


@dataclass(frozen=True)
class ReservationToken:
    """Handle for credits moved from available to reserved."""

    reservation_id: UUID
    account_id: UUID
    amount: int


@dataclass(frozen=True)
class CreditBalanceSnapshot:
    """Read-only view of an account's credits."""

    account_id: UUID
    available: int
    reserved: int


@dataclass(frozen=True)
class QuestionItem:
    """A configured question and the keyword concept it belongs to."""

    keyword_id: UUID
    question: str
    question_index: int


@dataclass
class ActiveRunInfo:
    """The account's non-terminal run, surfaced by previews and conflicts."""

    run_id: UUID
    status: BatchRunStatus
    processed_questions: int
    total_questions: int
    scheduled_for: datetime | None = None


@dataclass
class BatchPreview:
    """Cost estimate for a batch run."""

    total_questions: int
    keyword_count: int
    providers: list[LLMProvider]
    runs_per_question: int
    total_checks: int
    total_credits: int
    cost_per_provider: dict[str, int]
    available_credits: int
    reserved_credits: int
    has_credits: bool
    active_run: ActiveRunInfo | None = None


@dataclass
class BatchRunSnapshot:
    """Point-in-time view of a batch run, as returned to pollers."""

    run_id: UUID
    account_id: UUID
    status: BatchRunStatus
    providers: list[LLMProvider]
    runs_per_question: int
    total_questions: int
    processed_questions: int
    total_checks: int
    processed_checks: int
    successful_checks: int
    failed_checks: int
    estimated_credits: int
    error_message: str | None = None
    scheduled_for: datetime | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    retry_of_run_id: UUID | None = None

    @property
    def progress(self) -> int:
        """Percentage of work items attempted (0-100)."""
        if self.total_checks <= 0:
            return 100 if self.status.is_terminal else 0
        return min(100, round(100 * self.processed_checks / self.total_checks))

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass
class ProviderSummaryStat:
    """Per-provider slice of a visibility summary."""

    checked: int = 0
    cited: int = 0
    mentioned: int = 0
    avg_position: float | None = None
    last_checked_at: datetime | None = None


@dataclass
class VisibilitySummary:
    """Current-state rollup for one keyword concept."""

    account_id: UUID
    keyword_id: UUID
    total_questions: int
    questions_with_citation: int
    visibility_score: int
    provider_stats: dict[str, ProviderSummaryStat] = field(default_factory=dict)
    last_checked_at: datetime | None = None


@dataclass
class RateStat:
    """Citation and mention counts with derived percentages."""

    total: int = 0
    cited: int = 0
    mentioned: int = 0

    @property
    def has_data(self) -> bool:
        return self.total > 0

    @property
    def citation_rate(self) -> int:
        return round(100 * self.cited / self.total) if self.total else 0

    @property
    def mention_rate(self) -> int:
        return round(100 * self.mentioned / self.total) if self.total else 0

    def add(self, cited: bool, mentioned: bool) -> None:
        self.total += 1
        if cited:
            self.cited += 1
        if mentioned:
            self.mentioned += 1


@dataclass
class TrendPeriod:
    """One time window of a trend series."""

    label: str
    start: datetime
    end: datetime
    per_provider: dict[str, RateStat]
    overall: RateStat


@dataclass
class ConsistencyStat:
    """How reliably one provider cites/mentions us across repeated runs."""

    provider: LLMProvider
    total_runs: int
    cited: int
    mentioned: int

    @property
    def citation_rate(self) -> int:
        return round(100 * self.cited / self.total_runs) if self.total_runs else 0

    @property
    def mention_rate(self) -> int:
        return round(100 * self.mentioned / self.total_runs) if self.total_runs else 0
