"""LLM visibility batch run and report endpoints."""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import Field

from visibility_engine.api.deps import AccountIdDep, OrchestratorDep, SessionDep
from visibility_engine.api.schemas import CamelModel, CreditBalanceResponse
from visibility_engine.domain.enums import TrendGranularity
from visibility_engine.domain.models import (
    ActiveRunInfo,
    BatchRunSnapshot,
    ProviderSummaryStat,
    RateStat,
    VisibilitySummary,
)
from visibility_engine.logging import get_logger
from visibility_engine.services import aggregator, credits, reporting
from visibility_engine.services.credits import InsufficientCreditsError
from visibility_engine.services.orchestrator import (
    ActiveRunConflictError,
    BatchRunError,
    InvalidProvidersError,
    InvalidRunOptionsError,
    NoQuestionsError,
    RunNotCancellableError,
    RunNotFoundError,
)

router = APIRouter(prefix="/visibility", tags=["Visibility"])
logger = get_logger(__name__)


# =============================================================================
# Schemas
# =============================================================================


class ActiveRunResponse(CamelModel):
    run_id: UUID
    status: str
    processed_questions: int
    total_questions: int
    scheduled_for: datetime | None = None

    @classmethod
    def from_info(cls, info: ActiveRunInfo | None) -> "ActiveRunResponse | None":
        if info is None:
            return None
        return cls(
            run_id=info.run_id,
            status=str(info.status),
            processed_questions=info.processed_questions,
            total_questions=info.total_questions,
            scheduled_for=info.scheduled_for,
        )


class PreviewResponse(CamelModel):
    """Cost estimate for a batch run."""

    total_questions: int
    keyword_count: int
    providers: list[str]
    runs_per_question: int
    total_checks: int
    total_credits: int
    cost_per_provider: dict[str, int]
    balance: CreditBalanceResponse
    has_credits: bool
    active_run: ActiveRunResponse | None = None


class StartBatchRunRequest(CamelModel):
    """Request to start (or schedule) a batch run."""

    providers: list[str] = Field(..., min_length=1)
    scheduled_for: datetime | None = None
    runs_per_question: int = Field(default=1, ge=1)
    retry_failed_from_run_id: UUID | None = None


class StartBatchRunResponse(CamelModel):
    """Response when a batch run is accepted."""

    run_id: UUID
    status: str
    total_questions: int
    total_checks: int
    providers: list[str]
    estimated_credits: int
    scheduled: bool
    scheduled_for: datetime | None = None
    credit_balance: CreditBalanceResponse


class BatchRunStatusResponse(CamelModel):
    """Batch run progress, as polled by clients."""

    run_id: UUID
    status: str
    providers: list[str]
    runs_per_question: int
    total_questions: int
    processed_questions: int
    total_checks: int
    processed_checks: int
    successful_checks: int
    failed_checks: int
    estimated_credits: int
    progress: int
    error_message: str | None = None
    scheduled_for: datetime | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    retry_of_run_id: UUID | None = None

    @classmethod
    def from_snapshot(cls, snapshot: BatchRunSnapshot) -> "BatchRunStatusResponse":
        return cls(
            run_id=snapshot.run_id,
            status=str(snapshot.status),
            providers=[str(p) for p in snapshot.providers],
            runs_per_question=snapshot.runs_per_question,
            total_questions=snapshot.total_questions,
            processed_questions=snapshot.processed_questions,
            total_checks=snapshot.total_checks,
            processed_checks=snapshot.processed_checks,
            successful_checks=snapshot.successful_checks,
            failed_checks=snapshot.failed_checks,
            estimated_credits=snapshot.estimated_credits,
            progress=snapshot.progress,
            error_message=snapshot.error_message,
            scheduled_for=snapshot.scheduled_for,
            created_at=snapshot.created_at,
            started_at=snapshot.started_at,
            completed_at=snapshot.completed_at,
            retry_of_run_id=snapshot.retry_of_run_id,
        )


class CancelBatchRunResponse(CamelModel):
    success: bool
    credits_refunded: int


class RateResponse(CamelModel):
    total: int
    cited: int
    mentioned: int
    citation_rate: int
    mention_rate: int
    has_data: bool

    @classmethod
    def from_stat(cls, stat: RateStat) -> "RateResponse":
        return cls(
            total=stat.total,
            cited=stat.cited,
            mentioned=stat.mentioned,
            citation_rate=stat.citation_rate,
            mention_rate=stat.mention_rate,
            has_data=stat.has_data,
        )


class TrendPeriodResponse(CamelModel):
    label: str
    start: datetime
    end: datetime
    per_provider: dict[str, RateResponse]
    overall: RateResponse


class TrendResponse(CamelModel):
    granularity: str
    periods: list[TrendPeriodResponse]


class ConsistencyProviderResponse(CamelModel):
    provider: str
    total_runs: int
    cited: int
    mentioned: int
    citation_rate: int
    mention_rate: int


class ConsistencyResponse(CamelModel):
    question: str | None = None
    run_id: UUID | None = None
    providers: list[ConsistencyProviderResponse]


class ProviderStatResponse(CamelModel):
    checked: int
    cited: int
    mentioned: int
    avg_position: float | None = None
    last_checked_at: datetime | None = None

    @classmethod
    def from_stat(cls, stat: ProviderSummaryStat) -> "ProviderStatResponse":
        return cls(
            checked=stat.checked,
            cited=stat.cited,
            mentioned=stat.mentioned,
            avg_position=stat.avg_position,
            last_checked_at=stat.last_checked_at,
        )


class SummaryResponse(CamelModel):
    keyword_id: UUID
    total_questions: int
    questions_with_citation: int
    visibility_score: int
    provider_stats: dict[str, ProviderStatResponse]
    last_checked_at: datetime | None = None

    @classmethod
    def from_summary(cls, summary: VisibilitySummary) -> "SummaryResponse":
        return cls(
            keyword_id=summary.keyword_id,
            total_questions=summary.total_questions,
            questions_with_citation=summary.questions_with_citation,
            visibility_score=summary.visibility_score,
            provider_stats={
                provider: ProviderStatResponse.from_stat(stat)
                for provider, stat in summary.provider_stats.items()
            },
            last_checked_at=summary.last_checked_at,
        )


# =============================================================================
# Batch runs
# =============================================================================


def _bad_request(e: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail={"error": str(e)})


@router.get(
    "/batch-run/preview",
    response_model=PreviewResponse,
    summary="Preview batch run cost",
)
def preview_batch_run(
    account_id: AccountIdDep,
    orchestrator: OrchestratorDep,
    providers: str | None = Query(None, description="Comma-separated provider names"),
    runs: int = Query(1, ge=1, description="Runs per question"),
) -> PreviewResponse:
    """Estimate credits for checking every configured question."""
    requested = [p for p in providers.split(",") if p.strip()] if providers else None
    try:
        preview = orchestrator.preview(account_id, requested, runs_per_question=runs)
    except (InvalidProvidersError, InvalidRunOptionsError) as e:
        raise _bad_request(e) from e

    return PreviewResponse(
        total_questions=preview.total_questions,
        keyword_count=preview.keyword_count,
        providers=[str(p) for p in preview.providers],
        runs_per_question=preview.runs_per_question,
        total_checks=preview.total_checks,
        total_credits=preview.total_credits,
        cost_per_provider=preview.cost_per_provider,
        balance=CreditBalanceResponse(
            available=preview.available_credits, reserved=preview.reserved_credits
        ),
        has_credits=preview.has_credits,
        active_run=ActiveRunResponse.from_info(preview.active_run),
    )


@router.post(
    "/batch-run",
    response_model=StartBatchRunResponse,
    summary="Start or schedule a batch run",
)
def start_batch_run(
    request: StartBatchRunRequest,
    account_id: AccountIdDep,
    orchestrator: OrchestratorDep,
    session: SessionDep,
) -> StartBatchRunResponse:
    """Reserve credits and queue a batch run. Returns without waiting for checks."""
    logger.info(
        "batch_run_requested",
        account_id=str(account_id),
        providers=request.providers,
        scheduled_for=request.scheduled_for.isoformat() if request.scheduled_for else None,
    )
    try:
        snapshot = orchestrator.start(
            account_id,
            request.providers,
            scheduled_for=request.scheduled_for,
            runs_per_question=request.runs_per_question,
            retry_failed_from_run_id=request.retry_failed_from_run_id,
        )
    except ActiveRunConflictError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "error": "A batch run is already in progress",
                "runId": str(e.run_id),
                "status": str(e.status),
            },
        ) from e
    except InsufficientCreditsError as e:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "error": "Insufficient credits",
                "required": e.required,
                "available": e.available,
            },
        ) from e
    except RunNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail={"error": str(e)}) from e
    except (InvalidProvidersError, InvalidRunOptionsError, NoQuestionsError) as e:
        raise _bad_request(e) from e
    except BatchRunError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail={"error": str(e)}
        ) from e

    balance = credits.balance(session, account_id)
    return StartBatchRunResponse(
        run_id=snapshot.run_id,
        status=str(snapshot.status),
        total_questions=snapshot.total_questions,
        total_checks=snapshot.total_checks,
        providers=[str(p) for p in snapshot.providers],
        estimated_credits=snapshot.estimated_credits,
        scheduled=snapshot.scheduled_for is not None,
        scheduled_for=snapshot.scheduled_for,
        credit_balance=CreditBalanceResponse(
            available=balance.available, reserved=balance.reserved
        ),
    )


@router.get(
    "/batch-run/{run_id}",
    response_model=BatchRunStatusResponse,
    summary="Get batch run status",
)
def get_batch_run(
    run_id: UUID,
    account_id: AccountIdDep,
    orchestrator: OrchestratorDep,
) -> BatchRunStatusResponse:
    try:
        snapshot = orchestrator.status(run_id, account_id=account_id)
    except RunNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail={"error": str(e)}) from e
    return BatchRunStatusResponse.from_snapshot(snapshot)


@router.get(
    "/batch-runs",
    response_model=list[BatchRunStatusResponse],
    summary="List recent batch runs",
)
def list_batch_runs(
    account_id: AccountIdDep,
    orchestrator: OrchestratorDep,
    limit: int = Query(20, ge=1, le=100, description="Number of runs"),
) -> list[BatchRunStatusResponse]:
    return [
        BatchRunStatusResponse.from_snapshot(snapshot)
        for snapshot in orchestrator.list_runs(account_id, limit=limit)
    ]


@router.delete(
    "/batch-run/{run_id}",
    response_model=CancelBatchRunResponse,
    summary="Cancel a scheduled batch run",
)
def cancel_batch_run(
    run_id: UUID,
    account_id: AccountIdDep,
    orchestrator: OrchestratorDep,
) -> CancelBatchRunResponse:
    """Cancel a run that has not started yet; its credits are refunded."""
    logger.info("batch_run_cancel_requested", account_id=str(account_id), run_id=str(run_id))
    try:
        refunded = orchestrator.cancel_scheduled(account_id, run_id)
    except RunNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail={"error": str(e)}) from e
    except RunNotCancellableError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "Only scheduled runs can be cancelled", "status": str(e.status)},
        ) from e
    return CancelBatchRunResponse(success=True, credits_refunded=refunded)


# =============================================================================
# Reports
# =============================================================================


@router.get("/trend", response_model=TrendResponse, summary="Citation trend")
def get_trend(
    account_id: AccountIdDep,
    session: SessionDep,
    keyword_id: UUID | None = Query(None, alias="keywordId"),
    granularity: TrendGranularity = Query(TrendGranularity.WEEKLY),
) -> TrendResponse:
    """Weekly (8 weeks) or monthly (6 months) citation and mention rates."""
    periods = reporting.trend(session, account_id, keyword_id=keyword_id, granularity=granularity)
    return TrendResponse(
        granularity=str(granularity),
        periods=[
            TrendPeriodResponse(
                label=period.label,
                start=period.start,
                end=period.end,
                per_provider={
                    provider: RateResponse.from_stat(stat)
                    for provider, stat in period.per_provider.items()
                },
                overall=RateResponse.from_stat(period.overall),
            )
            for period in periods
        ],
    )


@router.get("/consistency", response_model=ConsistencyResponse, summary="Multi-run consistency")
def get_consistency(
    account_id: AccountIdDep,
    session: SessionDep,
    keyword_id: UUID | None = Query(None, alias="keywordId"),
    question: str | None = Query(None),
    run_id: UUID | None = Query(None, alias="runId"),
) -> ConsistencyResponse:
    """Per-provider citation and mention percentages across repeated checks."""
    stats = reporting.consistency(
        session, account_id, keyword_id=keyword_id, question=question, run_id=run_id
    )
    return ConsistencyResponse(
        question=question,
        run_id=run_id,
        providers=[
            ConsistencyProviderResponse(
                provider=str(stat.provider),
                total_runs=stat.total_runs,
                cited=stat.cited,
                mentioned=stat.mentioned,
                citation_rate=stat.citation_rate,
                mention_rate=stat.mention_rate,
            )
            for stat in stats
        ],
    )


@router.get("/summary", response_model=SummaryResponse, summary="Keyword visibility summary")
def get_summary(
    account_id: AccountIdDep,
    session: SessionDep,
    keyword_id: UUID = Query(..., alias="keywordId"),
) -> SummaryResponse:
    """Summary computed from the check store at read time."""
    return SummaryResponse.from_summary(aggregator.compute(session, account_id, keyword_id))


@router.get(
    "/summaries",
    response_model=list[SummaryResponse],
    summary="Cached summaries for all keywords",
)
def list_summaries(
    account_id: AccountIdDep,
    session: SessionDep,
    min_score: int | None = Query(None, alias="minScore", ge=0, le=100),
) -> list[SummaryResponse]:
    return [
        SummaryResponse.from_summary(summary)
        for summary in aggregator.account_summaries(session, account_id, min_score=min_score)
    ]
