"""Recurring visibility schedule endpoints."""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, HTTPException, status
from pydantic import Field

from visibility_engine.api.deps import AccountIdDep, SessionDep
from visibility_engine.api.schemas import CamelModel
from visibility_engine.config import settings
from visibility_engine.db.models import VisibilityScheduleModel
from visibility_engine.logging import get_logger
from visibility_engine.services import scheduler
from visibility_engine.services.scheduler import InvalidScheduleError, ScheduleNotFoundError
from visibility_engine.utils.time import as_utc

router = APIRouter(prefix="/visibility/schedule", tags=["Schedules"])
logger = get_logger(__name__)


class ScheduleRequest(CamelModel):
    """Create or replace the account's recurring schedule."""

    frequency: str = Field(..., pattern="^(daily|weekly|monthly)$")
    providers: list[str] = Field(..., min_length=1)
    hour_of_day: int = Field(default=9, ge=0, le=23)
    day_of_week: int | None = Field(default=None, ge=0, le=6, description="0 = Monday")
    day_of_month: int | None = Field(default=None, ge=1, le=31)
    runs_per_question: int = Field(default=1, ge=1, le=settings.max_runs_per_question)
    is_enabled: bool = True


class ScheduleResponse(CamelModel):
    id: UUID
    frequency: str
    providers: list[str]
    hour_of_day: int
    day_of_week: int | None = None
    day_of_month: int | None = None
    runs_per_question: int
    is_enabled: bool
    next_run_at: datetime
    last_run_at: datetime | None = None
    last_run_id: UUID | None = None
    last_status: str | None = None

    @classmethod
    def from_model(cls, schedule: VisibilityScheduleModel) -> "ScheduleResponse":
        return cls(
            id=schedule.id,
            frequency=schedule.frequency,
            providers=list(schedule.providers),
            hour_of_day=schedule.hour_of_day,
            day_of_week=schedule.day_of_week,
            day_of_month=schedule.day_of_month,
            runs_per_question=schedule.runs_per_question,
            is_enabled=schedule.is_enabled,
            next_run_at=as_utc(schedule.next_run_at),
            last_run_at=as_utc(schedule.last_run_at),
            last_run_id=schedule.last_run_id,
            last_status=schedule.last_status,
        )


@router.get("", response_model=ScheduleResponse, summary="Get schedule")
def get_schedule(account_id: AccountIdDep, session: SessionDep) -> ScheduleResponse:
    schedule = scheduler.get_schedule(session, account_id)
    if schedule is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "No schedule configured"},
        )
    return ScheduleResponse.from_model(schedule)


@router.put("", response_model=ScheduleResponse, summary="Create or update schedule")
def put_schedule(
    request: ScheduleRequest,
    account_id: AccountIdDep,
    session: SessionDep,
) -> ScheduleResponse:
    try:
        schedule = scheduler.upsert_schedule(
            session,
            account_id,
            frequency=request.frequency,
            providers=request.providers,
            hour_of_day=request.hour_of_day,
            day_of_week=request.day_of_week,
            day_of_month=request.day_of_month,
            runs_per_question=request.runs_per_question,
            is_enabled=request.is_enabled,
        )
    except InvalidScheduleError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail={"error": str(e)}
        ) from e
    session.commit()
    logger.info(
        "schedule_saved",
        account_id=str(account_id),
        frequency=schedule.frequency,
        next_run_at=as_utc(schedule.next_run_at).isoformat(),
    )
    return ScheduleResponse.from_model(schedule)


@router.delete("", response_model=ScheduleResponse, summary="Disable schedule")
def delete_schedule(account_id: AccountIdDep, session: SessionDep) -> ScheduleResponse:
    try:
        schedule = scheduler.disable_schedule(session, account_id)
    except ScheduleNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail={"error": str(e)}
        ) from e
    session.commit()
    logger.info("schedule_disabled", account_id=str(account_id))
    return ScheduleResponse.from_model(schedule)
