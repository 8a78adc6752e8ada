"""Recurring visibility schedules and the scheduler tick.

Each account has at most one schedule. The tick runs from Celery beat: it
activates one-off scheduled runs whose time has come, then starts a run for
every enabled schedule that is due and moves its next_run_at forward.
"""

import calendar
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from visibility_engine.config import get_settings
from visibility_engine.db.models import VisibilityScheduleModel
from visibility_engine.db.session import get_session_context
from visibility_engine.domain.enums import LLMProvider, ScheduleFrequency
from visibility_engine.logging import get_logger
from visibility_engine.services.credits import InsufficientCreditsError
from visibility_engine.services.orchestrator import (
    ActiveRunConflictError,
    BatchRunError,
    BatchRunOrchestrator,
    NoQuestionsError,
)
from visibility_engine.utils.time import as_utc, utcnow

logger = get_logger(__name__)


class ScheduleError(Exception):
    """Base class for schedule errors."""

    pass


class InvalidScheduleError(ScheduleError):
    """Raised for out-of-range schedule fields."""

    pass


class ScheduleNotFoundError(ScheduleError):
    """Raised when the account has no schedule."""

    pass


@dataclass
class ScheduleTickResult:
    """What one scheduler tick did."""

    activated_run_ids: list[UUID] = field(default_factory=list)
    started_run_ids: list[UUID] = field(default_factory=list)
    skipped: dict[UUID, str] = field(default_factory=dict)


def _clamped(year: int, month: int, day: int) -> int:
    return min(day, calendar.monthrange(year, month)[1])


def compute_next_run(
    frequency: ScheduleFrequency | str,
    hour_of_day: int,
    day_of_week: int | None = None,
    day_of_month: int | None = None,
    after: datetime | None = None,
) -> datetime:
    """First occurrence of the schedule strictly after `after` (UTC).

    day_of_week is 0 for Monday. Monthly days past the end of a month fall on
    its last day (31 runs on Feb 28/29).
    """
    frequency = ScheduleFrequency(frequency)
    after = as_utc(after) or utcnow()
    base = after.replace(minute=0, second=0, microsecond=0, hour=hour_of_day)

    if frequency == ScheduleFrequency.DAILY:
        candidate = base
        if candidate <= after:
            candidate += timedelta(days=1)
        return candidate

    if frequency == ScheduleFrequency.WEEKLY:
        target = 0 if day_of_week is None else day_of_week
        candidate = base + timedelta(days=(target - after.weekday()) % 7)
        if candidate <= after:
            candidate += timedelta(weeks=1)
        return candidate

    target = 1 if day_of_month is None else day_of_month
    candidate = base.replace(day=_clamped(after.year, after.month, target))
    if candidate <= after:
        year, month = (after.year + 1, 1) if after.month == 12 else (after.year, after.month + 1)
        candidate = base.replace(year=year, month=month, day=_clamped(year, month, target))
    return candidate


def _validate(
    frequency: str,
    hour_of_day: int,
    day_of_week: int | None,
    day_of_month: int | None,
    providers: list[LLMProvider],
    runs_per_question: int,
) -> ScheduleFrequency:
    try:
        parsed = ScheduleFrequency(frequency)
    except ValueError as e:
        raise InvalidScheduleError(f"Unknown frequency: {frequency}") from e
    if not 0 <= hour_of_day <= 23:
        raise InvalidScheduleError("hour_of_day must be between 0 and 23")
    if day_of_week is not None and not 0 <= day_of_week <= 6:
        raise InvalidScheduleError("day_of_week must be between 0 (Monday) and 6 (Sunday)")
    if day_of_month is not None and not 1 <= day_of_month <= 31:
        raise InvalidScheduleError("day_of_month must be between 1 and 31")
    if not providers:
        raise InvalidScheduleError("At least one valid provider is required")
    max_runs = get_settings().max_runs_per_question
    if not 1 <= runs_per_question <= max_runs:
        raise InvalidScheduleError(f"runs_per_question must be between 1 and {max_runs}")
    return parsed


def get_schedule(session: Session, account_id: UUID) -> VisibilityScheduleModel | None:
    return session.execute(
        select(VisibilityScheduleModel).where(VisibilityScheduleModel.account_id == account_id)
    ).scalar_one_or_none()


def upsert_schedule(
    session: Session,
    account_id: UUID,
    frequency: str,
    providers: list[str],
    hour_of_day: int = 9,
    day_of_week: int | None = None,
    day_of_month: int | None = None,
    runs_per_question: int = 1,
    is_enabled: bool = True,
    now: datetime | None = None,
) -> VisibilityScheduleModel:
    """Create or replace the account's schedule and compute its next run."""
    parsed_providers = LLMProvider.parse_many(providers)
    parsed = _validate(
        frequency, hour_of_day, day_of_week, day_of_month, parsed_providers, runs_per_question
    )

    schedule = get_schedule(session, account_id)
    if schedule is None:
        schedule = VisibilityScheduleModel(account_id=account_id)
        session.add(schedule)

    schedule.frequency = str(parsed)
    schedule.hour_of_day = hour_of_day
    schedule.day_of_week = day_of_week if parsed == ScheduleFrequency.WEEKLY else None
    schedule.day_of_month = day_of_month if parsed == ScheduleFrequency.MONTHLY else None
    schedule.providers = [str(p) for p in parsed_providers]
    schedule.runs_per_question = runs_per_question
    schedule.is_enabled = is_enabled
    schedule.next_run_at = compute_next_run(
        parsed, hour_of_day, schedule.day_of_week, schedule.day_of_month, after=now
    )
    session.flush()

    logger.info(
        "visibility_schedule_saved",
        account_id=str(account_id),
        frequency=schedule.frequency,
        next_run_at=schedule.next_run_at.isoformat(),
        is_enabled=is_enabled,
    )
    return schedule


def disable_schedule(session: Session, account_id: UUID) -> VisibilityScheduleModel:
    schedule = get_schedule(session, account_id)
    if schedule is None:
        raise ScheduleNotFoundError(f"No schedule for account {account_id}")
    schedule.is_enabled = False
    session.flush()
    logger.info("visibility_schedule_disabled", account_id=str(account_id))
    return schedule


def tick(orchestrator: BatchRunOrchestrator, now: datetime | None = None) -> ScheduleTickResult:
    """Activate due one-off runs and fire due recurring schedules."""
    now = as_utc(now) or utcnow()
    result = ScheduleTickResult()
    result.activated_run_ids = orchestrator.activate_due_runs(now)

    with get_session_context() as session:
        due = [
            (s.id, s.account_id, list(s.providers), s.runs_per_question)
            for s in session.execute(
                select(VisibilityScheduleModel)
                .where(
                    VisibilityScheduleModel.is_enabled.is_(True),
                    VisibilityScheduleModel.next_run_at <= now,
                )
                .order_by(VisibilityScheduleModel.next_run_at)
            ).scalars()
        ]

    for schedule_id, account_id, providers, runs_per_question in due:
        run_id: UUID | None = None
        try:
            snapshot = orchestrator.start(
                account_id,
                providers,
                runs_per_question=runs_per_question,
                schedule_id=schedule_id,
            )
            run_id = snapshot.run_id
            status = "started"
            result.started_run_ids.append(run_id)
        except ActiveRunConflictError:
            status = "skipped_active_run"
        except InsufficientCreditsError as e:
            status = f"skipped_insufficient_credits ({e.required} required, {e.available} available)"
        except NoQuestionsError:
            status = "skipped_no_questions"
        except BatchRunError as e:
            status = f"error: {e}"

        if run_id is None:
            result.skipped[schedule_id] = status
            logger.info(
                "visibility_schedule_skipped",
                schedule_id=str(schedule_id),
                account_id=str(account_id),
                reason=status,
            )

        with get_session_context() as session:
            schedule = session.get(VisibilityScheduleModel, schedule_id)
            if schedule is None:
                continue
            schedule.last_run_at = now
            schedule.last_status = status[:50]
            if run_id is not None:
                schedule.last_run_id = run_id
            schedule.next_run_at = compute_next_run(
                schedule.frequency,
                schedule.hour_of_day,
                schedule.day_of_week,
                schedule.day_of_month,
                after=now,
            )

    logger.info(
        "scheduler_tick_complete",
        activated=len(result.activated_run_ids),
        started=len(result.started_run_ids),
        skipped=len(result.skipped),
    )
    return result
