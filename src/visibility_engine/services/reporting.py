"""Trend and consistency reports over the visibility check store.

Trend windows are calendar weeks (starting on Sunday) or calendar months, in
UTC. A window without checks reports total = 0 so callers can tell "not
checked" apart from "checked, never cited".
"""

from bisect import bisect_right
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy.orm import Session

from visibility_engine.config import settings
from visibility_engine.domain.enums import LLMProvider, TrendGranularity
from visibility_engine.domain.models import ConsistencyStat, RateStat, TrendPeriod
from visibility_engine.services import check_store
from visibility_engine.utils.time import as_utc, utcnow


def week_start(value: datetime) -> datetime:
    """Midnight of the Sunday on or before `value`."""
    days_since_sunday = (value.weekday() + 1) % 7
    day = value - timedelta(days=days_since_sunday)
    return day.replace(hour=0, minute=0, second=0, microsecond=0)


def month_start(value: datetime) -> datetime:
    return value.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def add_months(value: datetime, months: int) -> datetime:
    """Shift a first-of-month datetime by whole months."""
    index = value.year * 12 + (value.month - 1) + months
    return value.replace(year=index // 12, month=index % 12 + 1)


def period_windows(
    granularity: TrendGranularity,
    now: datetime,
    periods: int,
) -> list[tuple[datetime, datetime, str]]:
    """(start, end, label) of the last `periods` windows, oldest first.

    The current, partial window is the last one.
    """
    now = as_utc(now) or utcnow()
    windows = []
    if granularity == TrendGranularity.MONTHLY:
        current = month_start(now)
        for offset in range(periods - 1, -1, -1):
            start = add_months(current, -offset)
            windows.append((start, add_months(start, 1), start.strftime("%b %y")))
    else:
        current = week_start(now)
        for offset in range(periods - 1, -1, -1):
            start = current - timedelta(weeks=offset)
            windows.append((start, start + timedelta(weeks=1), f"{start:%b} {start.day}"))
    return windows


def trend(
    session: Session,
    account_id: UUID,
    keyword_id: UUID | None = None,
    granularity: TrendGranularity = TrendGranularity.WEEKLY,
    now: datetime | None = None,
    providers: list[LLMProvider] | None = None,
) -> list[TrendPeriod]:
    """Citation and mention rates per window, per provider and overall."""
    periods = (
        settings.trend_monthly_periods
        if granularity == TrendGranularity.MONTHLY
        else settings.trend_weekly_periods
    )
    windows = period_windows(granularity, now or utcnow(), periods)
    tracked = [str(p) for p in (providers or list(LLMProvider))]

    result = [
        TrendPeriod(
            label=label,
            start=start,
            end=end,
            per_provider={provider: RateStat() for provider in tracked},
            overall=RateStat(),
        )
        for start, end, label in windows
    ]
    starts = [period.start for period in result]

    checks = check_store.list_checks(
        session,
        account_id,
        keyword_id=keyword_id,
        since=windows[0][0],
        until=windows[-1][1],
    )
    for check in checks:
        checked_at = as_utc(check.checked_at)
        if checked_at is None:
            continue
        index = bisect_right(starts, checked_at) - 1
        if index < 0 or checked_at >= result[index].end:
            continue
        period = result[index]
        if check.provider not in period.per_provider:
            continue
        period.per_provider[check.provider].add(check.domain_cited, check.brand_mentioned)
        period.overall.add(check.domain_cited, check.brand_mentioned)

    return result


def consistency(
    session: Session,
    account_id: UUID,
    keyword_id: UUID | None = None,
    question: str | None = None,
    run_id: UUID | None = None,
) -> list[ConsistencyStat]:
    """How often each provider cites/mentions us across repeated checks.

    Scope it to one question (and optionally one batch run): LLM answers are
    not deterministic, so a single check cannot answer this.
    """
    counts: dict[str, RateStat] = {}
    for check in check_store.list_checks(
        session, account_id, keyword_id=keyword_id, question=question, run_id=run_id
    ):
        counts.setdefault(check.provider, RateStat()).add(
            check.domain_cited, check.brand_mentioned
        )

    order = {str(p): i for i, p in enumerate(LLMProvider)}
    return [
        ConsistencyStat(
            provider=LLMProvider(provider),
            total_runs=stat.total,
            cited=stat.cited,
            mentioned=stat.mentioned,
        )
        for provider, stat in sorted(counts.items(), key=lambda kv: order.get(kv[0], len(order)))
        if provider in order
    ]
