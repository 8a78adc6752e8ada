"""Visibility summary aggregator.

Summaries are derived from the check store and may be thrown away and
rebuilt at any time. The cached row is a convenience for list views; the
value computed from the checks is always the authoritative one.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from visibility_engine.db.models import VisibilityCheckModel, VisibilitySummaryModel
from visibility_engine.domain.models import ProviderSummaryStat, VisibilitySummary
from visibility_engine.logging import get_logger
from visibility_engine.services import check_store
from visibility_engine.utils.time import as_utc

logger = get_logger(__name__)


def compute(session: Session, account_id: UUID, keyword_id: UUID) -> VisibilitySummary:
    """Compute the current-state summary for one keyword from its checks.

    Only the latest check per (question, provider) counts. A question is
    cited when any provider's latest check cites the domain.
    """
    latest = check_store.latest_per_question_provider(session, account_id, keyword_id)

    questions: set[str] = set()
    cited_questions: set[str] = set()
    stats: dict[str, ProviderSummaryStat] = {}
    positions: dict[str, list[int]] = {}
    last_checked_at: datetime | None = None

    for (question, provider), check in latest.items():
        checked_at = as_utc(check.checked_at)
        questions.add(question)
        if check.domain_cited:
            cited_questions.add(question)

        stat = stats.setdefault(provider, ProviderSummaryStat())
        stat.checked += 1
        if check.domain_cited:
            stat.cited += 1
            if check.citation_position is not None:
                positions.setdefault(provider, []).append(check.citation_position)
        if check.brand_mentioned:
            stat.mentioned += 1
        if stat.last_checked_at is None or (checked_at and checked_at > stat.last_checked_at):
            stat.last_checked_at = checked_at
        if last_checked_at is None or (checked_at and checked_at > last_checked_at):
            last_checked_at = checked_at

    for provider, values in positions.items():
        stats[provider].avg_position = round(sum(values) / len(values), 1)

    total = len(questions)
    cited = len(cited_questions)
    return VisibilitySummary(
        account_id=account_id,
        keyword_id=keyword_id,
        total_questions=total,
        questions_with_citation=cited,
        visibility_score=round(100 * cited / total) if total else 0,
        provider_stats=dict(sorted(stats.items())),
        last_checked_at=last_checked_at,
    )


def _stats_to_json(stats: dict[str, ProviderSummaryStat]) -> dict[str, Any]:
    return {
        provider: {
            "checked": stat.checked,
            "cited": stat.cited,
            "mentioned": stat.mentioned,
            "avg_position": stat.avg_position,
            "last_checked_at": stat.last_checked_at.isoformat() if stat.last_checked_at else None,
        }
        for provider, stat in stats.items()
    }


def _stats_from_json(data: dict[str, Any] | None) -> dict[str, ProviderSummaryStat]:
    stats = {}
    for provider, raw in (data or {}).items():
        last = raw.get("last_checked_at")
        stats[provider] = ProviderSummaryStat(
            checked=raw.get("checked", 0),
            cited=raw.get("cited", 0),
            mentioned=raw.get("mentioned", 0),
            avg_position=raw.get("avg_position"),
            last_checked_at=datetime.fromisoformat(last) if last else None,
        )
    return stats


def _from_row(row: VisibilitySummaryModel) -> VisibilitySummary:
    return VisibilitySummary(
        account_id=row.account_id,
        keyword_id=row.keyword_id,
        total_questions=row.total_questions,
        questions_with_citation=row.questions_with_citation,
        visibility_score=row.visibility_score,
        provider_stats=_stats_from_json(row.provider_stats),
        last_checked_at=as_utc(row.last_checked_at),
    )


def refresh(session: Session, account_id: UUID, keyword_id: UUID) -> VisibilitySummary:
    """Recompute a keyword's summary and upsert the cached row."""
    summary = compute(session, account_id, keyword_id)

    row = session.execute(
        select(VisibilitySummaryModel).where(
            VisibilitySummaryModel.account_id == account_id,
            VisibilitySummaryModel.keyword_id == keyword_id,
        )
    ).scalar_one_or_none()
    if row is None:
        row = VisibilitySummaryModel(account_id=account_id, keyword_id=keyword_id)
        session.add(row)

    row.total_questions = summary.total_questions
    row.questions_with_citation = summary.questions_with_citation
    row.visibility_score = summary.visibility_score
    row.provider_stats = _stats_to_json(summary.provider_stats)
    row.last_checked_at = summary.last_checked_at
    session.flush()

    logger.debug(
        "visibility_summary_refreshed",
        account_id=str(account_id),
        keyword_id=str(keyword_id),
        visibility_score=summary.visibility_score,
    )
    return summary


def get_cached(session: Session, account_id: UUID, keyword_id: UUID) -> VisibilitySummary | None:
    row = session.execute(
        select(VisibilitySummaryModel).where(
            VisibilitySummaryModel.account_id == account_id,
            VisibilitySummaryModel.keyword_id == keyword_id,
        )
    ).scalar_one_or_none()
    return _from_row(row) if row else None


def account_summaries(
    session: Session,
    account_id: UUID,
    min_score: int | None = None,
) -> list[VisibilitySummary]:
    """Cached summaries for every keyword of an account, best score first."""
    query = select(VisibilitySummaryModel).where(VisibilitySummaryModel.account_id == account_id)
    if min_score is not None:
        query = query.where(VisibilitySummaryModel.visibility_score >= min_score)
    query = query.order_by(VisibilitySummaryModel.visibility_score.desc())
    return [_from_row(row) for row in session.execute(query).scalars()]


def rebuild_account(session: Session, account_id: UUID) -> list[VisibilitySummary]:
    """Recompute and cache the summary of every keyword that has checks."""
    keyword_ids = list(
        session.execute(
            select(VisibilityCheckModel.keyword_id)
            .where(VisibilityCheckModel.account_id == account_id)
            .distinct()
        ).scalars()
    )
    summaries = [refresh(session, account_id, keyword_id) for keyword_id in keyword_ids]
    logger.info("visibility_summaries_rebuilt", account_id=str(account_id), count=len(summaries))
    return summaries
