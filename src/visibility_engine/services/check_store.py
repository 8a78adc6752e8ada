"""Visibility check store.

The append-only system of record for provider check results. Rows are
inserted once and never updated or deleted; a newer check for the same
question and provider supersedes an older one only in read views.
"""

from dataclasses import asdict
from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from visibility_engine.adapters.provider_query.base import CheckOutcome
from visibility_engine.db.models import VisibilityCheckModel
from visibility_engine.domain.enums import LLMProvider
from visibility_engine.utils.time import utcnow


def append(
    session: Session,
    account_id: UUID,
    keyword_id: UUID,
    question: str,
    provider: LLMProvider | str,
    outcome: CheckOutcome,
    run_id: UUID | None = None,
    run_index: int = 0,
    checked_at: datetime | None = None,
) -> VisibilityCheckModel:
    """Insert one check result."""
    check = VisibilityCheckModel(
        account_id=account_id,
        keyword_id=keyword_id,
        run_id=run_id,
        run_index=run_index,
        question=question,
        provider=str(provider),
        domain_cited=outcome.cited,
        citation_position=outcome.citation_position if outcome.cited else None,
        citation_url=outcome.citation_url,
        total_citations=outcome.total_citations,
        brand_mentioned=outcome.mentioned,
        response_snippet=outcome.response_snippet,
        citations=[asdict(citation) for citation in outcome.citations] or None,
        api_cost_usd=outcome.cost_usd,
        checked_at=checked_at or utcnow(),
    )
    session.add(check)
    session.flush()
    return check


def list_checks(
    session: Session,
    account_id: UUID,
    keyword_id: UUID | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    provider: LLMProvider | str | None = None,
    question: str | None = None,
    run_id: UUID | None = None,
) -> list[VisibilityCheckModel]:
    """List checks in the given scope, oldest first (insertion order breaks ties)."""
    query = select(VisibilityCheckModel).where(VisibilityCheckModel.account_id == account_id)

    if keyword_id:
        query = query.where(VisibilityCheckModel.keyword_id == keyword_id)
    if since:
        query = query.where(VisibilityCheckModel.checked_at >= since)
    if until:
        query = query.where(VisibilityCheckModel.checked_at < until)
    if provider:
        query = query.where(VisibilityCheckModel.provider == str(provider))
    if question:
        query = query.where(VisibilityCheckModel.question == question)
    if run_id:
        query = query.where(VisibilityCheckModel.run_id == run_id)

    query = query.order_by(VisibilityCheckModel.checked_at, VisibilityCheckModel.id)
    return list(session.execute(query).scalars().all())


def latest_per_question_provider(
    session: Session,
    account_id: UUID,
    keyword_id: UUID | None = None,
) -> dict[tuple[str, str], VisibilityCheckModel]:
    """Latest check for every (question, provider) pair in scope."""
    latest: dict[tuple[str, str], VisibilityCheckModel] = {}
    for check in list_checks(session, account_id, keyword_id=keyword_id):
        latest[(check.question, check.provider)] = check
    return latest


def latest_results(
    session: Session,
    account_id: UUID,
    keyword_id: UUID | None = None,
    provider: LLMProvider | str | None = None,
    limit: int = 50,
) -> list[VisibilityCheckModel]:
    """Most recent checks, newest first."""
    query = select(VisibilityCheckModel).where(VisibilityCheckModel.account_id == account_id)
    if keyword_id:
        query = query.where(VisibilityCheckModel.keyword_id == keyword_id)
    if provider:
        query = query.where(VisibilityCheckModel.provider == str(provider))
    query = query.order_by(
        VisibilityCheckModel.checked_at.desc(), VisibilityCheckModel.id.desc()
    ).limit(limit)
    return list(session.execute(query).scalars().all())
