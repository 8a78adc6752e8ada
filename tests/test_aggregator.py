"""Tests for the check store and visibility summary aggregator."""

from datetime import timedelta
from uuid import uuid4

import pytest

from visibility_engine.adapters.provider_query import CheckOutcome, Citation
from visibility_engine.db.models import VisibilityCheckModel
from visibility_engine.db.session import get_session_context
from visibility_engine.domain.enums import LLMProvider
from visibility_engine.services import aggregator, check_store
from visibility_engine.utils.time import utcnow

CITED = CheckOutcome(cited=True, mentioned=True, citation_position=2, total_citations=5)
NOT_CITED = CheckOutcome(cited=False, mentioned=False, total_citations=4)


def test_append_ignores_position_when_not_cited(make_account) -> None:
    seeded = make_account(questions=[["Q1"]])
    outcome = CheckOutcome(cited=False, mentioned=True, citation_position=3)

    with get_session_context() as session:
        check = check_store.append(
            session, seeded.account_id, seeded.keyword_ids[0], "Q1", LLMProvider.CHATGPT, outcome
        )

    assert check.id is not None
    assert check.domain_cited is False
    assert check.citation_position is None
    assert check.brand_mentioned is True


def test_append_keeps_citations_and_cost(make_account) -> None:
    seeded = make_account(questions=[["Q1"]])
    outcome = CheckOutcome(
        cited=True,
        mentioned=False,
        citation_position=2,
        total_citations=2,
        cost_usd=0.0031,
        citations=(
            Citation(domain="zenithpipes.com", url="https://zenithpipes.com/", title=None, position=1),
            Citation(
                domain="acmeplumbing.com",
                url="https://acmeplumbing.com/about",
                title="About Acme",
                position=2,
                is_ours=True,
            ),
        ),
    )

    with get_session_context() as session:
        cited_id = check_store.append(
            session, seeded.account_id, seeded.keyword_ids[0], "Q1", "chatgpt", outcome
        ).id
        plain_id = check_store.append(
            session, seeded.account_id, seeded.keyword_ids[0], "Q1", "claude", NOT_CITED
        ).id

    with get_session_context() as session:
        cited = session.get(VisibilityCheckModel, cited_id)
        plain = session.get(VisibilityCheckModel, plain_id)

        assert cited.api_cost_usd == pytest.approx(0.0031)
        assert [c["domain"] for c in cited.citations] == ["zenithpipes.com", "acmeplumbing.com"]
        assert cited.citations[1] == {
            "domain": "acmeplumbing.com",
            "url": "https://acmeplumbing.com/about",
            "title": "About Acme",
            "position": 2,
            "is_ours": True,
        }
        assert plain.citations is None
        assert plain.api_cost_usd == 0.0


def test_latest_check_supersedes_older(make_account) -> None:
    seeded = make_account(questions=[["Q1", "Q2"]])
    keyword_id = seeded.keyword_ids[0]
    earlier = utcnow() - timedelta(days=2)
    later = utcnow() - timedelta(days=1)

    with get_session_context() as session:
        check_store.append(
            session, seeded.account_id, keyword_id, "Q1", "chatgpt", CITED, checked_at=earlier
        )
        check_store.append(
            session, seeded.account_id, keyword_id, "Q1", "chatgpt", NOT_CITED, checked_at=later
        )
        check_store.append(
            session, seeded.account_id, keyword_id, "Q2", "claude", CITED, checked_at=earlier
        )
        check_store.append(
            session, seeded.account_id, keyword_id, "Q2", "chatgpt", NOT_CITED, checked_at=later
        )

    with get_session_context() as session:
        summary = aggregator.compute(session, seeded.account_id, keyword_id)
        history = check_store.list_checks(session, seeded.account_id, keyword_id=keyword_id)

    # Q1's newer chatgpt result wins; Q2 is still cited by claude
    assert summary.total_questions == 2
    assert summary.questions_with_citation == 1
    assert summary.visibility_score == 50
    assert summary.provider_stats["chatgpt"].checked == 2
    assert summary.provider_stats["chatgpt"].cited == 0
    assert summary.provider_stats["claude"].cited == 1
    assert summary.provider_stats["claude"].avg_position == 2.0
    # History is kept for trends
    assert len(history) == 4


def test_average_position_and_rounding(make_account) -> None:
    seeded = make_account(questions=[["Q1", "Q2", "Q3"]])
    keyword_id = seeded.keyword_ids[0]

    with get_session_context() as session:
        for question, position in [("Q1", 1), ("Q2", 2)]:
            check_store.append(
                session,
                seeded.account_id,
                keyword_id,
                question,
                "perplexity",
                CheckOutcome(cited=True, mentioned=False, citation_position=position),
            )
        check_store.append(session, seeded.account_id, keyword_id, "Q3", "perplexity", NOT_CITED)
        summary = aggregator.compute(session, seeded.account_id, keyword_id)

    assert summary.visibility_score == 67
    assert summary.provider_stats["perplexity"].avg_position == 1.5
    assert summary.last_checked_at is not None


def test_no_checks_scores_zero(make_account) -> None:
    seeded = make_account(questions=[["Q1"]])

    with get_session_context() as session:
        summary = aggregator.compute(session, seeded.account_id, seeded.keyword_ids[0])

    assert summary.total_questions == 0
    assert summary.visibility_score == 0
    assert summary.provider_stats == {}


def test_rebuild_matches_online_compute(make_account) -> None:
    seeded = make_account(questions=[["Q1", "Q2"], ["Q3"]])
    first, second = seeded.keyword_ids

    with get_session_context() as session:
        check_store.append(session, seeded.account_id, first, "Q1", "gemini", CITED)
        check_store.append(session, seeded.account_id, first, "Q2", "gemini", NOT_CITED)
        check_store.append(session, seeded.account_id, second, "Q3", "gemini", CITED)

    with get_session_context() as session:
        rebuilt = aggregator.rebuild_account(session, seeded.account_id)

    with get_session_context() as session:
        online = {
            keyword_id: aggregator.compute(session, seeded.account_id, keyword_id)
            for keyword_id in (first, second)
        }
        cached = {
            keyword_id: aggregator.get_cached(session, seeded.account_id, keyword_id)
            for keyword_id in (first, second)
        }

    assert len(rebuilt) == 2
    for keyword_id in (first, second):
        assert cached[keyword_id] is not None
        assert cached[keyword_id].visibility_score == online[keyword_id].visibility_score
        assert cached[keyword_id].total_questions == online[keyword_id].total_questions
        assert (
            cached[keyword_id].provider_stats["gemini"].cited
            == online[keyword_id].provider_stats["gemini"].cited
        )


def test_refresh_is_idempotent(make_account) -> None:
    seeded = make_account(questions=[["Q1"]])
    keyword_id = seeded.keyword_ids[0]

    with get_session_context() as session:
        check_store.append(session, seeded.account_id, keyword_id, "Q1", "claude", CITED)
        first = aggregator.refresh(session, seeded.account_id, keyword_id)
        second = aggregator.refresh(session, seeded.account_id, keyword_id)
        summaries = aggregator.account_summaries(session, seeded.account_id)

    assert first.visibility_score == second.visibility_score == 100
    assert len(summaries) == 1


def test_account_summaries_filter_and_order(make_account) -> None:
    seeded = make_account(questions=[["Q1"], ["Q2", "Q3"]])
    first, second = seeded.keyword_ids

    with get_session_context() as session:
        check_store.append(session, seeded.account_id, first, "Q1", "chatgpt", NOT_CITED)
        check_store.append(session, seeded.account_id, second, "Q2", "chatgpt", CITED)
        check_store.append(session, seeded.account_id, second, "Q3", "chatgpt", NOT_CITED)
        aggregator.rebuild_account(session, seeded.account_id)

    with get_session_context() as session:
        everything = aggregator.account_summaries(session, seeded.account_id)
        filtered = aggregator.account_summaries(session, seeded.account_id, min_score=10)

    assert [s.visibility_score for s in everything] == [50, 0]
    assert [s.keyword_id for s in filtered] == [second]


def test_latest_results_newest_first(make_account) -> None:
    seeded = make_account(questions=[["Q1"]])
    keyword_id = seeded.keyword_ids[0]
    base = utcnow() - timedelta(hours=3)

    with get_session_context() as session:
        for hours in range(3):
            check_store.append(
                session,
                seeded.account_id,
                keyword_id,
                "Q1",
                "ai_overview",
                NOT_CITED,
                run_id=None,
                run_index=hours,
                checked_at=base + timedelta(hours=hours),
            )
        latest = check_store.latest_results(session, seeded.account_id, limit=2)
        other_account = check_store.latest_results(session, uuid4())

    assert [check.run_index for check in latest] == [2, 1]
    assert other_account == []
