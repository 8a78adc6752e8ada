"""Tests for the batch run orchestrator."""

import asyncio
import json
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from uuid import UUID, uuid4

import httpx
import pytest
from sqlalchemy import select, update
from sqlalchemy.orm import sessionmaker

from visibility_engine.adapters.provider_query import (
    CheckOutcome,
    DataForSEOProviderQueryAdapter,
    ProviderResponseError,
    ProviderTimeoutError,
    StubProviderQueryAdapter,
)
from visibility_engine.config import Settings
from visibility_engine.db.models import (
    AccountModel,
    Base,
    BatchRunItemModel,
    BatchRunModel,
    KeywordModel,
    VisibilityCheckModel,
)
from visibility_engine.db.session import build_engine, get_session_context
from visibility_engine.domain.enums import BatchRunStatus, LLMProvider
from visibility_engine.services import aggregator, credits
from visibility_engine.services.credits import InsufficientCreditsError
from visibility_engine.services.orchestrator import (
    ActiveRunConflictError,
    BatchRunError,
    BatchRunOrchestrator,
    InvalidProvidersError,
    InvalidRunOptionsError,
    NoQuestionsError,
    RunNotCancellableError,
    RunNotFoundError,
)
from visibility_engine.utils.time import utcnow


def _questions(count: int) -> list[str]:
    return [f"Who is the best plumber in Austin, option {i}?" for i in range(1, count + 1)]


class FlakyAdapter(StubProviderQueryAdapter):
    """Fails the given (provider, question) pairs every time."""

    def __init__(self, failures: set[tuple[LLMProvider, str]]) -> None:
        super().__init__()
        self.failures = failures

    async def check(self, question, domain, brand_name, provider, timeout) -> CheckOutcome:
        if (provider, question) in self.failures:
            self.calls.append((question, provider))
            raise ProviderResponseError(provider, "upstream returned garbage")
        return await super().check(question, domain, brand_name, provider, timeout)


class FailsOnceAdapter(StubProviderQueryAdapter):
    """Times out on the first call for every (question, provider), then answers."""

    def __init__(self) -> None:
        super().__init__()
        self.seen: set[tuple[str, LLMProvider]] = set()

    async def check(self, question, domain, brand_name, provider, timeout) -> CheckOutcome:
        if (question, provider) not in self.seen:
            self.seen.add((question, provider))
            self.calls.append((question, provider))
            raise ProviderTimeoutError(provider, "gateway timeout")
        return await super().check(question, domain, brand_name, provider, timeout)


class SlowAdapter(StubProviderQueryAdapter):
    async def check(self, question, domain, brand_name, provider, timeout) -> CheckOutcome:
        await asyncio.sleep(5)
        return await super().check(question, domain, brand_name, provider, timeout)


class CrashingAdapter(StubProviderQueryAdapter):
    """Raises a non-provider exception for one question."""

    def __init__(self, question: str) -> None:
        super().__init__()
        self.question = question

    async def check(self, question, domain, brand_name, provider, timeout) -> CheckOutcome:
        if question == self.question:
            self.calls.append((question, provider))
            raise KeyError("sources")
        return await super().check(question, domain, brand_name, provider, timeout)


def _dataforseo_adapter(handler) -> DataForSEOProviderQueryAdapter:
    return DataForSEOProviderQueryAdapter(
        login="user@example.com",
        password="secret",
        base_url="https://api.dataforseo.test/v3",
        max_attempts=1,
        backoff_seconds=0,
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


class ProgressRecordingAdapter(StubProviderQueryAdapter):
    """Reads the persisted run progress every time a check starts."""

    def __init__(self) -> None:
        super().__init__()
        self.orchestrator: BatchRunOrchestrator | None = None
        self.run_id: UUID | None = None
        self.observed: list[int] = []

    async def check(self, question, domain, brand_name, provider, timeout) -> CheckOutcome:
        assert self.orchestrator is not None and self.run_id is not None
        self.observed.append(self.orchestrator.status(self.run_id).processed_checks)
        return await super().check(question, domain, brand_name, provider, timeout)


def _balance(account_id: UUID) -> tuple[int, int]:
    with get_session_context() as session:
        snapshot = credits.balance(session, account_id)
    return snapshot.available, snapshot.reserved


def _ledger_types(account_id: UUID) -> list[str]:
    with get_session_context() as session:
        return [entry.entry_type for entry in credits.history(session, account_id)]


def _item_statuses(run_id: UUID) -> Counter:
    with get_session_context() as session:
        return Counter(
            session.execute(
                select(BatchRunItemModel.status).where(BatchRunItemModel.run_id == run_id)
            ).scalars()
        )


class TestPreview:
    def test_counts_distinct_questions(self, orchestrator: BatchRunOrchestrator, make_account) -> None:
        seeded = make_account(
            questions=[
                ["Q1", "Q2"],
                ["Q2", " Q3 ", "", {"question": "Q4"}, {"other": 1}],
            ]
        )

        preview = orchestrator.preview(seeded.account_id, ["chatgpt", "claude"])

        assert preview.total_questions == 4
        assert preview.keyword_count == 2
        assert preview.total_checks == 8
        assert preview.total_credits == 24
        assert preview.cost_per_provider == {"chatgpt": 3, "claude": 3}
        assert preview.has_credits is False
        assert preview.active_run is None

    def test_defaults_to_configured_providers(
        self, orchestrator: BatchRunOrchestrator, make_account
    ) -> None:
        seeded = make_account(questions=[_questions(2)], credit_grant=100)

        preview = orchestrator.preview(seeded.account_id)

        assert [str(p) for p in preview.providers] == ["chatgpt", "claude", "gemini", "perplexity"]
        assert preview.total_credits == 24
        assert preview.available_credits == 100
        assert preview.has_credits is True

    def test_runs_per_question_multiplies_cost(
        self, orchestrator: BatchRunOrchestrator, make_account
    ) -> None:
        seeded = make_account(questions=[_questions(3)])

        preview = orchestrator.preview(seeded.account_id, ["gemini"], runs_per_question=5)

        assert preview.total_questions == 3
        assert preview.total_checks == 15
        assert preview.total_credits == 45

    def test_no_questions_is_not_an_error(
        self, orchestrator: BatchRunOrchestrator, make_account
    ) -> None:
        seeded = make_account()

        preview = orchestrator.preview(seeded.account_id, ["chatgpt"])

        assert preview.total_questions == 0
        assert preview.total_credits == 0
        assert preview.has_credits is True

    def test_surfaces_active_run(self, orchestrator: BatchRunOrchestrator, make_account) -> None:
        seeded = make_account(questions=[_questions(2)], credit_grant=100)
        started = orchestrator.start(seeded.account_id, ["chatgpt"])

        preview = orchestrator.preview(seeded.account_id, ["chatgpt"])

        assert preview.active_run is not None
        assert preview.active_run.run_id == started.run_id
        assert preview.active_run.status == BatchRunStatus.PENDING
        assert preview.reserved_credits == 6

    def test_rejects_unknown_providers(
        self, orchestrator: BatchRunOrchestrator, make_account
    ) -> None:
        seeded = make_account(questions=[_questions(1)])

        with pytest.raises(InvalidProvidersError):
            orchestrator.preview(seeded.account_id, ["altavista"])


class TestStart:
    def test_reserves_credits_and_blocks_second_run(
        self, orchestrator: BatchRunOrchestrator, make_account, dispatched: list[UUID]
    ) -> None:
        seeded = make_account(questions=[_questions(10)], credit_grant=100)

        snapshot = orchestrator.start(seeded.account_id, ["chatgpt", "claude"])

        assert snapshot.status == BatchRunStatus.PENDING
        assert snapshot.total_questions == 10
        assert snapshot.total_checks == 20
        assert snapshot.estimated_credits == 60
        assert snapshot.processed_questions == 0
        assert dispatched == [snapshot.run_id]
        assert _balance(seeded.account_id) == (40, 60)

        with pytest.raises(ActiveRunConflictError) as exc_info:
            orchestrator.start(seeded.account_id, ["chatgpt", "claude"])

        assert exc_info.value.run_id == snapshot.run_id
        assert exc_info.value.status == BatchRunStatus.PENDING
        assert _balance(seeded.account_id) == (40, 60)
        assert dispatched == [snapshot.run_id]

    def test_insufficient_credits_creates_nothing(
        self, orchestrator: BatchRunOrchestrator, make_account, dispatched: list[UUID]
    ) -> None:
        seeded = make_account(questions=[_questions(10)], credit_grant=10)

        with pytest.raises(InsufficientCreditsError) as exc_info:
            orchestrator.start(seeded.account_id, ["chatgpt", "claude"])

        assert exc_info.value.required == 60
        assert exc_info.value.available == 10
        assert orchestrator.list_runs(seeded.account_id) == []
        assert _balance(seeded.account_id) == (10, 0)
        assert dispatched == []

    def test_no_questions(self, orchestrator: BatchRunOrchestrator, make_account) -> None:
        seeded = make_account(credit_grant=100)

        with pytest.raises(NoQuestionsError):
            orchestrator.start(seeded.account_id, ["chatgpt"])

        assert _balance(seeded.account_id) == (100, 0)

    def test_requires_explicit_providers(
        self, orchestrator: BatchRunOrchestrator, make_account
    ) -> None:
        seeded = make_account(questions=[_questions(1)], credit_grant=100)

        with pytest.raises(InvalidProvidersError):
            orchestrator.start(seeded.account_id, [])
        with pytest.raises(InvalidProvidersError):
            orchestrator.start(seeded.account_id, ["bogus"])

    @pytest.mark.parametrize("runs", [0, 11])
    def test_runs_per_question_bounds(
        self, orchestrator: BatchRunOrchestrator, make_account, runs: int
    ) -> None:
        seeded = make_account(questions=[_questions(1)], credit_grant=100)

        with pytest.raises(InvalidRunOptionsError):
            orchestrator.start(seeded.account_id, ["chatgpt"], runs_per_question=runs)

    def test_work_matrix_covers_every_repetition(
        self, orchestrator: BatchRunOrchestrator, make_account
    ) -> None:
        seeded = make_account(questions=[_questions(2)], credit_grant=100)

        snapshot = orchestrator.start(seeded.account_id, ["chatgpt", "gemini"], runs_per_question=3)

        assert snapshot.total_questions == 2
        assert snapshot.total_checks == 12
        assert snapshot.estimated_credits == 36
        with get_session_context() as session:
            keys = session.execute(
                select(
                    BatchRunItemModel.question_index,
                    BatchRunItemModel.provider,
                    BatchRunItemModel.run_index,
                ).where(BatchRunItemModel.run_id == snapshot.run_id)
            ).all()
        assert len(set(keys)) == 12
        assert {run_index for _, _, run_index in keys} == {0, 1, 2}

    def test_past_schedule_starts_immediately(
        self, orchestrator: BatchRunOrchestrator, make_account, dispatched: list[UUID]
    ) -> None:
        seeded = make_account(questions=[_questions(1)], credit_grant=100)

        snapshot = orchestrator.start(
            seeded.account_id, ["chatgpt"], scheduled_for=utcnow() - timedelta(minutes=5)
        )

        assert snapshot.status == BatchRunStatus.PENDING
        assert snapshot.scheduled_for is None
        assert dispatched == [snapshot.run_id]

    def test_enqueue_failure_fails_run_and_refunds(self, make_account) -> None:
        def broken_dispatcher(run_id: UUID) -> None:
            raise ConnectionError("broker unreachable")

        orchestrator = BatchRunOrchestrator(
            adapter=StubProviderQueryAdapter(), dispatcher=broken_dispatcher
        )
        seeded = make_account(questions=[_questions(2)], credit_grant=20)

        with pytest.raises(BatchRunError):
            orchestrator.start(seeded.account_id, ["chatgpt"])

        [run] = orchestrator.list_runs(seeded.account_id)
        assert run.status == BatchRunStatus.FAILED
        assert run.error_message.startswith("Failed to queue batch run")
        assert _balance(seeded.account_id) == (20, 0)


class TestConcurrentStart:
    """start() from many threads against a file-backed database."""

    def test_only_one_run_is_created(self, tmp_path) -> None:
        engine = build_engine(f"sqlite:///{tmp_path / 'concurrent.db'}")
        Base.metadata.create_all(bind=engine)
        factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        account_id = uuid4()
        try:
            with factory() as session:
                session.add(
                    AccountModel(
                        id=account_id,
                        name="Acme Plumbing",
                        business_name="Acme Plumbing",
                        website_domain="acmeplumbing.com",
                    )
                )
                session.flush()
                session.add(
                    KeywordModel(
                        id=uuid4(),
                        account_id=account_id,
                        phrase="plumber austin",
                        related_questions=_questions(2),
                    )
                )
                # Enough for two runs, so only the active-run check can stop the rest
                credits.grant(session, account_id, 12)
                session.commit()

            dispatched: list[UUID] = []
            orchestrator = BatchRunOrchestrator(
                session_factory=factory,
                adapter=StubProviderQueryAdapter(),
                dispatcher=dispatched.append,
            )

            with ThreadPoolExecutor(max_workers=8) as pool:
                futures = [
                    pool.submit(orchestrator.start, account_id, ["chatgpt"]) for _ in range(8)
                ]
            started = []
            rejected = []
            for future in futures:
                error = future.exception()
                if error is None:
                    started.append(future.result())
                else:
                    rejected.append(error)

            assert len(started) == 1
            assert len(rejected) == 7
            assert all(
                isinstance(error, (ActiveRunConflictError, InsufficientCreditsError))
                for error in rejected
            )
            assert dispatched == [started[0].run_id]

            with factory() as session:
                runs = session.execute(
                    select(BatchRunModel.id).where(BatchRunModel.account_id == account_id)
                ).scalars().all()
                snapshot = credits.balance(session, account_id)

            assert runs == [started[0].run_id]
            assert snapshot.available >= 0
            assert (snapshot.available, snapshot.reserved) == (6, 6)
        finally:
            engine.dispose()


class TestDispatch:
    @pytest.mark.asyncio
    async def test_partial_failures_complete_and_debit(
        self, make_account, dispatched: list[UUID]
    ) -> None:
        texts = _questions(5)
        adapter = FlakyAdapter({(LLMProvider.CLAUDE, q) for q in texts[:3]})
        orchestrator = BatchRunOrchestrator(adapter=adapter, dispatcher=dispatched.append)
        seeded = make_account(questions=[texts], credit_grant=30)

        started = orchestrator.start(seeded.account_id, ["chatgpt", "claude"])
        final = await orchestrator.dispatch(started.run_id)

        assert final.status == BatchRunStatus.COMPLETED
        assert final.successful_checks == 7
        assert final.failed_checks == 3
        assert final.processed_checks == 10
        assert final.processed_questions == 5
        assert final.progress == 100
        assert final.error_message is None
        assert final.completed_at is not None

        # Charged per attempt, not per success
        assert _balance(seeded.account_id) == (0, 0)
        assert _ledger_types(seeded.account_id) == ["debit", "reserve", "grant"]
        assert _item_statuses(started.run_id) == Counter({"succeeded": 7, "failed": 3})

        # Each failing item is tried once more by the orchestrator
        assert len(adapter.calls) == 7 + 3 * 2

        with get_session_context() as session:
            stored = session.execute(
                select(VisibilityCheckModel).where(VisibilityCheckModel.run_id == started.run_id)
            ).scalars().all()
        assert len(stored) == 7

    @pytest.mark.asyncio
    async def test_all_failed_refunds(self, make_account, dispatched: list[UUID]) -> None:
        adapter = StubProviderQueryAdapter(failing_providers={LLMProvider.CHATGPT})
        orchestrator = BatchRunOrchestrator(adapter=adapter, dispatcher=dispatched.append)
        seeded = make_account(questions=[_questions(2)], credit_grant=6)

        started = orchestrator.start(seeded.account_id, ["chatgpt"])
        final = await orchestrator.dispatch(started.run_id)

        assert final.status == BatchRunStatus.FAILED
        assert final.successful_checks == 0
        assert final.failed_checks == 2
        assert final.error_message == "All 2 checks failed: stub configured to fail"
        assert _balance(seeded.account_id) == (6, 0)
        assert _ledger_types(seeded.account_id)[0] == "refund"

    @pytest.mark.asyncio
    async def test_retries_item_once(self, make_account, dispatched: list[UUID]) -> None:
        adapter = FailsOnceAdapter()
        orchestrator = BatchRunOrchestrator(adapter=adapter, dispatcher=dispatched.append)
        seeded = make_account(questions=[_questions(3)], credit_grant=9)

        started = orchestrator.start(seeded.account_id, ["perplexity"])
        final = await orchestrator.dispatch(started.run_id)

        assert final.status == BatchRunStatus.COMPLETED
        assert final.successful_checks == 3
        assert final.failed_checks == 0
        with get_session_context() as session:
            attempts = session.execute(
                select(BatchRunItemModel.attempts).where(
                    BatchRunItemModel.run_id == started.run_id
                )
            ).scalars().all()
        assert attempts == [2, 2, 2]

    @pytest.mark.asyncio
    async def test_check_timeout_recorded_as_failure(
        self, make_account, dispatched: list[UUID]
    ) -> None:
        config = Settings(check_timeout_seconds=0.05, check_item_retries=0)
        orchestrator = BatchRunOrchestrator(
            adapter=SlowAdapter(), dispatcher=dispatched.append, config=config
        )
        seeded = make_account(questions=[_questions(1)], credit_grant=3)

        started = orchestrator.start(seeded.account_id, ["gemini"])
        final = await orchestrator.dispatch(started.run_id)

        assert final.status == BatchRunStatus.FAILED
        assert final.error_message == "All 1 checks failed: Timed out after 0.05 seconds"
        assert _balance(seeded.account_id) == (3, 0)

    @pytest.mark.asyncio
    async def test_malformed_provider_payload_fails_only_its_item(
        self, make_account, dispatched: list[UUID]
    ) -> None:
        texts = _questions(3)
        keywords: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            keyword = json.loads(request.content)[0]["keyword"]
            keywords.append(keyword)
            if keyword == texts[1]:
                sources: list = ["oops"]
            else:
                sources = [{"url": "https://acmeplumbing.com/", "title": "Acme Plumbing"}]
            return httpx.Response(
                200,
                json={
                    "status_code": 20000,
                    "tasks": [
                        {
                            "status_code": 20000,
                            "cost": 0.004,
                            "result": [{"markdown": "Try Acme Plumbing.", "sources": sources}],
                        }
                    ],
                },
            )

        orchestrator = BatchRunOrchestrator(
            adapter=_dataforseo_adapter(handler), dispatcher=dispatched.append
        )
        seeded = make_account(questions=[texts], credit_grant=9)

        started = orchestrator.start(seeded.account_id, ["chatgpt"])
        final = await orchestrator.dispatch(started.run_id)

        assert final.status == BatchRunStatus.COMPLETED
        assert final.successful_checks == 2
        assert final.failed_checks == 1
        assert _balance(seeded.account_id) == (0, 0)
        # Malformed payloads are retried like any other failed item
        assert keywords.count(texts[1]) == 2

        with get_session_context() as session:
            failed = session.execute(
                select(BatchRunItemModel).where(
                    BatchRunItemModel.run_id == started.run_id,
                    BatchRunItemModel.status == "failed",
                )
            ).scalar_one()
            stored = session.execute(
                select(VisibilityCheckModel).where(VisibilityCheckModel.run_id == started.run_id)
            ).scalars().all()

        assert failed.question == texts[1]
        assert failed.error_message.startswith("Malformed response")
        assert len(stored) == 2
        for check in stored:
            assert check.api_cost_usd == pytest.approx(0.004)
            assert check.citations == [
                {
                    "domain": "acmeplumbing.com",
                    "url": "https://acmeplumbing.com/",
                    "title": "Acme Plumbing",
                    "position": 1,
                    "is_ours": True,
                }
            ]

    @pytest.mark.asyncio
    async def test_unexpected_adapter_exception_fails_only_its_item(
        self, make_account, dispatched: list[UUID]
    ) -> None:
        texts = _questions(3)
        adapter = CrashingAdapter(texts[0])
        orchestrator = BatchRunOrchestrator(adapter=adapter, dispatcher=dispatched.append)
        seeded = make_account(questions=[texts], credit_grant=9)

        started = orchestrator.start(seeded.account_id, ["gemini"])
        final = await orchestrator.dispatch(started.run_id)

        assert final.status == BatchRunStatus.COMPLETED
        assert final.successful_checks == 2
        assert final.failed_checks == 1
        assert _item_statuses(started.run_id) == Counter({"succeeded": 2, "failed": 1})
        with get_session_context() as session:
            message = session.execute(
                select(BatchRunItemModel.error_message).where(
                    BatchRunItemModel.run_id == started.run_id,
                    BatchRunItemModel.status == "failed",
                )
            ).scalar_one()
        assert message == "Unexpected error: KeyError: 'sources'"

    @pytest.mark.asyncio
    async def test_missing_domain_aborts_run(
        self, orchestrator: BatchRunOrchestrator, provider_adapter, make_account
    ) -> None:
        seeded = make_account(questions=[_questions(3)], credit_grant=18, domain=None)

        started = orchestrator.start(seeded.account_id, ["chatgpt", "claude"])
        final = await orchestrator.dispatch(started.run_id)

        assert final.status == BatchRunStatus.FAILED
        assert final.error_message == "Batch run aborted: Account has no website domain to check"
        assert final.failed_checks == final.total_checks == 6
        assert final.processed_checks == 6
        assert final.processed_questions == 3
        assert provider_adapter.calls == []
        assert _balance(seeded.account_id) == (18, 0)

    @pytest.mark.asyncio
    async def test_progress_is_persisted_incrementally(
        self, make_account, dispatched: list[UUID]
    ) -> None:
        adapter = ProgressRecordingAdapter()
        orchestrator = BatchRunOrchestrator(adapter=adapter, dispatcher=dispatched.append)
        adapter.orchestrator = orchestrator
        seeded = make_account(questions=[_questions(8)], credit_grant=100)

        started = orchestrator.start(seeded.account_id, ["chatgpt"])
        adapter.run_id = started.run_id
        final = await orchestrator.dispatch(started.run_id)

        assert final.processed_checks == 8
        assert len(adapter.observed) == 8
        assert adapter.observed == sorted(adapter.observed)
        assert max(adapter.observed) > 0

    @pytest.mark.asyncio
    async def test_dispatch_twice_does_not_recheck_or_recharge(
        self, orchestrator: BatchRunOrchestrator, provider_adapter, make_account
    ) -> None:
        seeded = make_account(questions=[_questions(2)], credit_grant=12)
        started = orchestrator.start(seeded.account_id, ["chatgpt", "gemini"])

        first = await orchestrator.dispatch(started.run_id)
        calls = len(provider_adapter.calls)
        second = await orchestrator.dispatch(started.run_id)

        assert first.status == second.status == BatchRunStatus.COMPLETED
        assert second.processed_checks == 4
        assert len(provider_adapter.calls) == calls
        assert _ledger_types(seeded.account_id).count("debit") == 1

    @pytest.mark.asyncio
    async def test_resumes_run_left_processing(
        self, orchestrator: BatchRunOrchestrator, make_account
    ) -> None:
        seeded = make_account(questions=[_questions(2)], credit_grant=6)
        started = orchestrator.start(seeded.account_id, ["claude"])
        with get_session_context() as session:
            session.execute(
                update(BatchRunModel)
                .where(BatchRunModel.id == started.run_id)
                .values(status="processing", started_at=utcnow())
            )

        final = await orchestrator.dispatch(started.run_id)

        assert final.status == BatchRunStatus.COMPLETED
        assert final.processed_checks == 2

    @pytest.mark.asyncio
    async def test_dispatch_unknown_run(self, orchestrator: BatchRunOrchestrator) -> None:
        with pytest.raises(RunNotFoundError):
            await orchestrator.dispatch(uuid4())

    @pytest.mark.asyncio
    async def test_finalize_refreshes_cached_summary(
        self, orchestrator: BatchRunOrchestrator, make_account
    ) -> None:
        seeded = make_account(questions=[_questions(4)], credit_grant=100)
        started = orchestrator.start(seeded.account_id, ["chatgpt", "claude", "gemini"])
        await orchestrator.dispatch(started.run_id)

        with get_session_context() as session:
            cached = aggregator.get_cached(session, seeded.account_id, seeded.keyword_ids[0])
            live = aggregator.compute(session, seeded.account_id, seeded.keyword_ids[0])

        assert cached is not None
        assert cached.total_questions == live.total_questions == 4
        assert cached.visibility_score == live.visibility_score

    @pytest.mark.asyncio
    async def test_new_run_allowed_after_terminal(
        self, orchestrator: BatchRunOrchestrator, make_account
    ) -> None:
        seeded = make_account(questions=[_questions(1)], credit_grant=100)
        first = orchestrator.start(seeded.account_id, ["chatgpt"])
        await orchestrator.dispatch(first.run_id)

        second = orchestrator.start(seeded.account_id, ["chatgpt"])

        assert second.run_id != first.run_id
        assert [run.run_id for run in orchestrator.list_runs(seeded.account_id)] == [
            second.run_id,
            first.run_id,
        ]


class TestRetryFailed:
    @pytest.mark.asyncio
    async def test_retry_only_failed_items(self, make_account, dispatched: list[UUID]) -> None:
        texts = _questions(3)
        flaky = FlakyAdapter({(LLMProvider.CLAUDE, texts[0]), (LLMProvider.CLAUDE, texts[1])})
        first_orchestrator = BatchRunOrchestrator(adapter=flaky, dispatcher=dispatched.append)
        seeded = make_account(questions=[texts], credit_grant=100)

        source = first_orchestrator.start(seeded.account_id, ["chatgpt", "claude"])
        source_final = await first_orchestrator.dispatch(source.run_id)
        assert source_final.failed_checks == 2

        orchestrator = BatchRunOrchestrator(
            adapter=StubProviderQueryAdapter(), dispatcher=dispatched.append
        )

        # chatgpt had no failures
        with pytest.raises(NoQuestionsError):
            orchestrator.start(
                seeded.account_id, ["chatgpt"], retry_failed_from_run_id=source.run_id
            )

        retry = orchestrator.start(
            seeded.account_id, ["chatgpt", "claude"], retry_failed_from_run_id=source.run_id
        )

        assert retry.total_checks == 2
        assert retry.total_questions == 2
        assert retry.estimated_credits == 6
        assert retry.retry_of_run_id == source.run_id

        final = await orchestrator.dispatch(retry.run_id)

        assert final.status == BatchRunStatus.COMPLETED
        assert final.successful_checks == 2
        assert {question for question, _ in orchestrator.adapter.calls} == {texts[0], texts[1]}

    def test_retry_of_unknown_run(self, orchestrator: BatchRunOrchestrator, make_account) -> None:
        seeded = make_account(questions=[_questions(1)], credit_grant=100)

        with pytest.raises(RunNotFoundError):
            orchestrator.start(seeded.account_id, ["chatgpt"], retry_failed_from_run_id=uuid4())


class TestScheduledRuns:
    def test_cancel_refunds_exactly(
        self, orchestrator: BatchRunOrchestrator, make_account, dispatched: list[UUID]
    ) -> None:
        seeded = make_account(questions=[_questions(4)], credit_grant=50)
        scheduled_for = utcnow() + timedelta(hours=2)

        snapshot = orchestrator.start(seeded.account_id, ["perplexity"], scheduled_for=scheduled_for)

        assert snapshot.status == BatchRunStatus.SCHEDULED
        assert snapshot.scheduled_for == scheduled_for
        assert dispatched == []
        assert _balance(seeded.account_id) == (38, 12)

        # Scheduled runs count as active
        with pytest.raises(ActiveRunConflictError):
            orchestrator.start(seeded.account_id, ["chatgpt"])

        refunded = orchestrator.cancel_scheduled(seeded.account_id, snapshot.run_id)

        assert refunded == 12
        assert _balance(seeded.account_id) == (50, 0)
        assert orchestrator.status(snapshot.run_id).status == BatchRunStatus.CANCELLED
        assert _item_statuses(snapshot.run_id) == Counter({"skipped": 4})

        with pytest.raises(RunNotCancellableError):
            orchestrator.cancel_scheduled(seeded.account_id, snapshot.run_id)

    def test_cannot_cancel_pending_run(
        self, orchestrator: BatchRunOrchestrator, make_account
    ) -> None:
        seeded = make_account(questions=[_questions(1)], credit_grant=50)
        snapshot = orchestrator.start(seeded.account_id, ["chatgpt"])

        with pytest.raises(RunNotCancellableError) as exc_info:
            orchestrator.cancel_scheduled(seeded.account_id, snapshot.run_id)

        assert exc_info.value.status == BatchRunStatus.PENDING
        assert _balance(seeded.account_id) == (47, 3)

    def test_cannot_cancel_other_accounts_run(
        self, orchestrator: BatchRunOrchestrator, make_account
    ) -> None:
        owner = make_account(questions=[_questions(1)], credit_grant=50)
        other = make_account()
        snapshot = orchestrator.start(
            owner.account_id, ["chatgpt"], scheduled_for=utcnow() + timedelta(hours=1)
        )

        with pytest.raises(RunNotFoundError):
            orchestrator.cancel_scheduled(other.account_id, snapshot.run_id)
        with pytest.raises(RunNotFoundError):
            orchestrator.status(snapshot.run_id, account_id=other.account_id)

    def test_activate_due_runs(
        self, orchestrator: BatchRunOrchestrator, make_account, dispatched: list[UUID]
    ) -> None:
        seeded = make_account(questions=[_questions(2)], credit_grant=50)
        snapshot = orchestrator.start(
            seeded.account_id, ["chatgpt"], scheduled_for=utcnow() + timedelta(hours=1)
        )

        assert orchestrator.activate_due_runs(now=utcnow()) == []
        assert dispatched == []

        activated = orchestrator.activate_due_runs(now=utcnow() + timedelta(hours=2))

        assert activated == [snapshot.run_id]
        assert dispatched == [snapshot.run_id]
        assert orchestrator.status(snapshot.run_id).status == BatchRunStatus.PENDING
        # Reservation is kept through activation
        assert _balance(seeded.account_id) == (44, 6)
