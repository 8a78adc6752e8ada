"""Batch run orchestrator.

Admission (preview/start) runs on the request path and only touches the
database. The dispatch loop runs in a worker: it claims a pending run, fans
the work items out to the provider query adapter with bounded concurrency,
records every result as soon as it arrives and settles the credit
reservation once every item has been attempted.

A run moves through:

    scheduled -> pending -> processing -> completed | failed
    scheduled -> cancelled
"""

import asyncio
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, sessionmaker

from visibility_engine.adapters.provider_query import (
    CheckOutcome,
    ProviderError,
    ProviderQueryAdapter,
    get_provider_query_adapter,
)
from visibility_engine.config import Settings, get_settings
from visibility_engine.db.models import AccountModel, BatchRunItemModel, BatchRunModel
from visibility_engine.db.session import SessionLocal
from visibility_engine.domain.enums import (
    ACTIVE_RUN_STATUSES,
    BatchItemStatus,
    BatchRunStatus,
    LLMProvider,
)
from visibility_engine.domain.models import (
    ActiveRunInfo,
    BatchPreview,
    BatchRunSnapshot,
    QuestionItem,
)
from visibility_engine.logging import bound_context, get_logger
from visibility_engine.services import aggregator, check_store, credits, questions
from visibility_engine.utils.time import as_utc, utcnow

logger = get_logger(__name__)

Dispatcher = Callable[[UUID], None]


class BatchRunError(Exception):
    """Base class for batch run errors."""

    pass


class ActiveRunConflictError(BatchRunError):
    """Raised when the account already has a non-terminal run."""

    def __init__(self, run_id: UUID, status: BatchRunStatus | str) -> None:
        self.run_id = run_id
        self.status = BatchRunStatus(status)
        super().__init__(f"Batch run {run_id} is already {self.status}")


class NoQuestionsError(BatchRunError):
    """Raised when the work matrix would be empty."""

    pass


class InvalidProvidersError(BatchRunError):
    """Raised when no valid provider was requested."""

    pass


class InvalidRunOptionsError(BatchRunError):
    """Raised for out-of-range run options (e.g. runs per question)."""

    pass


class RunNotFoundError(BatchRunError):
    """Raised when a run does not exist or belongs to another account."""

    pass


class RunNotCancellableError(BatchRunError):
    """Raised when cancelling a run that is no longer scheduled."""

    def __init__(self, run_id: UUID, status: BatchRunStatus | str) -> None:
        self.run_id = run_id
        self.status = BatchRunStatus(status)
        super().__init__(f"Batch run {run_id} is {self.status} and cannot be cancelled")


@dataclass(frozen=True)
class WorkItem:
    """A pending batch run item, detached from its session."""

    item_id: int
    keyword_id: UUID
    question_index: int
    question: str
    provider: LLMProvider
    run_index: int


@dataclass(frozen=True)
class DispatchContext:
    account_id: UUID
    domain: str
    brand_name: str | None
    items: list[WorkItem]


def default_dispatcher(run_id: UUID) -> None:
    """Hand a run to the Celery worker."""
    from visibility_engine.jobs.visibility_tasks import enqueue_batch_run

    enqueue_batch_run(run_id)


def to_snapshot(run: BatchRunModel) -> BatchRunSnapshot:
    return BatchRunSnapshot(
        run_id=run.id,
        account_id=run.account_id,
        status=BatchRunStatus(run.status),
        providers=LLMProvider.parse_many(run.providers),
        runs_per_question=run.runs_per_question,
        total_questions=run.total_questions,
        processed_questions=run.processed_questions,
        total_checks=run.total_checks,
        processed_checks=run.processed_checks,
        successful_checks=run.successful_checks,
        failed_checks=run.failed_checks,
        estimated_credits=run.estimated_credits,
        error_message=run.error_message,
        scheduled_for=as_utc(run.scheduled_for),
        created_at=as_utc(run.created_at),
        started_at=as_utc(run.started_at),
        completed_at=as_utc(run.completed_at),
        retry_of_run_id=run.retry_of_run_id,
    )


class BatchRunOrchestrator:
    """Admits, dispatches and settles batch runs."""

    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        adapter: ProviderQueryAdapter | None = None,
        dispatcher: Dispatcher | None = None,
        config: Settings | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            session_factory: Factory for short-lived sessions (defaults to SessionLocal)
            adapter: Provider query adapter (defaults to the configured one)
            dispatcher: Called with the run id of every run ready for dispatch
            config: Settings override
        """
        self.session_factory = session_factory or SessionLocal
        self._adapter = adapter
        self.dispatcher = dispatcher or default_dispatcher
        self.config = config or get_settings()

    @property
    def adapter(self) -> ProviderQueryAdapter:
        if self._adapter is None:
            self._adapter = get_provider_query_adapter()
        return self._adapter

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # =========================================================================
    # Admission
    # =========================================================================

    def cost_per_provider(self, providers: list[LLMProvider]) -> dict[str, int]:
        return {str(p): int(self.config.provider_credit_costs.get(str(p), 0)) for p in providers}

    def _resolve_providers(self, providers: list[str] | None, use_defaults: bool) -> list[LLMProvider]:
        if not providers and use_defaults:
            providers = self.config.default_providers
        parsed = LLMProvider.parse_many(providers)
        if not parsed:
            raise InvalidProvidersError("At least one valid provider is required")
        return parsed

    def _validate_runs(self, runs_per_question: int) -> None:
        if not 1 <= runs_per_question <= self.config.max_runs_per_question:
            raise InvalidRunOptionsError(
                f"runs_per_question must be between 1 and {self.config.max_runs_per_question}"
            )

    @staticmethod
    def _active_run(session: Session, account_id: UUID) -> BatchRunModel | None:
        return session.execute(
            select(BatchRunModel)
            .where(
                BatchRunModel.account_id == account_id,
                BatchRunModel.status.in_([str(s) for s in ACTIVE_RUN_STATUSES]),
            )
            .order_by(BatchRunModel.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()

    @staticmethod
    def _active_info(run: BatchRunModel) -> ActiveRunInfo:
        return ActiveRunInfo(
            run_id=run.id,
            status=BatchRunStatus(run.status),
            processed_questions=run.processed_questions,
            total_questions=run.total_questions,
            scheduled_for=as_utc(run.scheduled_for),
        )

    def preview(
        self,
        account_id: UUID,
        providers: list[str] | None = None,
        runs_per_question: int = 1,
    ) -> BatchPreview:
        """Estimate the cost of a run over all configured questions.

        An account without questions gets total_questions = 0, not an error.
        """
        parsed = self._resolve_providers(providers, use_defaults=True)
        self._validate_runs(runs_per_question)
        costs = self.cost_per_provider(parsed)

        with self._session() as session:
            items = questions.list_questions(session, account_id)
            snapshot = credits.balance(session, account_id)
            active = self._active_run(session, account_id)
            active_info = self._active_info(active) if active else None

        total_questions = len(items)
        total_credits = sum(costs.values()) * total_questions * runs_per_question
        return BatchPreview(
            total_questions=total_questions,
            keyword_count=questions.keyword_count(items),
            providers=parsed,
            runs_per_question=runs_per_question,
            total_checks=total_questions * len(parsed) * runs_per_question,
            total_credits=total_credits,
            cost_per_provider=costs,
            available_credits=snapshot.available,
            reserved_credits=snapshot.reserved,
            has_credits=snapshot.available >= total_credits,
            active_run=active_info,
        )

    def _full_matrix(
        self,
        session: Session,
        account_id: UUID,
        providers: list[LLMProvider],
        runs_per_question: int,
    ) -> list[tuple[QuestionItem, LLMProvider, int]]:
        return [
            (item, provider, run_index)
            for item in questions.list_questions(session, account_id)
            for provider in providers
            for run_index in range(runs_per_question)
        ]

    def _retry_matrix(
        self,
        session: Session,
        account_id: UUID,
        source_run_id: UUID,
        providers: list[LLMProvider],
    ) -> list[tuple[QuestionItem, LLMProvider, int]]:
        """Failed items of an earlier run, limited to the requested providers."""
        source = session.get(BatchRunModel, source_run_id)
        if source is None or source.account_id != account_id:
            raise RunNotFoundError(f"Batch run {source_run_id} not found")

        failed = session.execute(
            select(BatchRunItemModel)
            .where(
                BatchRunItemModel.run_id == source_run_id,
                BatchRunItemModel.status == str(BatchItemStatus.FAILED),
            )
            .order_by(BatchRunItemModel.id)
        ).scalars()

        matrix = []
        for item in failed:
            provider = LLMProvider(item.provider)
            if provider not in providers:
                continue
            matrix.append(
                (
                    QuestionItem(
                        keyword_id=item.keyword_id,
                        question=item.question,
                        question_index=item.question_index,
                    ),
                    provider,
                    item.run_index,
                )
            )
        return matrix

    def start(
        self,
        account_id: UUID,
        providers: list[str],
        scheduled_for: datetime | None = None,
        runs_per_question: int = 1,
        retry_failed_from_run_id: UUID | None = None,
        schedule_id: UUID | None = None,
    ) -> BatchRunSnapshot:
        """Accept a batch run.

        The active-run check, the reservation and the insert share one
        transaction, taken under the account's balance row lock, so two
        concurrent starts cannot both pass the check.

        Raises:
            InvalidProvidersError: If no valid provider is given
            ActiveRunConflictError: If a scheduled/pending/processing run exists
            NoQuestionsError: If there is nothing to check
            InsufficientCreditsError: If the run does not fit in the balance
        """
        parsed = self._resolve_providers(providers, use_defaults=False)
        self._validate_runs(runs_per_question)
        costs = self.cost_per_provider(parsed)

        now = utcnow()
        scheduled_for = as_utc(scheduled_for)
        is_scheduled = scheduled_for is not None and scheduled_for > now
        run_id = uuid4()

        with self._session() as session:
            credits.lock_balance(session, account_id)

            active = self._active_run(session, account_id)
            if active is not None:
                logger.info(
                    "batch_run_conflict",
                    account_id=str(account_id),
                    active_run_id=str(active.id),
                    status=active.status,
                )
                raise ActiveRunConflictError(active.id, active.status)

            if retry_failed_from_run_id:
                matrix = self._retry_matrix(session, account_id, retry_failed_from_run_id, parsed)
                if not matrix:
                    raise NoQuestionsError("No failed items to retry")
            else:
                matrix = self._full_matrix(session, account_id, parsed, runs_per_question)
                if not matrix:
                    raise NoQuestionsError(
                        "No questions found. Add questions to your keyword concepts first."
                    )

            total_questions = len({item.question_index for item, _, _ in matrix})
            total_credits = sum(costs[str(provider)] for _, provider, _ in matrix)

            token = credits.reserve(
                session,
                account_id,
                total_credits,
                description=(
                    f"LLM batch run: {total_questions} questions x {len(parsed)} providers"
                ),
                metadata={"run_id": str(run_id), "providers": [str(p) for p in parsed]},
            )

            run = BatchRunModel(
                id=run_id,
                account_id=account_id,
                status=str(BatchRunStatus.SCHEDULED if is_scheduled else BatchRunStatus.PENDING),
                providers=[str(p) for p in parsed],
                runs_per_question=runs_per_question,
                total_questions=total_questions,
                processed_questions=0,
                total_checks=len(matrix),
                processed_checks=0,
                successful_checks=0,
                failed_checks=0,
                estimated_credits=total_credits,
                reservation_id=token.reservation_id,
                scheduled_for=scheduled_for if is_scheduled else None,
                schedule_id=schedule_id,
                retry_of_run_id=retry_failed_from_run_id,
            )
            session.add(run)
            session.flush()
            session.add_all(
                [
                    BatchRunItemModel(
                        run_id=run_id,
                        keyword_id=item.keyword_id,
                        question_index=item.question_index,
                        question=item.question,
                        provider=str(provider),
                        run_index=run_index,
                        status=str(BatchItemStatus.PENDING),
                        attempts=0,
                    )
                    for item, provider, run_index in matrix
                ]
            )
            session.flush()
            snapshot = to_snapshot(run)

        logger.info(
            "batch_run_created",
            run_id=str(run_id),
            account_id=str(account_id),
            status=str(snapshot.status),
            total_questions=total_questions,
            total_checks=len(matrix),
            credits=total_credits,
            scheduled_for=scheduled_for.isoformat() if is_scheduled and scheduled_for else None,
        )

        if not is_scheduled:
            self._hand_off(run_id)
        return snapshot

    def _hand_off(self, run_id: UUID) -> None:
        """Pass a pending run to the dispatcher; a run that cannot be queued fails."""
        try:
            self.dispatcher(run_id)
        except Exception as e:
            logger.exception("batch_run_enqueue_failed", run_id=str(run_id))
            self._abort_unstarted(run_id, f"Failed to queue batch run: {e}")
            raise BatchRunError(f"Failed to queue batch run {run_id}") from e

    def _abort_unstarted(self, run_id: UUID, message: str) -> None:
        with self._session() as session:
            result = session.execute(
                update(BatchRunModel)
                .where(
                    BatchRunModel.id == run_id,
                    BatchRunModel.status == str(BatchRunStatus.PENDING),
                )
                .values(status=str(BatchRunStatus.FAILED), error_message=message)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                self._settle(session, run_id, succeeded=False)

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def dispatch(self, run_id: UUID) -> BatchRunSnapshot:
        """Run every pending item of a run and settle it.

        Safe to call again for a run that is already processing (e.g. after a
        worker crash): only items still pending are attempted.
        """
        with bound_context(run_id=str(run_id)):
            context = self._claim(run_id)
            if context is None:
                return self.status(run_id)

            if not context.domain:
                logger.warning("batch_run_missing_domain", account_id=str(context.account_id))
                self._finalize(run_id, fault="Account has no website domain to check")
                return self.status(run_id)

            logger.info(
                "batch_run_dispatch_started",
                account_id=str(context.account_id),
                pending_items=len(context.items),
            )

            try:
                await self._run_items(run_id, context)
            except Exception as e:
                logger.exception("batch_run_dispatch_error")
                self._finalize(run_id, fault=str(e) or e.__class__.__name__)
            else:
                self._finalize(run_id)

            snapshot = self.status(run_id)
            logger.info(
                "batch_run_dispatch_finished",
                status=str(snapshot.status),
                successful_checks=snapshot.successful_checks,
                failed_checks=snapshot.failed_checks,
            )
            return snapshot

    def _claim(self, run_id: UUID) -> DispatchContext | None:
        """Move the run to processing and load its pending items."""
        with self._session() as session:
            run = session.get(BatchRunModel, run_id)
            if run is None:
                raise RunNotFoundError(f"Batch run {run_id} not found")

            if run.status == BatchRunStatus.PENDING:
                result = session.execute(
                    update(BatchRunModel)
                    .where(
                        BatchRunModel.id == run_id,
                        BatchRunModel.status == str(BatchRunStatus.PENDING),
                    )
                    .values(status=str(BatchRunStatus.PROCESSING), started_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    logger.info("batch_run_claim_lost")
                    return None
            elif run.status != BatchRunStatus.PROCESSING:
                logger.info("batch_run_not_dispatchable", status=run.status)
                return None

            account = session.get(AccountModel, run.account_id)
            domain = account.website_domain if account else None

            items = [
                WorkItem(
                    item_id=item.id,
                    keyword_id=item.keyword_id,
                    question_index=item.question_index,
                    question=item.question,
                    provider=LLMProvider(item.provider),
                    run_index=item.run_index,
                )
                for item in session.execute(
                    select(BatchRunItemModel)
                    .where(
                        BatchRunItemModel.run_id == run_id,
                        BatchRunItemModel.status == str(BatchItemStatus.PENDING),
                    )
                    .order_by(BatchRunItemModel.id)
                ).scalars()
            ]

            return DispatchContext(
                account_id=run.account_id,
                domain=domain or "",
                brand_name=(account.business_name or account.name) if account else None,
                items=items,
            )

    async def _run_items(self, run_id: UUID, context: DispatchContext) -> None:
        global_slots = asyncio.Semaphore(max(1, self.config.dispatch_concurrency))
        provider_slots = {
            provider: asyncio.Semaphore(max(1, self.config.provider_concurrency))
            for provider in {item.provider for item in context.items}
        }

        async def run_one(item: WorkItem) -> None:
            # Provider slot first so a slow provider cannot hold global slots while queued
            async with provider_slots[item.provider], global_slots:
                outcome, error, attempts = await self._check_with_retry(item, context)
            self._record(run_id, context.account_id, item, outcome, error, attempts)

        results = await asyncio.gather(
            *(run_one(item) for item in context.items), return_exceptions=True
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

    async def _check_with_retry(
        self, item: WorkItem, context: DispatchContext
    ) -> tuple[CheckOutcome | None, str | None, int]:
        """Call the adapter, retrying a failed item up to check_item_retries times."""
        timeout = self.config.check_timeout_seconds
        max_attempts = 1 + max(0, self.config.check_item_retries)
        error: str | None = None

        for attempt in range(1, max_attempts + 1):
            try:
                outcome = await asyncio.wait_for(
                    self.adapter.check(
                        item.question,
                        context.domain,
                        context.brand_name,
                        item.provider,
                        timeout,
                    ),
                    timeout=timeout,
                )
                return outcome, None, attempt
            except TimeoutError:
                error = f"Timed out after {timeout:g} seconds"
            except ProviderError as e:
                error = e.message
            except Exception as e:
                # An adapter bug fails this item only, never the run
                logger.exception(
                    "provider_check_crashed",
                    provider=str(item.provider),
                    question_index=item.question_index,
                )
                error = f"Unexpected error: {e.__class__.__name__}: {e}"

            logger.warning(
                "provider_check_failed",
                provider=str(item.provider),
                question_index=item.question_index,
                run_index=item.run_index,
                attempt=attempt,
                error=error,
            )

        return None, error, max_attempts

    def _record(
        self,
        run_id: UUID,
        account_id: UUID,
        item: WorkItem,
        outcome: CheckOutcome | None,
        error: str | None,
        attempts: int,
    ) -> None:
        """Persist one item result and bump the run counters."""
        succeeded = outcome is not None
        with self._session() as session:
            result = session.execute(
                update(BatchRunItemModel)
                .where(
                    BatchRunItemModel.id == item.item_id,
                    BatchRunItemModel.status == str(BatchItemStatus.PENDING),
                )
                .values(
                    status=str(BatchItemStatus.SUCCEEDED if succeeded else BatchItemStatus.FAILED),
                    attempts=BatchRunItemModel.attempts + attempts,
                    error_message=error,
                    completed_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                # Another delivery of this run already recorded the item
                return

            if outcome is not None:
                check_store.append(
                    session,
                    account_id=account_id,
                    keyword_id=item.keyword_id,
                    question=item.question,
                    provider=item.provider,
                    outcome=outcome,
                    run_id=run_id,
                    run_index=item.run_index,
                )

            values: dict[str, Any] = {"processed_checks": BatchRunModel.processed_checks + 1}
            if succeeded:
                values["successful_checks"] = BatchRunModel.successful_checks + 1
            else:
                values["failed_checks"] = BatchRunModel.failed_checks + 1
            if self._question_done(session, run_id, item.question_index):
                values["processed_questions"] = BatchRunModel.processed_questions + 1

            session.execute(
                update(BatchRunModel)
                .where(BatchRunModel.id == run_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )

    @staticmethod
    def _question_done(session: Session, run_id: UUID, question_index: int) -> bool:
        remaining = session.execute(
            select(func.count())
            .select_from(BatchRunItemModel)
            .where(
                BatchRunItemModel.run_id == run_id,
                BatchRunItemModel.question_index == question_index,
                BatchRunItemModel.status == str(BatchItemStatus.PENDING),
            )
        ).scalar_one()
        return remaining == 0

    def _finalize(self, run_id: UUID, fault: str | None = None) -> None:
        """Close out a processing run and settle its reservation.

        Completed if at least one check succeeded, failed otherwise. Credits
        are debited whenever any check succeeded and refunded when none did.
        """
        with self._session() as session:
            run = session.execute(
                select(BatchRunModel)
                .where(BatchRunModel.id == run_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one()
            if run.status != BatchRunStatus.PROCESSING:
                return

            # Items never attempted (fault) count as failed so the counters balance
            abandoned = session.execute(
                update(BatchRunItemModel)
                .where(
                    BatchRunItemModel.run_id == run_id,
                    BatchRunItemModel.status == str(BatchItemStatus.PENDING),
                )
                .values(
                    status=str(BatchItemStatus.FAILED),
                    error_message=f"Not attempted: {fault}" if fault else "Not attempted",
                    completed_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            if abandoned:
                run.failed_checks += abandoned
                run.processed_checks += abandoned
                run.processed_questions = run.total_questions

            touched = session.execute(
                select(BatchRunItemModel.keyword_id)
                .where(
                    BatchRunItemModel.run_id == run_id,
                    BatchRunItemModel.status == str(BatchItemStatus.SUCCEEDED),
                )
                .distinct()
            ).scalars()
            for keyword_id in list(touched):
                aggregator.refresh(session, run.account_id, keyword_id)

            succeeded = run.successful_checks > 0
            if fault:
                run.status = str(BatchRunStatus.FAILED)
                run.error_message = f"Batch run aborted: {fault}"
            elif succeeded:
                run.status = str(BatchRunStatus.COMPLETED)
            else:
                run.status = str(BatchRunStatus.FAILED)
                run.error_message = self._dominant_error(session, run_id, run.failed_checks)
            run.completed_at = utcnow()
            session.flush()

            self._settle(session, run_id, succeeded=succeeded)

            logger.info(
                "batch_run_finalized",
                run_id=str(run_id),
                status=run.status,
                successful_checks=run.successful_checks,
                failed_checks=run.failed_checks,
                error_message=run.error_message,
            )

    @staticmethod
    def _dominant_error(session: Session, run_id: UUID, failed: int) -> str:
        row = session.execute(
            select(BatchRunItemModel.error_message, func.count().label("n"))
            .where(
                BatchRunItemModel.run_id == run_id,
                BatchRunItemModel.status == str(BatchItemStatus.FAILED),
            )
            .group_by(BatchRunItemModel.error_message)
            .order_by(func.count().desc())
            .limit(1)
        ).first()
        message = row[0] if row and row[0] else "unknown error"
        return f"All {failed} checks failed: {message}"

    @staticmethod
    def _settle(session: Session, run_id: UUID, succeeded: bool) -> None:
        reservation_id = session.execute(
            select(BatchRunModel.reservation_id).where(BatchRunModel.id == run_id)
        ).scalar_one()
        if reservation_id is None:
            return
        token = credits.get_reservation_token(session, reservation_id)
        if succeeded:
            credits.debit(session, token, description=f"Batch run {run_id}")
        else:
            credits.refund(session, token, description=f"Batch run {run_id} failed")

    # =========================================================================
    # Reads, cancellation, activation
    # =========================================================================

    def status(self, run_id: UUID, account_id: UUID | None = None) -> BatchRunSnapshot:
        """Current persisted state of a run."""
        with self._session() as session:
            run = session.get(BatchRunModel, run_id)
            if run is None or (account_id is not None and run.account_id != account_id):
                raise RunNotFoundError(f"Batch run {run_id} not found")
            return to_snapshot(run)

    def list_runs(self, account_id: UUID, limit: int = 20) -> list[BatchRunSnapshot]:
        with self._session() as session:
            runs = session.execute(
                select(BatchRunModel)
                .where(BatchRunModel.account_id == account_id)
                .order_by(BatchRunModel.created_at.desc())
                .limit(limit)
            ).scalars()
            return [to_snapshot(run) for run in runs]

    def cancel_scheduled(self, account_id: UUID, run_id: UUID) -> int:
        """Cancel a run that has not fired yet and refund its reservation.

        Returns:
            Number of credits refunded
        """
        with self._session() as session:
            run = session.get(BatchRunModel, run_id)
            if run is None or run.account_id != account_id:
                raise RunNotFoundError(f"Batch run {run_id} not found")

            result = session.execute(
                update(BatchRunModel)
                .where(
                    BatchRunModel.id == run_id,
                    BatchRunModel.status == str(BatchRunStatus.SCHEDULED),
                )
                .values(status=str(BatchRunStatus.CANCELLED), completed_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.refresh(run)
                raise RunNotCancellableError(run_id, run.status)

            session.execute(
                update(BatchRunItemModel)
                .where(
                    BatchRunItemModel.run_id == run_id,
                    BatchRunItemModel.status == str(BatchItemStatus.PENDING),
                )
                .values(status=str(BatchItemStatus.SKIPPED))
                .execution_options(synchronize_session=False)
            )

            refunded = 0
            if run.reservation_id is not None:
                token = credits.get_reservation_token(session, run.reservation_id)
                credits.refund(session, token, description=f"Scheduled batch run {run_id} cancelled")
                refunded = token.amount

        logger.info(
            "batch_run_cancelled",
            run_id=str(run_id),
            account_id=str(account_id),
            credits_refunded=refunded,
        )
        return refunded

    def activate_due_runs(self, now: datetime | None = None) -> list[UUID]:
        """Flip scheduled runs whose time has come to pending and dispatch them."""
        now = as_utc(now) or utcnow()
        activated: list[UUID] = []

        with self._session() as session:
            due = list(
                session.execute(
                    select(BatchRunModel.id).where(
                        BatchRunModel.status == str(BatchRunStatus.SCHEDULED),
                        BatchRunModel.scheduled_for <= now,
                    )
                ).scalars()
            )
            for run_id in due:
                result = session.execute(
                    update(BatchRunModel)
                    .where(
                        BatchRunModel.id == run_id,
                        BatchRunModel.status == str(BatchRunStatus.SCHEDULED),
                    )
                    .values(status=str(BatchRunStatus.PENDING))
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    activated.append(run_id)

        for run_id in activated:
            logger.info("scheduled_batch_run_activated", run_id=str(run_id))
            try:
                self._hand_off(run_id)
            except BatchRunError:
                continue
        return activated


def get_batch_run_orchestrator() -> BatchRunOrchestrator:
    """Get a batch run orchestrator with the configured adapter and dispatcher."""
    return BatchRunOrchestrator()
