"""SQLAlchemy ORM models."""

from datetime import datetime
from typing import Any
from uuid import UUID as PyUUID
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from visibility_engine.utils.time import utcnow


# SQLite only autoincrements INTEGER PRIMARY KEY
AutoIncrementId = BigInteger().with_variant(Integer, "sqlite")


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# =============================================================================
# Accounts & keyword concepts
# =============================================================================


class AccountModel(Base):
    """Business account whose visibility is tracked."""

    __tablename__ = "accounts"

    id: Mapped[PyUUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    business_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    website_domain: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    keywords: Mapped[list["KeywordModel"]] = relationship(
        "KeywordModel", back_populates="account", cascade="all, delete-orphan"
    )


class KeywordModel(Base):
    """Keyword concept with the questions asked of the providers."""

    __tablename__ = "keywords"

    id: Mapped[PyUUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    account_id: Mapped[PyUUID] = mapped_column(
        Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), index=True
    )
    phrase: Mapped[str] = mapped_column(String(255), nullable=False)
    # Strings or {"question": "..."} objects
    related_questions: Mapped[list[Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    account: Mapped["AccountModel"] = relationship("AccountModel", back_populates="keywords")


# =============================================================================
# Credits
# =============================================================================


class CreditBalanceModel(Base):
    """Authoritative credit balance, one row per account."""

    __tablename__ = "credit_balances"

    account_id: Mapped[PyUUID] = mapped_column(
        Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), primary_key=True
    )
    available_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reserved_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("available_credits >= 0", name="ck_credit_available_non_negative"),
        CheckConstraint("reserved_credits >= 0", name="ck_credit_reserved_non_negative"),
    )


class CreditReservationModel(Base):
    """Credits held for an in-flight or scheduled batch run."""

    __tablename__ = "credit_reservations"

    id: Mapped[PyUUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    account_id: Mapped[PyUUID] = mapped_column(
        Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), index=True
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="held", index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class CreditLedgerEntryModel(Base):
    """Append-only audit trail of every credit movement."""

    __tablename__ = "credit_ledger"

    id: Mapped[int] = mapped_column(AutoIncrementId, primary_key=True, autoincrement=True)
    account_id: Mapped[PyUUID] = mapped_column(
        Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), index=True
    )
    entry_type: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    available_after: Mapped[int] = mapped_column(Integer, nullable=False)
    reserved_after: Mapped[int] = mapped_column(Integer, nullable=False)
    reservation_id: Mapped[PyUUID | None] = mapped_column(
        Uuid, ForeignKey("credit_reservations.id", ondelete="SET NULL"), nullable=True, index=True
    )
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata_", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, index=True
    )


# =============================================================================
# Batch runs
# =============================================================================


class BatchRunModel(Base):
    """One orchestrated execution of a question x provider work matrix."""

    __tablename__ = "llm_batch_runs"

    id: Mapped[PyUUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    account_id: Mapped[PyUUID] = mapped_column(
        Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), index=True
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    providers: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    runs_per_question: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    total_questions: Mapped[int] = mapped_column(Integer, nullable=False)
    processed_questions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_checks: Mapped[int] = mapped_column(Integer, nullable=False)
    processed_checks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successful_checks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_checks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    estimated_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reservation_id: Mapped[PyUUID | None] = mapped_column(
        Uuid, ForeignKey("credit_reservations.id", ondelete="SET NULL"), nullable=True
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    scheduled_for: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    schedule_id: Mapped[PyUUID | None] = mapped_column(
        Uuid, ForeignKey("llm_visibility_schedules.id", ondelete="SET NULL"), nullable=True
    )
    retry_of_run_id: Mapped[PyUUID | None] = mapped_column(
        Uuid, ForeignKey("llm_batch_runs.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, index=True
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    items: Mapped[list["BatchRunItemModel"]] = relationship(
        "BatchRunItemModel", back_populates="run", cascade="all, delete-orphan"
    )

    __table_args__ = (Index("ix_llm_batch_runs_account_status", "account_id", "status"),)


class BatchRunItemModel(Base):
    """One (question, provider, repetition) work item of a batch run."""

    __tablename__ = "llm_batch_run_items"

    id: Mapped[int] = mapped_column(AutoIncrementId, primary_key=True, autoincrement=True)
    run_id: Mapped[PyUUID] = mapped_column(
        Uuid, ForeignKey("llm_batch_runs.id", ondelete="CASCADE"), index=True
    )
    keyword_id: Mapped[PyUUID] = mapped_column(
        Uuid, ForeignKey("keywords.id", ondelete="CASCADE"), index=True
    )
    question_index: Mapped[int] = mapped_column(Integer, nullable=False)
    question: Mapped[str] = mapped_column(Text, nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    run_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    run: Mapped["BatchRunModel"] = relationship("BatchRunModel", back_populates="items")

    __table_args__ = (
        UniqueConstraint(
            "run_id", "question_index", "provider", "run_index", name="uq_batch_run_item"
        ),
    )


# =============================================================================
# Visibility checks (system of record)
# =============================================================================


class VisibilityCheckModel(Base):
    """Immutable result of one provider check. Never updated or deleted."""

    __tablename__ = "llm_visibility_checks"

    id: Mapped[int] = mapped_column(AutoIncrementId, primary_key=True, autoincrement=True)
    account_id: Mapped[PyUUID] = mapped_column(
        Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), index=True
    )
    keyword_id: Mapped[PyUUID] = mapped_column(
        Uuid, ForeignKey("keywords.id", ondelete="CASCADE"), index=True
    )
    run_id: Mapped[PyUUID | None] = mapped_column(
        Uuid, ForeignKey("llm_batch_runs.id", ondelete="SET NULL"), nullable=True, index=True
    )
    run_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    question: Mapped[str] = mapped_column(Text, nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    domain_cited: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    citation_position: Mapped[int | None] = mapped_column(Integer, nullable=True)
    citation_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    total_citations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    brand_mentioned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    response_snippet: Mapped[str | None] = mapped_column(Text, nullable=True)
    citations: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)
    api_cost_usd: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    checked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, index=True
    )

    __table_args__ = (
        CheckConstraint(
            "citation_position IS NULL OR citation_position > 0",
            name="ck_check_citation_position_positive",
        ),
        Index("ix_llm_visibility_checks_scope", "account_id", "keyword_id", "checked_at"),
    )


class VisibilitySummaryModel(Base):
    """Cached rollup of the latest checks for a keyword. Safe to rebuild."""

    __tablename__ = "llm_visibility_summary"

    id: Mapped[PyUUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    account_id: Mapped[PyUUID] = mapped_column(
        Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), index=True
    )
    keyword_id: Mapped[PyUUID] = mapped_column(
        Uuid, ForeignKey("keywords.id", ondelete="CASCADE"), index=True
    )
    total_questions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    questions_with_citation: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    visibility_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    provider_stats: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    last_checked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("account_id", "keyword_id", name="uq_visibility_summary_scope"),
    )


# =============================================================================
# Recurring schedules
# =============================================================================


class VisibilityScheduleModel(Base):
    """Recurring batch run configuration, one per account."""

    __tablename__ = "llm_visibility_schedules"

    id: Mapped[PyUUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    account_id: Mapped[PyUUID] = mapped_column(
        Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), unique=True, index=True
    )
    frequency: Mapped[str] = mapped_column(String(20), nullable=False)
    day_of_week: Mapped[int | None] = mapped_column(Integer, nullable=True)  # 0 = Monday
    day_of_month: Mapped[int | None] = mapped_column(Integer, nullable=True)
    hour_of_day: Mapped[int] = mapped_column(Integer, nullable=False, default=9)
    providers: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    runs_per_question: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    next_run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_run_id: Mapped[PyUUID | None] = mapped_column(Uuid, nullable=True)
    last_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )
