"""Initial schema

Revision ID: 0001
Revises:
Create Date: 2026-10-05

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Accounts table
    op.create_table(
        "accounts",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("business_name", sa.String(255), nullable=True),
        sa.Column("website_domain", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )

    # Keyword concepts with their questions
    op.create_table(
        "keywords",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("account_id", sa.UUID(), nullable=False),
        sa.Column("phrase", sa.String(255), nullable=False),
        sa.Column("related_questions", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_keywords_account_id", "keywords", ["account_id"])

    # Credit balances (one row per account)
    op.create_table(
        "credit_balances",
        sa.Column("account_id", sa.UUID(), nullable=False),
        sa.Column("available_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reserved_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("account_id"),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
        sa.CheckConstraint("available_credits >= 0", name="ck_credit_available_non_negative"),
        sa.CheckConstraint("reserved_credits >= 0", name="ck_credit_reserved_non_negative"),
    )

    # Credit reservations
    op.create_table(
        "credit_reservations",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("account_id", sa.UUID(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="held"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_credit_reservations_account_id", "credit_reservations", ["account_id"])
    op.create_index("ix_credit_reservations_status", "credit_reservations", ["status"])

    # Credit ledger (append-only)
    op.create_table(
        "credit_ledger",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.UUID(), nullable=False),
        sa.Column("entry_type", sa.String(20), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("available_after", sa.Integer(), nullable=False),
        sa.Column("reserved_after", sa.Integer(), nullable=False),
        sa.Column("reservation_id", sa.UUID(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("metadata_", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(
            ["reservation_id"], ["credit_reservations.id"], ondelete="SET NULL"
        ),
    )
    op.create_index("ix_credit_ledger_account_id", "credit_ledger", ["account_id"])
    op.create_index("ix_credit_ledger_entry_type", "credit_ledger", ["entry_type"])
    op.create_index("ix_credit_ledger_reservation_id", "credit_ledger", ["reservation_id"])
    op.create_index("ix_credit_ledger_created_at", "credit_ledger", ["created_at"])

    # Recurring schedules
    op.create_table(
        "llm_visibility_schedules",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("account_id", sa.UUID(), nullable=False),
        sa.Column("frequency", sa.String(20), nullable=False),
        sa.Column("day_of_week", sa.Integer(), nullable=True),
        sa.Column("day_of_month", sa.Integer(), nullable=True),
        sa.Column("hour_of_day", sa.Integer(), nullable=False, server_default="9"),
        sa.Column("providers", sa.JSON(), nullable=False),
        sa.Column("runs_per_question", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_run_id", sa.UUID(), nullable=True),
        sa.Column("last_status", sa.String(50), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), onupdate=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("account_id", name="uq_llm_visibility_schedules_account_id"),
    )
    op.create_index(
        "ix_llm_visibility_schedules_is_enabled", "llm_visibility_schedules", ["is_enabled"]
    )
    op.create_index(
        "ix_llm_visibility_schedules_next_run_at", "llm_visibility_schedules", ["next_run_at"]
    )

    # Batch runs
    op.create_table(
        "llm_batch_runs",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("account_id", sa.UUID(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("providers", sa.JSON(), nullable=False),
        sa.Column("runs_per_question", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("total_questions", sa.Integer(), nullable=False),
        sa.Column("processed_questions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_checks", sa.Integer(), nullable=False),
        sa.Column("processed_checks", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("successful_checks", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_checks", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("estimated_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reservation_id", sa.UUID(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=True),
        sa.Column("schedule_id", sa.UUID(), nullable=True),
        sa.Column("retry_of_run_id", sa.UUID(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(
            ["reservation_id"], ["credit_reservations.id"], ondelete="SET NULL"
        ),
        sa.ForeignKeyConstraint(
            ["schedule_id"], ["llm_visibility_schedules.id"], ondelete="SET NULL"
        ),
        sa.ForeignKeyConstraint(["retry_of_run_id"], ["llm_batch_runs.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_llm_batch_runs_account_id", "llm_batch_runs", ["account_id"])
    op.create_index("ix_llm_batch_runs_status", "llm_batch_runs", ["status"])
    op.create_index("ix_llm_batch_runs_scheduled_for", "llm_batch_runs", ["scheduled_for"])
    op.create_index("ix_llm_batch_runs_created_at", "llm_batch_runs", ["created_at"])
    op.create_index(
        "ix_llm_batch_runs_account_status", "llm_batch_runs", ["account_id", "status"]
    )
    # At most one non-terminal run per account
    op.create_index(
        "uq_llm_batch_runs_one_active",
        "llm_batch_runs",
        ["account_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'processing', 'scheduled')"),
    )

    # Batch run work items
    op.create_table(
        "llm_batch_run_items",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("run_id", sa.UUID(), nullable=False),
        sa.Column("keyword_id", sa.UUID(), nullable=False),
        sa.Column("question_index", sa.Integer(), nullable=False),
        sa.Column("question", sa.Text(), nullable=False),
        sa.Column("provider", sa.String(50), nullable=False),
        sa.Column("run_index", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["run_id"], ["llm_batch_runs.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["keyword_id"], ["keywords.id"], ondelete="CASCADE"),
        sa.UniqueConstraint(
            "run_id", "question_index", "provider", "run_index", name="uq_batch_run_item"
        ),
    )
    op.create_index("ix_llm_batch_run_items_run_id", "llm_batch_run_items", ["run_id"])
    op.create_index("ix_llm_batch_run_items_keyword_id", "llm_batch_run_items", ["keyword_id"])
    op.create_index("ix_llm_batch_run_items_status", "llm_batch_run_items", ["status"])

    # Visibility checks (immutable)
    op.create_table(
        "llm_visibility_checks",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.UUID(), nullable=False),
        sa.Column("keyword_id", sa.UUID(), nullable=False),
        sa.Column("run_id", sa.UUID(), nullable=True),
        sa.Column("run_index", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("question", sa.Text(), nullable=False),
        sa.Column("provider", sa.String(50), nullable=False),
        sa.Column("domain_cited", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("citation_position", sa.Integer(), nullable=True),
        sa.Column("citation_url", sa.String(2048), nullable=True),
        sa.Column("total_citations", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("brand_mentioned", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("response_snippet", sa.Text(), nullable=True),
        sa.Column("citations", sa.JSON(), nullable=True),
        sa.Column("api_cost_usd", sa.Float(), nullable=False, server_default="0"),
        sa.Column("checked_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["keyword_id"], ["keywords.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["run_id"], ["llm_batch_runs.id"], ondelete="SET NULL"),
        sa.CheckConstraint(
            "citation_position IS NULL OR citation_position > 0",
            name="ck_check_citation_position_positive",
        ),
    )
    op.create_index("ix_llm_visibility_checks_account_id", "llm_visibility_checks", ["account_id"])
    op.create_index("ix_llm_visibility_checks_keyword_id", "llm_visibility_checks", ["keyword_id"])
    op.create_index("ix_llm_visibility_checks_run_id", "llm_visibility_checks", ["run_id"])
    op.create_index("ix_llm_visibility_checks_provider", "llm_visibility_checks", ["provider"])
    op.create_index("ix_llm_visibility_checks_checked_at", "llm_visibility_checks", ["checked_at"])
    op.create_index(
        "ix_llm_visibility_checks_scope",
        "llm_visibility_checks",
        ["account_id", "keyword_id", "checked_at"],
    )

    # Cached visibility summaries
    op.create_table(
        "llm_visibility_summary",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("account_id", sa.UUID(), nullable=False),
        sa.Column("keyword_id", sa.UUID(), nullable=False),
        sa.Column("total_questions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("questions_with_citation", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("visibility_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("provider_stats", sa.JSON(), nullable=True),
        sa.Column("last_checked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), onupdate=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["keyword_id"], ["keywords.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("account_id", "keyword_id", name="uq_visibility_summary_scope"),
    )
    op.create_index(
        "ix_llm_visibility_summary_account_id", "llm_visibility_summary", ["account_id"]
    )
    op.create_index(
        "ix_llm_visibility_summary_keyword_id", "llm_visibility_summary", ["keyword_id"]
    )


def downgrade() -> None:
    op.drop_table("llm_visibility_summary")
    op.drop_table("llm_visibility_checks")
    op.drop_table("llm_batch_run_items")
    op.drop_table("llm_batch_runs")
    op.drop_table("llm_visibility_schedules")
    op.drop_table("credit_ledger")
    op.drop_table("credit_reservations")
    op.drop_table("credit_balances")
    op.drop_table("keywords")
    op.drop_table("accounts")
