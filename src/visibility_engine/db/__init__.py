"""Database layer."""

from visibility_engine.db.models import (
    AccountModel,
    Base,
    BatchRunItemModel,
    BatchRunModel,
    CreditBalanceModel,
    CreditLedgerEntryModel,
    CreditReservationModel,
    KeywordModel,
    VisibilityCheckModel,
    VisibilityScheduleModel,
    VisibilitySummaryModel,
)
from visibility_engine.db.session import get_session, get_session_context, init_db

__all__ = [
    "Base",
    "get_session",
    "get_session_context",
    "init_db",
    # Models
    "AccountModel",
    "BatchRunItemModel",
    "BatchRunModel",
    "CreditBalanceModel",
    "CreditLedgerEntryModel",
    "CreditReservationModel",
    "KeywordModel",
    "VisibilityCheckModel",
    "VisibilityScheduleModel",
    "VisibilitySummaryModel",
]
