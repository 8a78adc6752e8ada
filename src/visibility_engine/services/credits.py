"""Credit ledger service.

Balances live in one row per account and are only changed here, through
guarded UPDATE statements, so two callers racing on the same row cannot both
succeed when only one of them fits. Every movement appends a ledger entry.

These functions flush but never commit; the caller owns the transaction.
"""

from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from visibility_engine.db.models import (
    CreditBalanceModel,
    CreditLedgerEntryModel,
    CreditReservationModel,
)
from visibility_engine.domain.enums import LedgerEntryType, ReservationStatus
from visibility_engine.domain.models import CreditBalanceSnapshot, ReservationToken
from visibility_engine.logging import get_logger
from visibility_engine.utils.time import utcnow

logger = get_logger(__name__)


class CreditError(Exception):
    """Base class for credit ledger errors."""

    pass


class InsufficientCreditsError(CreditError):
    """Raised when a reservation does not fit in the available balance."""

    def __init__(self, required: int, available: int) -> None:
        self.required = required
        self.available = available
        super().__init__(f"Insufficient credits: {required} required, {available} available")


class ReservationNotFoundError(CreditError):
    """Raised when a reservation id does not exist."""

    pass


class ReservationSettledError(CreditError):
    """Raised when a reservation has already been debited or refunded."""

    def __init__(self, reservation_id: UUID, status: str | None = None) -> None:
        self.reservation_id = reservation_id
        self.status = status
        super().__init__(f"Reservation {reservation_id} already settled ({status})")


def ensure_balance(session: Session, account_id: UUID) -> None:
    """Create the zero balance row for an account if it does not exist yet."""
    exists = session.execute(
        select(CreditBalanceModel.account_id).where(CreditBalanceModel.account_id == account_id)
    ).scalar_one_or_none()
    if exists is None:
        session.add(
            CreditBalanceModel(account_id=account_id, available_credits=0, reserved_credits=0)
        )
        session.flush()
        logger.info("credit_balance_created", account_id=str(account_id))


def lock_balance(session: Session, account_id: UUID) -> CreditBalanceModel:
    """Lock the account's balance row until the current transaction ends.

    Serializes start() calls for one account on PostgreSQL. SQLite ignores
    FOR UPDATE; file-backed SQLite engines take the write lock at BEGIN instead.
    """
    ensure_balance(session, account_id)
    return session.execute(
        select(CreditBalanceModel)
        .where(CreditBalanceModel.account_id == account_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one()


def balance(session: Session, account_id: UUID) -> CreditBalanceSnapshot:
    """Read the current balance. Accounts without a row have zero credits."""
    row = session.execute(
        select(CreditBalanceModel.available_credits, CreditBalanceModel.reserved_credits).where(
            CreditBalanceModel.account_id == account_id
        )
    ).one_or_none()
    if row is None:
        return CreditBalanceSnapshot(account_id=account_id, available=0, reserved=0)
    return CreditBalanceSnapshot(account_id=account_id, available=row[0], reserved=row[1])


def _append_entry(
    session: Session,
    account_id: UUID,
    entry_type: LedgerEntryType,
    amount: int,
    reservation_id: UUID | None = None,
    description: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> CreditBalanceSnapshot:
    snapshot = balance(session, account_id)
    session.add(
        CreditLedgerEntryModel(
            account_id=account_id,
            entry_type=str(entry_type),
            amount=amount,
            available_after=snapshot.available,
            reserved_after=snapshot.reserved,
            reservation_id=reservation_id,
            description=description,
            metadata_=metadata,
        )
    )
    session.flush()
    return snapshot


def grant(
    session: Session,
    account_id: UUID,
    amount: int,
    description: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> CreditBalanceSnapshot:
    """Add credits to an account (purchase, monthly allowance, manual top-up)."""
    if amount <= 0:
        raise ValueError("Grant amount must be positive")

    ensure_balance(session, account_id)
    session.execute(
        update(CreditBalanceModel)
        .where(CreditBalanceModel.account_id == account_id)
        .values(
            available_credits=CreditBalanceModel.available_credits + amount,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    snapshot = _append_entry(
        session,
        account_id,
        LedgerEntryType.GRANT,
        amount,
        description=description or "Credit grant",
        metadata=metadata,
    )
    logger.info(
        "credits_granted",
        account_id=str(account_id),
        amount=amount,
        available=snapshot.available,
    )
    return snapshot


def reserve(
    session: Session,
    account_id: UUID,
    amount: int,
    description: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> ReservationToken:
    """Move credits from available to reserved.

    Raises:
        InsufficientCreditsError: If fewer than `amount` credits are available.
            Nothing is changed in that case.
    """
    if amount <= 0:
        raise ValueError("Reservation amount must be positive")

    ensure_balance(session, account_id)
    result = session.execute(
        update(CreditBalanceModel)
        .where(
            CreditBalanceModel.account_id == account_id,
            CreditBalanceModel.available_credits >= amount,
        )
        .values(
            available_credits=CreditBalanceModel.available_credits - amount,
            reserved_credits=CreditBalanceModel.reserved_credits + amount,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        available = balance(session, account_id).available
        logger.info(
            "credits_reservation_rejected",
            account_id=str(account_id),
            required=amount,
            available=available,
        )
        raise InsufficientCreditsError(required=amount, available=available)

    reservation = CreditReservationModel(
        id=uuid4(),
        account_id=account_id,
        amount=amount,
        status=str(ReservationStatus.HELD),
        description=description,
    )
    session.add(reservation)
    session.flush()

    snapshot = _append_entry(
        session,
        account_id,
        LedgerEntryType.RESERVE,
        amount,
        reservation_id=reservation.id,
        description=description,
        metadata=metadata,
    )
    logger.info(
        "credits_reserved",
        account_id=str(account_id),
        reservation_id=str(reservation.id),
        amount=amount,
        available=snapshot.available,
        reserved=snapshot.reserved,
    )
    return ReservationToken(reservation_id=reservation.id, account_id=account_id, amount=amount)


def _settle(session: Session, token: ReservationToken, outcome: ReservationStatus) -> None:
    """Move a reservation out of HELD. Only one caller can win this transition."""
    result = session.execute(
        update(CreditReservationModel)
        .where(
            CreditReservationModel.id == token.reservation_id,
            CreditReservationModel.status == str(ReservationStatus.HELD),
        )
        .values(status=str(outcome), settled_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        current = session.execute(
            select(CreditReservationModel.status).where(
                CreditReservationModel.id == token.reservation_id
            )
        ).scalar_one_or_none()
        if current is None:
            raise ReservationNotFoundError(f"Reservation {token.reservation_id} not found")
        raise ReservationSettledError(token.reservation_id, current)


def debit(session: Session, token: ReservationToken, description: str | None = None) -> None:
    """Spend a reservation: the reserved credits leave the account for good."""
    _settle(session, token, ReservationStatus.DEBITED)
    session.execute(
        update(CreditBalanceModel)
        .where(CreditBalanceModel.account_id == token.account_id)
        .values(
            reserved_credits=CreditBalanceModel.reserved_credits - token.amount,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    snapshot = _append_entry(
        session,
        token.account_id,
        LedgerEntryType.DEBIT,
        token.amount,
        reservation_id=token.reservation_id,
        description=description,
    )
    logger.info(
        "credits_debited",
        account_id=str(token.account_id),
        reservation_id=str(token.reservation_id),
        amount=token.amount,
        reserved=snapshot.reserved,
    )


def refund(session: Session, token: ReservationToken, description: str | None = None) -> None:
    """Release a reservation back to the available balance."""
    _settle(session, token, ReservationStatus.REFUNDED)
    session.execute(
        update(CreditBalanceModel)
        .where(CreditBalanceModel.account_id == token.account_id)
        .values(
            available_credits=CreditBalanceModel.available_credits + token.amount,
            reserved_credits=CreditBalanceModel.reserved_credits - token.amount,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    snapshot = _append_entry(
        session,
        token.account_id,
        LedgerEntryType.REFUND,
        token.amount,
        reservation_id=token.reservation_id,
        description=description,
    )
    logger.info(
        "credits_refunded",
        account_id=str(token.account_id),
        reservation_id=str(token.reservation_id),
        amount=token.amount,
        available=snapshot.available,
    )


def get_reservation_token(session: Session, reservation_id: UUID) -> ReservationToken:
    """Rebuild the token for a stored reservation (e.g. from a batch run row)."""
    reservation = session.get(CreditReservationModel, reservation_id)
    if reservation is None:
        raise ReservationNotFoundError(f"Reservation {reservation_id} not found")
    return ReservationToken(
        reservation_id=reservation.id,
        account_id=reservation.account_id,
        amount=reservation.amount,
    )


def history(
    session: Session,
    account_id: UUID,
    limit: int = 50,
) -> list[CreditLedgerEntryModel]:
    """List the most recent ledger entries for an account, newest first."""
    query = (
        select(CreditLedgerEntryModel)
        .where(CreditLedgerEntryModel.account_id == account_id)
        .order_by(CreditLedgerEntryModel.id.desc())
        .limit(limit)
    )
    return list(session.execute(query).scalars().all())
