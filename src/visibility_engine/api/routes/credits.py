"""Credit balance and ledger endpoints."""

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Query
from pydantic import Field

from visibility_engine.api.deps import AccountIdDep, SessionDep
from visibility_engine.api.schemas import CamelModel, CreditBalanceResponse
from visibility_engine.logging import get_logger
from visibility_engine.services import credits

router = APIRouter(prefix="/visibility/credits", tags=["Credits"])
logger = get_logger(__name__)


class GrantCreditsRequest(CamelModel):
    """Request to add credits to the calling account."""

    amount: int = Field(..., gt=0)
    description: str | None = Field(None, max_length=500)


class LedgerEntryResponse(CamelModel):
    id: int
    entry_type: str
    amount: int
    available_after: int
    reserved_after: int
    reservation_id: str | None = None
    description: str | None = None
    metadata: dict[str, Any] | None = None
    created_at: datetime


@router.get("/balance", response_model=CreditBalanceResponse, summary="Credit balance")
def get_balance(account_id: AccountIdDep, session: SessionDep) -> CreditBalanceResponse:
    snapshot = credits.balance(session, account_id)
    return CreditBalanceResponse(available=snapshot.available, reserved=snapshot.reserved)


@router.post("/grant", response_model=CreditBalanceResponse, summary="Grant credits")
def grant_credits(
    request: GrantCreditsRequest,
    account_id: AccountIdDep,
    session: SessionDep,
) -> CreditBalanceResponse:
    """Top up the account (purchases and allowances are granted this way)."""
    logger.info("credits_grant_requested", account_id=str(account_id), amount=request.amount)
    snapshot = credits.grant(session, account_id, request.amount, description=request.description)
    session.commit()
    return CreditBalanceResponse(available=snapshot.available, reserved=snapshot.reserved)


@router.get("/ledger", response_model=list[LedgerEntryResponse], summary="Credit ledger")
def get_ledger(
    account_id: AccountIdDep,
    session: SessionDep,
    limit: int = Query(50, ge=1, le=500, description="Number of entries"),
) -> list[LedgerEntryResponse]:
    return [
        LedgerEntryResponse(
            id=entry.id,
            entry_type=entry.entry_type,
            amount=entry.amount,
            available_after=entry.available_after,
            reserved_after=entry.reserved_after,
            reservation_id=str(entry.reservation_id) if entry.reservation_id else None,
            description=entry.description,
            metadata=entry.metadata_,
            created_at=entry.created_at,
        )
        for entry in credits.history(session, account_id, limit=limit)
    ]
