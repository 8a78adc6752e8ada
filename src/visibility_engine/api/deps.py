"""FastAPI dependencies."""

from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from visibility_engine.db.session import get_session
from visibility_engine.services.orchestrator import (
    BatchRunOrchestrator,
    get_batch_run_orchestrator,
)

# Database session dependency
SessionDep = Annotated[Session, Depends(get_session)]


def get_account_id(
    x_account_id: Annotated[str, Header(description="Account the request acts for")],
) -> UUID:
    """Resolve the calling account from the X-Account-Id header."""
    try:
        return UUID(x_account_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid account ID",
        ) from None


AccountIdDep = Annotated[UUID, Depends(get_account_id)]


def get_orchestrator() -> BatchRunOrchestrator:
    """Get the batch run orchestrator instance."""
    return get_batch_run_orchestrator()


OrchestratorDep = Annotated[BatchRunOrchestrator, Depends(get_orchestrator)]
