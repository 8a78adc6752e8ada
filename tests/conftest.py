"""Pytest configuration and fixtures."""

import os
from collections.abc import Callable, Generator
from dataclasses import dataclass, field
from datetime import timedelta
from uuid import UUID, uuid4

import pytest
from fastapi.testclient import TestClient

# Set test environment before importing app modules
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REDIS_URL"] = "redis://localhost:6379/1"
os.environ["CELERY_BROKER_URL"] = "redis://localhost:6379/1"
os.environ["CELERY_RESULT_BACKEND"] = "redis://localhost:6379/1"
os.environ["PROVIDER_QUERY_ADAPTER"] = "stub"
os.environ["LOG_LEVEL"] = "WARNING"


@dataclass
class SeededAccount:
    """An account created for a test, with its keyword ids in creation order."""

    account_id: UUID
    keyword_ids: list[UUID] = field(default_factory=list)


@pytest.fixture(autouse=True)
def database() -> Generator[None, None, None]:
    """Fresh schema for every test (in-memory SQLite shared through a static pool)."""
    from visibility_engine.db.models import Base
    from visibility_engine.db.session import engine

    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def make_account() -> Callable[..., SeededAccount]:
    """Create an account with keyword concepts and an optional credit grant."""
    from visibility_engine.db.models import AccountModel, KeywordModel
    from visibility_engine.db.session import get_session_context
    from visibility_engine.services import credits
    from visibility_engine.utils.time import utcnow

    def _make(
        questions: list[list[object]] | None = None,
        credit_grant: int = 0,
        domain: str | None = "acmeplumbing.com",
        business_name: str = "Acme Plumbing",
    ) -> SeededAccount:
        created = utcnow() - timedelta(days=1)
        with get_session_context() as session:
            account = AccountModel(
                id=uuid4(),
                name=business_name,
                business_name=business_name,
                website_domain=domain,
            )
            session.add(account)
            seeded = SeededAccount(account_id=account.id)

            for index, keyword_questions in enumerate(questions or []):
                keyword = KeywordModel(
                    id=uuid4(),
                    account_id=account.id,
                    phrase=f"keyword {index}",
                    related_questions=keyword_questions,
                    created_at=created + timedelta(seconds=index),
                )
                session.add(keyword)
                seeded.keyword_ids.append(keyword.id)
            session.flush()

            if credit_grant:
                credits.grant(session, account.id, credit_grant, description="Test grant")
        return seeded

    return _make


@pytest.fixture
def dispatched() -> list[UUID]:
    """Run ids handed to the dispatcher, in order."""
    return []


@pytest.fixture
def provider_adapter():
    """Get a stub provider query adapter."""
    from visibility_engine.adapters.provider_query.stub import StubProviderQueryAdapter

    return StubProviderQueryAdapter()


@pytest.fixture
def orchestrator(provider_adapter, dispatched: list[UUID]):
    """Orchestrator that records dispatches instead of queueing to Celery."""
    from visibility_engine.services.orchestrator import BatchRunOrchestrator

    return BatchRunOrchestrator(adapter=provider_adapter, dispatcher=dispatched.append)


@pytest.fixture
def test_client(orchestrator) -> Generator[TestClient, None, None]:
    """Create a test client for the FastAPI app."""
    from visibility_engine.api.deps import get_orchestrator
    from visibility_engine.main import app

    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()

