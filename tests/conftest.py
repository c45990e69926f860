"""Pytest fixtures for testing."""
import os

# Settings are read at import time; keep tests off the on-disk database and rate limits
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("PAYMENT_RELAY_SECRET", "test-relay-secret")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from ssbprep.db.database import Base, get_db, get_session_factory
from ssbprep.db.init_db import SEED_PROMPTS
from ssbprep.db.models import Prompt, UserAccount
from ssbprep.services.analysis import (
    Feedback,
    SessionFeedback,
    Trait,
    TraitScore,
    get_analyzer,
)
from ssbprep.services.identity import Identity


class FakeAnalyzer:
    """Analyzer double that records requests and returns fixed feedback."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        if self.fail:
            raise RuntimeError("analysis backend unavailable")
        per_response = {
            item.prompt_id: Feedback(
                overall_score=6,
                strengths=["Positive outlook"],
                improvements=["Be more specific"],
            )
            for item in request.responses
        }
        summary = Feedback(
            overall_score=7,
            trait_scores=[
                TraitScore(trait=Trait.LEADERSHIP, score=8, description="Takes charge"),
                TraitScore(trait=Trait.COURAGE, score=6, description="Willing to act"),
            ],
            strengths=["Consistent responses"],
        )
        return SessionFeedback(responses=per_response, summary=summary)


@pytest.fixture(scope="function")
def test_engine():
    """In-memory engine shared by every session in a test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_engine):
    return sessionmaker(bind=test_engine, autoflush=False, autocommit=False)


@pytest.fixture(scope="function")
def test_db(session_factory):
    """Create a seeded test database session for each test."""
    db = session_factory()

    for prompt_data in SEED_PROMPTS:
        db.add(Prompt(**prompt_data))
    db.commit()

    yield db

    db.close()


@pytest.fixture
def guest():
    """Guest identity backed by a plain dict standing in for the browser session."""
    return Identity.guest({})


@pytest.fixture
def registered_user(test_db):
    """Create a registered account."""
    account = UserAccount(id="usr_test_user_123", display_name="Test Cadet", city="Pune")
    test_db.add(account)
    test_db.commit()
    return Identity.registered(account.id)


@pytest.fixture
def fake_analyzer():
    return FakeAnalyzer()


@pytest.fixture(scope="function")
def test_client(test_db, session_factory, fake_analyzer):
    """Create a test client bound to the seeded in-memory database."""
    from ssbprep.main import app

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_analyzer] = lambda: fake_analyzer

    client = TestClient(app)

    yield client

    app.dependency_overrides.clear()
