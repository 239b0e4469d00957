"""Pytest configuration and fixtures."""
import json
import os

# Settings are read at import time; point them at test doubles first
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["NOTIFY_BACKEND"] = "memory"
os.environ["EMBEDDING_PROVIDER"] = "deterministic"
os.environ["OPENAI_API_KEY"] = "test-key"
os.environ["LOG_FORMAT"] = "text"
os.environ.pop("TAVILY_API_KEY", None)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from decision_memory.db import Base, get_db, utcnow
from decision_memory.models.decision import Decision, DecisionEmbedding, DecisionStatus
from decision_memory.services.embeddings import DeterministicEmbeddingProvider, content_hash
from decision_memory.services.handlers import HandlerContext
from decision_memory.services.notifier import ChangeNotifier

# Use in-memory SQLite for tests
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class FakeCompletion:
    """Completion provider replaying canned responses in order.

    A response may be a dict (sent as JSON), a raw string, or an exception
    instance to raise.
    """

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def complete(self, system_prompt: str, user_message: str) -> str:
        self.calls.append((system_prompt, user_message))
        if not self.responses:
            raise AssertionError("FakeCompletion ran out of responses")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if isinstance(response, (dict, list)):
            return json.dumps(response)
        return response


class RecordingBroadcaster:
    """Broadcaster remembering which entities were published."""

    def __init__(self):
        self.published = []

    def publish(self, db, entity_id) -> None:
        self.published.append(str(entity_id))


def plan_response(count: int = 6) -> dict:
    return {"plan": [{"description": f"Step number {i}", "status": "pending"} for i in range(1, count + 1)]}


@pytest.fixture(scope="function")
def db_session():
    """Create a fresh database session for each test."""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session_factory(db_session):
    """Session factory on the same in-memory database as ``db_session``."""
    return TestingSessionLocal


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def embedder():
    return DeterministicEmbeddingProvider()


@pytest.fixture
def make_context(broadcaster, embedder):
    """Build a HandlerContext around canned completion responses."""
    def _make(*responses) -> HandlerContext:
        return HandlerContext(
            completion=FakeCompletion(*responses),
            broadcaster=broadcaster,
            embedder=embedder,
        )
    return _make


@pytest.fixture
def make_decision(db_session):
    """Insert a decision directly, optionally completed and indexed."""
    def _make(
        owner_id: str = "user-1",
        subject: str = "Launch a coffee subscription",
        context: str = "Small roastery with loyal local customers",
        expected_outcome: str = "Recurring monthly revenue",
        rationale: str = "Customers ask for regular deliveries",
        status: str = DecisionStatus.DRAFTING.value,
        outcome: str = None,
        plan: list = None,
        success_driver: str = None,
        failure_reason: str = None,
        search_text: str = None,
        vector: list = None,
        is_deleted: bool = False,
    ) -> Decision:
        decision = Decision(
            owner_id=owner_id,
            status=status,
            subject=subject,
            context=context,
            expected_outcome=expected_outcome,
            rationale=rationale,
            plan=plan or [],
            draft_plan=[],
            similarity_references=[],
            outcome=outcome,
            success_driver=success_driver,
            failure_reason=failure_reason,
            search_text=search_text,
            is_deleted=is_deleted,
            completed_at=utcnow() if status == DecisionStatus.COMPLETED.value else None,
        )
        db_session.add(decision)
        db_session.flush()
        if vector is not None:
            db_session.add(DecisionEmbedding(
                decision_id=decision.id,
                owner_id=owner_id,
                vector=list(vector),
                content_hash=content_hash(search_text or subject),
            ))
        db_session.commit()
        db_session.refresh(decision)
        return decision
    return _make


@pytest.fixture(scope="function")
def client(db_session, monkeypatch):
    """Create a test client with overridden database dependency."""
    from decision_memory import main

    monkeypatch.setattr(main, "run_startup_validation", lambda: None)

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    main.app.dependency_overrides[get_db] = override_get_db
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()


@pytest.fixture
def notifier():
    return ChangeNotifier(heartbeat_interval=0.05)
