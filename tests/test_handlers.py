"""Tests for the background job handlers."""
import uuid

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from conftest import FakeCompletion, RecordingBroadcaster, plan_response
from decision_memory.db import Base, utcnow
from decision_memory.models.decision import Decision, DecisionEmbedding, DecisionStatus, Outcome
from decision_memory.services.decisions import confirm_plan, delete_decision
from decision_memory.services.embeddings import deterministic_embedding
from decision_memory.services.handlers import (
    HandlerContext,
    InsightContractError,
    PlanContractError,
    handle_draft_and_search,
    handle_extract_and_embed,
    validate_insights,
    validate_plan,
)
from decision_memory.services.llm import CompletionError
from decision_memory.services.similarity import build_query_text


class TestDraftAndSearch:
    """Test plan drafting with similarity references."""

    def test_drafts_pending_plan_and_references(self, db_session, make_decision, make_context, broadcaster):
        """The plan lands on both plan and draft_plan with at most three references."""
        decision = make_decision()
        query_vector = deterministic_embedding(build_query_text(decision))
        past = [
            make_decision(
                status=DecisionStatus.COMPLETED.value,
                outcome=Outcome.SUCCESS.value,
                success_driver=f"Driver {i}",
                search_text=build_query_text(decision),
                vector=query_vector,
            )
            for i in range(4)
        ]
        ctx = make_context(plan_response(6))

        handle_draft_and_search(db_session, {"decision_id": str(decision.id)}, ctx)

        db_session.refresh(decision)
        assert len(decision.plan) == 6
        assert all(step["status"] == "pending" for step in decision.plan)
        assert decision.draft_plan == decision.plan
        assert len(decision.similarity_references) == 3
        assert {r["referenced_decision_id"] for r in decision.similarity_references} <= {str(p.id) for p in past}
        assert decision.status == DecisionStatus.DRAFTING.value
        assert broadcaster.published == [str(decision.id)]

    def test_confirmed_plan_is_not_overwritten(self, db_session, make_decision, make_context):
        """A re-run after the user confirmed only refreshes worker-owned fields."""
        user_plan = [{"step_id": "s1", "description": "Mine", "status": "done", "note": None}]
        decision = make_decision(status=DecisionStatus.ACTIVE.value, plan=user_plan)

        handle_draft_and_search(db_session, {"decision_id": str(decision.id)}, make_context(plan_response(5)))

        db_session.refresh(decision)
        assert decision.plan == user_plan
        assert len(decision.draft_plan) == 5

    def test_wrong_step_count_raises_and_writes_nothing(self, db_session, make_decision, make_context, broadcaster):
        """A plan outside 5-15 steps is a retryable failure."""
        decision = make_decision()

        with pytest.raises(PlanContractError):
            handle_draft_and_search(db_session, {"decision_id": str(decision.id)}, make_context(plan_response(3)))

        db_session.rollback()
        db_session.refresh(decision)
        assert decision.plan == []
        assert decision.draft_plan == []
        assert broadcaster.published == []

    def test_provider_failure_propagates(self, db_session, make_decision, make_context):
        decision = make_decision()

        with pytest.raises(CompletionError):
            handle_draft_and_search(
                db_session, {"decision_id": str(decision.id)}, make_context(CompletionError("timeout"))
            )

    def test_deleted_decision_is_skipped(self, db_session, make_decision, make_context, broadcaster):
        """A deleted decision completes the job without any work."""
        decision = make_decision(is_deleted=True)
        ctx = make_context()

        handle_draft_and_search(db_session, {"decision_id": str(decision.id)}, ctx)

        assert ctx.completion.calls == []
        assert broadcaster.published == []

    def test_missing_decision_is_skipped(self, db_session, make_context):
        handle_draft_and_search(db_session, {"decision_id": str(uuid.uuid4())}, make_context())


class TestExtractAndEmbed:
    """Test insight extraction and indexing."""

    def _completed(self, make_decision, outcome):
        decision = make_decision(status=DecisionStatus.COMPLETED.value, outcome=outcome)
        return decision

    def test_failure_insights_and_embedding(self, db_session, make_decision, make_context, broadcaster):
        """A FAILURE outcome records its reason and indexes the decision."""
        decision = self._completed(make_decision, Outcome.FAILURE.value)
        ctx = make_context({"success_driver": "None", "failure_reason": "Ran out of budget"})

        handle_extract_and_embed(db_session, {"decision_id": str(decision.id)}, ctx)

        db_session.refresh(decision)
        assert decision.failure_reason == "Ran out of budget"
        assert decision.success_driver is None
        assert "Ran out of budget" in decision.search_text
        record = db_session.get(DecisionEmbedding, decision.id)
        assert record is not None
        assert record.owner_id == decision.owner_id
        assert len(record.content_hash) == 64
        assert broadcaster.published == [str(decision.id)]

    def test_rerun_overwrites_embedding(self, db_session, make_decision, make_context):
        """Re-running upserts instead of adding a second record."""
        decision = self._completed(make_decision, Outcome.SUCCESS.value)
        payload = {"decision_id": str(decision.id)}

        handle_extract_and_embed(db_session, payload, make_context({"success_driver": "Lean MVP approach"}))
        handle_extract_and_embed(db_session, payload, make_context({"success_driver": "Strong supplier relationships"}))

        db_session.refresh(decision)
        assert decision.success_driver == "Strong supplier relationships"
        assert db_session.query(DecisionEmbedding).count() == 1

    def test_placeholder_is_rejected(self, db_session, make_decision, make_context):
        """The generic placeholder never becomes a stored insight."""
        decision = self._completed(make_decision, Outcome.FAILURE.value)

        with pytest.raises(InsightContractError):
            handle_extract_and_embed(
                db_session,
                {"decision_id": str(decision.id)},
                make_context({"success_driver": "None", "failure_reason": "No clear pattern"}),
            )
        db_session.rollback()
        assert db_session.get(DecisionEmbedding, decision.id) is None

    def test_unfinished_decision_raises(self, db_session, make_decision, make_context):
        decision = make_decision(status=DecisionStatus.ACTIVE.value)

        with pytest.raises(ValueError):
            handle_extract_and_embed(db_session, {"decision_id": str(decision.id)}, make_context())


class TestValidation:
    """Test checks applied to provider output."""

    def test_plan_accepts_plain_strings(self):
        plan = validate_plan({"plan": ["a", "b", "c", "d", "e"]})
        assert [s["description"] for s in plan] == ["a", "b", "c", "d", "e"]
        assert len({s["step_id"] for s in plan}) == 5

    @pytest.mark.parametrize("parsed", [{}, {"plan": "steps"}, plan_response(16), {"plan": [{"status": "pending"}] * 5}])
    def test_plan_rejects_bad_shapes(self, parsed):
        with pytest.raises(PlanContractError):
            validate_plan(parsed)

    def test_partial_needs_both(self):
        with pytest.raises(InsightContractError):
            validate_insights(Outcome.PARTIAL.value, {"success_driver": "Good timing", "failure_reason": "None"})

    def test_word_limit(self):
        with pytest.raises(InsightContractError):
            validate_insights(
                Outcome.SUCCESS.value,
                {"success_driver": "one two three four five six seven eight nine"},
            )

    def test_secondary_placeholder_becomes_empty(self):
        assert validate_insights(
            Outcome.SUCCESS.value,
            {"success_driver": "Targeted niche college market", "failure_reason": "No clear pattern"},
        ) == ("Targeted niche college market", None)


class UserActionCompletion(FakeCompletion):
    """Completion that lets a user act on the decision while the call is in flight."""

    def __init__(self, action, *responses):
        super().__init__(*responses)
        self.action = action

    def complete(self, system_prompt: str, user_message: str) -> str:
        self.action()
        return super().complete(system_prompt, user_message)


class TestConcurrentUserChanges:
    """Test handler writes against changes committed while the provider call runs."""

    @pytest.fixture
    def sessions(self, tmp_path):
        file_engine = create_engine(
            f"sqlite:///{tmp_path / 'handlers.db'}",
            connect_args={"timeout": 30, "check_same_thread": False},
        )
        Base.metadata.create_all(bind=file_engine)
        yield sessionmaker(autocommit=False, autoflush=False, bind=file_engine)
        file_engine.dispose()

    def _insert(self, Session, **fields) -> uuid.UUID:
        db = Session()
        try:
            decision = Decision(
                owner_id="user-1",
                subject="Open a second location",
                context="First shop is at capacity",
                expected_outcome="Double weekend revenue",
                rationale="Lease offer expires soon",
                plan=[],
                draft_plan=[],
                similarity_references=[],
                **fields,
            )
            db.add(decision)
            db.commit()
            return decision.id
        finally:
            db.close()

    def _as_user(self, Session, operation, *args):
        def run():
            db = Session()
            try:
                operation(db, RecordingBroadcaster(), *args)
            finally:
                db.close()
        return run

    def test_plan_confirmed_during_drafting_is_kept(self, sessions, broadcaster, embedder):
        """A plan the user confirms mid-draft survives; only the draft snapshot is written."""
        decision_id = self._insert(sessions, status=DecisionStatus.DRAFTING.value)
        user_plan = [{"step_id": "mine", "description": "My own step", "status": "done"}]
        completion = UserActionCompletion(
            self._as_user(sessions, confirm_plan, decision_id, user_plan), plan_response(6)
        )
        ctx = HandlerContext(completion=completion, broadcaster=broadcaster, embedder=embedder)

        db = sessions()
        try:
            handle_draft_and_search(db, {"decision_id": str(decision_id)}, ctx)
        finally:
            db.close()

        check = sessions()
        try:
            decision = check.get(Decision, decision_id)
            assert decision.status == DecisionStatus.ACTIVE.value
            assert [step["description"] for step in decision.plan] == ["My own step"]
            assert decision.plan[0]["status"] == "done"
            assert len(decision.draft_plan) == 6
        finally:
            check.close()

    def test_deleted_during_extraction_gets_no_embedding(self, sessions, broadcaster, embedder):
        """A soft-delete committed mid-extraction leaves no embedding behind."""
        decision_id = self._insert(
            sessions,
            status=DecisionStatus.COMPLETED.value,
            outcome=Outcome.FAILURE.value,
            completed_at=utcnow(),
        )
        completion = UserActionCompletion(
            self._as_user(sessions, delete_decision, decision_id),
            {"success_driver": "None", "failure_reason": "Ran out of budget"},
        )
        ctx = HandlerContext(completion=completion, broadcaster=broadcaster, embedder=embedder)

        db = sessions()
        try:
            handle_extract_and_embed(db, {"decision_id": str(decision_id)}, ctx)
        finally:
            db.close()

        check = sessions()
        try:
            assert check.get(Decision, decision_id).is_deleted is True
            assert check.get(DecisionEmbedding, decision_id) is None
            assert check.query(DecisionEmbedding).count() == 0
        finally:
            check.close()
        assert broadcaster.published == []
