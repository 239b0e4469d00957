"""Decision lifecycle operations exposed to the HTTP layer.

Every mutation locks the decision row, commits, and only then publishes a
change signal. Background work is enqueued in the same transaction as the
change that requires it.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional, Union
import uuid

from pydantic import ValidationError
from sqlalchemy.orm import Session

from decision_memory.db import utcnow
from decision_memory.models.decision import Decision, DecisionStatus, Outcome
from decision_memory.models.job import JobType
from decision_memory.schemas.decision import PlanStep
from decision_memory.services import store
from decision_memory.services.jobs import enqueue_job
from decision_memory.services.notifier import Broadcaster

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("subject", "context", "expected_outcome", "rationale")
CLOSED_STATUSES = (DecisionStatus.COMPLETED.value, DecisionStatus.ARCHIVED.value)


class DecisionValidationError(ValueError):
    """The request is malformed or not allowed in the decision's current state."""


class DecisionNotFoundError(LookupError):
    """No live decision with that id exists for the caller."""


def create_decision(db: Session, owner_id: str, fields: Dict[str, Any]) -> Decision:
    """
    Record a new decision and schedule plan drafting.

    Args:
        db: Database session
        owner_id: Opaque id of the owning user
        fields: subject, context, expected_outcome, rationale (all required)
            and optional raw_input

    Returns:
        The persisted decision, status DRAFTING

    Raises:
        DecisionValidationError: If the owner or a required field is missing
    """
    if not owner_id or not str(owner_id).strip():
        raise DecisionValidationError("owner_id is required")

    cleaned = {}
    missing = []
    for name in REQUIRED_FIELDS:
        value = fields.get(name)
        value = value.strip() if isinstance(value, str) else ""
        if not value:
            missing.append(name)
        cleaned[name] = value
    if missing:
        raise DecisionValidationError(f"Missing required fields: {', '.join(missing)}")

    raw_input = fields.get("raw_input")
    cleaned["raw_input"] = raw_input.strip() or None if isinstance(raw_input, str) else None

    try:
        decision = store.insert_decision(db, str(owner_id).strip(), cleaned)
        enqueue_job(db, JobType.DRAFT_AND_SEARCH, {"decision_id": str(decision.id)}, commit=False)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"Decision {decision.id} created for owner {decision.owner_id}")
    return decision


def fetch_decision(db: Session, decision_id: uuid.UUID, owner_id: Optional[str] = None) -> Decision:
    """
    Get a live decision.

    Raises:
        DecisionNotFoundError: If it does not exist, is deleted or belongs to
            another owner
    """
    decision = store.get_decision(db, decision_id)
    if decision is None or (owner_id is not None and decision.owner_id != owner_id):
        raise DecisionNotFoundError(f"Decision {decision_id} not found")
    return decision


def list_decisions(db: Session, owner_id: str) -> List[Decision]:
    """An owner's live decisions, most recent first."""
    return store.list_decisions(db, owner_id)


def normalize_plan(steps: Iterable[Union[PlanStep, Dict[str, Any]]]) -> List[Dict[str, Any]]:
    """
    Validate user-supplied plan steps and convert them to stored form.

    Missing step ids are generated; given ones are kept.

    Raises:
        DecisionValidationError: If the plan is empty, a step is malformed or
            step ids repeat
    """
    plan = []
    for step in steps or []:
        try:
            model = step if isinstance(step, PlanStep) else PlanStep.model_validate(step)
        except ValidationError as e:
            raise DecisionValidationError(f"Invalid plan step: {e.errors()[0]['msg']}") from e
        plan.append({
            "step_id": model.step_id or str(uuid.uuid4()),
            "description": model.description,
            "status": model.status.value,
            "note": model.note,
        })

    if not plan:
        raise DecisionValidationError("Plan must contain at least one step")
    step_ids = [s["step_id"] for s in plan]
    if len(set(step_ids)) != len(step_ids):
        raise DecisionValidationError("Plan step ids must be unique")
    return plan


def _lock_open_decision(db: Session, decision_id: uuid.UUID, owner_id: Optional[str]) -> Decision:
    decision = store.get_decision(db, decision_id, for_update=True)
    if decision is None or (owner_id is not None and decision.owner_id != owner_id):
        db.rollback()
        raise DecisionNotFoundError(f"Decision {decision_id} not found")
    if decision.status in CLOSED_STATUSES:
        db.rollback()
        raise DecisionValidationError(f"Decision {decision_id} is {decision.status} and can no longer change")
    return decision


def confirm_plan(
    db: Session,
    broadcaster: Broadcaster,
    decision_id: uuid.UUID,
    plan: Iterable[Union[PlanStep, Dict[str, Any]]],
    owner_id: Optional[str] = None,
) -> Decision:
    """Accept a (possibly edited) plan and make the decision ACTIVE."""
    steps = normalize_plan(plan)
    decision = _lock_open_decision(db, decision_id, owner_id)
    decision.plan = steps
    decision.status = DecisionStatus.ACTIVE.value
    db.commit()

    broadcaster.publish(db, decision_id)
    logger.info(f"Decision {decision_id} plan confirmed with {len(steps)} steps")
    return decision


def update_plan(
    db: Session,
    broadcaster: Broadcaster,
    decision_id: uuid.UUID,
    plan: Iterable[Union[PlanStep, Dict[str, Any]]],
    owner_id: Optional[str] = None,
) -> Decision:
    """Replace the working plan (step edits, progress). Status is unchanged."""
    steps = normalize_plan(plan)
    decision = _lock_open_decision(db, decision_id, owner_id)
    decision.plan = steps
    db.commit()

    broadcaster.publish(db, decision_id)
    return decision


def complete_decision(
    db: Session,
    broadcaster: Broadcaster,
    decision_id: uuid.UUID,
    outcome: Union[Outcome, str],
    reflection: Optional[str] = None,
    owner_id: Optional[str] = None,
) -> Decision:
    """
    Close a decision with its outcome and schedule insight extraction.

    Raises:
        DecisionValidationError: On an unknown outcome, pending plan steps or
            a decision that is already completed or archived
        DecisionNotFoundError: If the decision does not exist
    """
    try:
        outcome = Outcome(outcome.value if isinstance(outcome, Outcome) else str(outcome).upper())
    except ValueError as e:
        raise DecisionValidationError(
            f"Outcome must be one of {', '.join(o.value for o in Outcome)}"
        ) from e

    decision = _lock_open_decision(db, decision_id, owner_id)
    pending = decision.pending_steps()
    if pending:
        db.rollback()
        raise DecisionValidationError(
            f"{len(pending)} plan steps are still pending; mark them done or skipped first"
        )

    decision.status = DecisionStatus.COMPLETED.value
    decision.outcome = outcome.value
    decision.reflection = reflection.strip() or None if reflection else None
    decision.completed_at = utcnow()
    try:
        enqueue_job(db, JobType.EXTRACT_AND_EMBED, {"decision_id": str(decision_id)}, commit=False)
        db.commit()
    except Exception:
        db.rollback()
        raise

    broadcaster.publish(db, decision_id)
    logger.info(f"Decision {decision_id} completed with outcome {outcome.value}")
    return decision


def archive_decision(
    db: Session,
    broadcaster: Broadcaster,
    decision_id: uuid.UUID,
    owner_id: Optional[str] = None,
) -> Decision:
    """Abandon a decision that will never be completed."""
    decision = _lock_open_decision(db, decision_id, owner_id)
    decision.status = DecisionStatus.ARCHIVED.value
    db.commit()

    broadcaster.publish(db, decision_id)
    logger.info(f"Decision {decision_id} archived")
    return decision


def delete_decision(
    db: Session,
    broadcaster: Broadcaster,
    decision_id: uuid.UUID,
    owner_id: Optional[str] = None,
) -> None:
    """Soft-delete a decision and drop it from the similarity index."""
    decision = store.get_decision(db, decision_id, for_update=True)
    if decision is None or (owner_id is not None and decision.owner_id != owner_id):
        db.rollback()
        raise DecisionNotFoundError(f"Decision {decision_id} not found")

    decision.is_deleted = True
    removed = store.delete_embedding(db, decision_id)
    db.commit()

    broadcaster.publish(db, decision_id)
    logger.info(f"Decision {decision_id} deleted ({removed} embedding removed)")
