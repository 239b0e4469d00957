"""Background job handlers.

Both handlers are safe to re-run after a crash: every store mutation is
issued once, after all upstream work (embedding, retrieval, completion)
has succeeded, and overwrites rather than appends. Any exception is left
to propagate so the worker can schedule a retry.
"""
from dataclasses import dataclass
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple
import uuid

from sqlalchemy.orm import Session

from decision_memory.models.decision import Decision, DecisionStatus, Outcome, StepStatus
from decision_memory.models.job import JobType
from decision_memory.services import prompts
from decision_memory.services.embeddings import EmbeddingProvider, content_hash, embed
from decision_memory.services.llm import CompletionError, CompletionProvider, complete_json
from decision_memory.services.notifier import Broadcaster
from decision_memory.services.similarity import build_query_text, build_search_text, rank
from decision_memory.services.store import (
    get_decision,
    write_draft_results,
    write_insights_and_embedding,
)
from decision_memory.settings import settings

logger = logging.getLogger(__name__)


class PlanContractError(CompletionError):
    """The drafted plan does not have the required shape or step count."""


class InsightContractError(CompletionError):
    """The extracted insights are missing, too long or a generic placeholder."""


@dataclass
class HandlerContext:
    """Collaborators shared by all handlers of a worker."""
    completion: CompletionProvider
    broadcaster: Broadcaster
    embedder: Optional[EmbeddingProvider] = None


Handler = Callable[[Session, Dict[str, Any], HandlerContext], None]


def _load_decision(db: Session, payload: Dict[str, Any], job_type: str) -> Optional[Decision]:
    decision_id = uuid.UUID(str(payload["decision_id"]))
    decision = get_decision(db, decision_id, include_deleted=True)
    if decision is None or decision.is_deleted:
        logger.warning(f"{job_type}: decision {decision_id} missing or deleted, nothing to do")
        return None
    return decision


def validate_plan(parsed: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Turn the provider's plan into fresh pending plan steps.

    Raises:
        PlanContractError: If the plan is missing, malformed or has the wrong
            number of steps
    """
    steps = parsed.get("plan")
    if not isinstance(steps, list):
        raise PlanContractError("Completion did not contain a 'plan' list")
    if not prompts.MIN_PLAN_STEPS <= len(steps) <= prompts.MAX_PLAN_STEPS:
        raise PlanContractError(
            f"Plan has {len(steps)} steps, expected "
            f"{prompts.MIN_PLAN_STEPS}-{prompts.MAX_PLAN_STEPS}"
        )

    plan = []
    for step in steps:
        if isinstance(step, dict):
            description = step.get("description") or step.get("desc")
        else:
            description = step
        if not isinstance(description, str) or not description.strip():
            raise PlanContractError("Plan step without a description")
        plan.append({
            "step_id": str(uuid.uuid4()),
            "description": description.strip(),
            "status": StepStatus.PENDING.value,
            "note": None,
        })
    return plan


def _clean_phrase(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip().strip('"').strip()
    if not text or text.rstrip(".").lower() in ("none", "n/a", "null"):
        return None
    return text


def _is_placeholder(text: str) -> bool:
    return prompts.NO_PATTERN_PLACEHOLDER.lower() in text.lower()


PRIMARY_INSIGHTS = {
    Outcome.SUCCESS.value: ("success_driver",),
    Outcome.FAILURE.value: ("failure_reason",),
    Outcome.PARTIAL.value: ("success_driver", "failure_reason"),
}


def validate_insights(outcome: str, parsed: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    """
    Check extracted insights against the outcome's rules.

    The primary field(s) for the outcome must be a specific phrase of at
    most MAX_INSIGHT_WORDS words. A secondary field may be empty ("None").

    Returns:
        (success_driver, failure_reason)

    Raises:
        InsightContractError: On a missing, generic or over-long phrase
    """
    primary = PRIMARY_INSIGHTS[outcome]
    values = {}
    for field in ("success_driver", "failure_reason"):
        phrase = _clean_phrase(parsed.get(field))
        if phrase is not None and _is_placeholder(phrase):
            if field in primary:
                raise InsightContractError(f"{field} is the generic placeholder")
            phrase = None
        if phrase is None:
            if field in primary:
                raise InsightContractError(f"{field} is required for outcome {outcome}")
        elif len(phrase.split()) > prompts.MAX_INSIGHT_WORDS:
            raise InsightContractError(
                f"{field} has {len(phrase.split())} words, limit is {prompts.MAX_INSIGHT_WORDS}"
            )
        values[field] = phrase
    return values["success_driver"], values["failure_reason"]


def handle_draft_and_search(db: Session, payload: Dict[str, Any], ctx: HandlerContext) -> None:
    """Draft an execution plan and attach the most similar past decisions."""
    decision = _load_decision(db, payload, JobType.DRAFT_AND_SEARCH.value)
    if decision is None:
        return

    query_text = build_query_text(decision)
    query_vector = embed(query_text, ctx.embedder)
    matches = rank(
        db,
        query_vector,
        query_text,
        owner_id=decision.owner_id,
        exclude_id=decision.id,
        limit=settings.DRAFT_SIMILAR_LIMIT,
    )
    references = [match.to_reference() for match in matches]

    parsed = complete_json(
        ctx.completion,
        prompts.PLAN_SYSTEM_PROMPT,
        prompts.plan_user_message(
            decision.subject, decision.context, decision.expected_outcome, decision.rationale
        ),
    )
    plan = validate_plan(parsed)

    if not write_draft_results(db, decision.id, plan, references):
        logger.warning(f"Decision {decision.id} was deleted while drafting, results dropped")
        return
    ctx.broadcaster.publish(db, decision.id)
    logger.info(
        f"DRAFT_AND_SEARCH completed for decision {decision.id}: "
        f"{len(plan)} steps, {len(references)} similar decisions"
    )


def handle_extract_and_embed(db: Session, payload: Dict[str, Any], ctx: HandlerContext) -> None:
    """Extract success/failure patterns from a completed decision and index it."""
    decision = _load_decision(db, payload, JobType.EXTRACT_AND_EMBED.value)
    if decision is None:
        return
    if decision.status != DecisionStatus.COMPLETED.value or decision.outcome not in PRIMARY_INSIGHTS:
        raise ValueError(
            f"Decision {decision.id} is {decision.status} with outcome {decision.outcome!r}; "
            "insights need a completed decision"
        )

    parsed = complete_json(
        ctx.completion,
        prompts.INSIGHT_PROMPTS[decision.outcome],
        prompts.insight_user_message(decision.subject, decision.outcome, decision.reflection or ""),
    )
    success_driver, failure_reason = validate_insights(decision.outcome, parsed)

    search_text = build_search_text(decision, success_driver, failure_reason)
    vector = embed(search_text, ctx.embedder)

    if not write_insights_and_embedding(
        db,
        decision.id,
        success_driver,
        failure_reason,
        search_text,
        vector,
        content_hash(search_text),
    ):
        logger.warning(f"Decision {decision.id} was deleted before indexing, embedding skipped")
        return
    ctx.broadcaster.publish(db, decision.id)
    logger.info(f"EXTRACT_AND_EMBED completed for decision {decision.id}")


HANDLERS: Dict[str, Handler] = {
    JobType.DRAFT_AND_SEARCH.value: handle_draft_and_search,
    JobType.EXTRACT_AND_EMBED.value: handle_extract_and_embed,
}
