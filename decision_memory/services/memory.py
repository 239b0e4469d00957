"""Memory views over an owner's completed decisions."""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from decision_memory.models.decision import Decision, DecisionStatus, Outcome
from decision_memory.services.decisions import DecisionValidationError
from decision_memory.services.embeddings import EmbeddingProvider, embed
from decision_memory.services.prompts import NO_PATTERN_PLACEHOLDER
from decision_memory.services.similarity import QUERY_TEXT_MAX_LENGTH, SimilarDecision, rank
from decision_memory.settings import settings

logger = logging.getLogger(__name__)

TOP_PATTERNS = 3
RECENT_DECISIONS = 5


def _top_patterns(db: Session, owner_id: str, column) -> List[Dict[str, Any]]:
    rows = (
        db.query(column, func.count(Decision.id).label("count"))
        .filter(
            Decision.owner_id == owner_id,
            Decision.is_deleted.is_(False),
            Decision.status == DecisionStatus.COMPLETED.value,
            column.isnot(None),
            column != "",
            func.lower(column) != NO_PATTERN_PLACEHOLDER.lower(),
        )
        .group_by(column)
        .order_by(func.count(Decision.id).desc(), column.asc())
        .limit(TOP_PATTERNS)
        .all()
    )
    return [{"pattern": pattern, "count": count} for pattern, count in rows]


def get_dashboard(db: Session, owner_id: str) -> Dict[str, Any]:
    """
    Summary of what an owner's past decisions have taught.

    Returns:
        Dictionary with the most frequent failure and success patterns, the
        most recently completed decisions and counts per status and outcome
    """
    live = (Decision.owner_id == owner_id, Decision.is_deleted.is_(False))

    status_counts = {status.value: 0 for status in DecisionStatus}
    for status, count in (
        db.query(Decision.status, func.count(Decision.id)).filter(*live).group_by(Decision.status).all()
    ):
        status_counts[status] = count

    outcome_counts = {outcome.value: 0 for outcome in Outcome}
    for outcome, count in (
        db.query(Decision.outcome, func.count(Decision.id))
        .filter(*live, Decision.status == DecisionStatus.COMPLETED.value, Decision.outcome.isnot(None))
        .group_by(Decision.outcome)
        .all()
    ):
        outcome_counts[outcome] = count

    recent = (
        db.query(Decision)
        .filter(*live, Decision.status == DecisionStatus.COMPLETED.value)
        .order_by(Decision.completed_at.desc(), Decision.id.asc())
        .limit(RECENT_DECISIONS)
        .all()
    )

    return {
        "failure_patterns": _top_patterns(db, owner_id, Decision.failure_reason),
        "success_patterns": _top_patterns(db, owner_id, Decision.success_driver),
        "recent_completed": [
            {
                "id": str(d.id),
                "subject": d.subject,
                "outcome": d.outcome,
                "success_driver": d.success_driver,
                "failure_reason": d.failure_reason,
                "completed_at": d.completed_at.isoformat() if d.completed_at else None,
            }
            for d in recent
        ],
        "status_counts": status_counts,
        "outcome_counts": outcome_counts,
        "total": sum(status_counts.values()),
    }


def search_memory(
    db: Session,
    owner_id: str,
    query: str,
    limit: Optional[int] = None,
    embedder: Optional[EmbeddingProvider] = None,
) -> List[SimilarDecision]:
    """
    Free-text search over an owner's completed decisions.

    Raises:
        DecisionValidationError: If the query is blank
    """
    query = (query or "").strip()
    if not query:
        raise DecisionValidationError("query is required")
    query = query[:QUERY_TEXT_MAX_LENGTH]

    vector = embed(query, embedder)
    results = rank(db, vector, query, owner_id=owner_id, limit=limit or settings.MEMORY_SEARCH_LIMIT)
    logger.info(f"Memory search for owner {owner_id} returned {len(results)} decisions")
    return results
