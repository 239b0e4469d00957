"""Hybrid retrieval over past decisions (vector + lexical similarity)."""
from typing import Any, Dict, List, Optional, Sequence
import uuid

from sqlalchemy.orm import Session

from decision_memory.models.decision import Decision
from decision_memory.services.store import lexical_similarities, nearest_decisions
from decision_memory.settings import settings

SEARCH_TEXT_MAX_LENGTH = 2000
QUERY_TEXT_MAX_LENGTH = 800
_SEPARATOR = " . "  # sentence boundaries help sentence-embedding models segment


class SimilarDecision:
    """A ranked past decision with its score breakdown and snapshot."""

    def __init__(
        self,
        decision_id: uuid.UUID,
        score: float,
        cosine_similarity: float,
        lexical_similarity: float,
        snapshot: Dict[str, Any],
    ):
        self.decision_id = decision_id
        self.score = score
        self.cosine_similarity = cosine_similarity
        self.lexical_similarity = lexical_similarity
        self.snapshot = snapshot

    def to_reference(self) -> Dict[str, Any]:
        """Point-in-time similarity reference stored on the drafting decision."""
        return {
            "referenced_decision_id": str(self.decision_id),
            "score": round(self.score, 6),
            "subject": self.snapshot.get("subject"),
            "outcome": self.snapshot.get("outcome"),
            "success_driver": self.snapshot.get("success_driver"),
            "failure_reason": self.snapshot.get("failure_reason"),
        }

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON response."""
        return {
            "decision_id": str(self.decision_id),
            "score": self.score,
            "cosine_similarity": self.cosine_similarity,
            "lexical_similarity": self.lexical_similarity,
            **self.snapshot,
        }


def _snapshot(decision: Decision) -> Dict[str, Any]:
    return {
        "subject": decision.subject,
        "context": decision.context,
        "outcome": decision.outcome,
        "success_driver": decision.success_driver,
        "failure_reason": decision.failure_reason,
        "completed_at": decision.completed_at.isoformat() if decision.completed_at else None,
    }


def rank(
    db: Session,
    query_vector: Sequence[float],
    query_text: str,
    owner_id: str,
    exclude_id: Optional[uuid.UUID] = None,
    limit: int = 3,
    vector_weight: Optional[float] = None,
    keyword_weight: Optional[float] = None,
    min_cosine: Optional[float] = None,
) -> List[SimilarDecision]:
    """
    Rank an owner's completed decisions against a query.

    Over-fetches nearest neighbours by vector distance, re-scores each
    candidate with ``vector_weight * cosine + keyword_weight * lexical``,
    drops candidates under the cosine floor and returns the best ``limit``.
    Ties are broken by decision id so results are reproducible.

    Args:
        db: Database session
        query_vector: Unit-length query embedding
        query_text: Raw query text for lexical matching
        owner_id: Only this owner's decisions are considered
        exclude_id: Decision to leave out (usually the one being drafted)
        limit: Number of results to return
        vector_weight: Weight of cosine similarity (default from settings)
        keyword_weight: Weight of lexical similarity (default from settings)
        min_cosine: Minimum cosine similarity (default from settings)

    Returns:
        List of SimilarDecision objects ordered by hybrid score
    """
    if limit <= 0:
        return []
    vector_weight = settings.SIMILARITY_VECTOR_WEIGHT if vector_weight is None else vector_weight
    keyword_weight = settings.SIMILARITY_KEYWORD_WEIGHT if keyword_weight is None else keyword_weight
    min_cosine = settings.SIMILARITY_MIN_COSINE if min_cosine is None else min_cosine

    candidates = nearest_decisions(
        db,
        query_vector,
        owner_id,
        limit=limit * settings.SIMILARITY_OVERFETCH,
        exclude_id=exclude_id,
    )
    candidates = [(d, cosine) for d, cosine in candidates if cosine >= min_cosine]
    if not candidates:
        return []

    lexical = lexical_similarities(db, [d for d, _ in candidates], query_text)

    results = []
    for decision, cosine in candidates:
        keyword = lexical.get(decision.id, 0.0)
        results.append(SimilarDecision(
            decision_id=decision.id,
            score=vector_weight * cosine + keyword_weight * keyword,
            cosine_similarity=cosine,
            lexical_similarity=keyword,
            snapshot=_snapshot(decision),
        ))

    results.sort(key=lambda r: (-r.score, str(r.decision_id)))
    return results[:limit]


def build_search_text(
    decision: Decision,
    success_driver: Optional[str] = None,
    failure_reason: Optional[str] = None,
) -> str:
    """
    Text stored as a completed decision's embedding.

    The subject is repeated so the vector stays anchored to the core
    decision rather than drowned out by a verbose reflection.
    """
    primary = decision.subject or decision.raw_input or ""
    parts = [
        primary,
        primary,
        decision.context,
        decision.rationale,
        decision.expected_outcome,
        decision.outcome,
        decision.reflection,
        success_driver,
        failure_reason,
    ]
    return _SEPARATOR.join(p for p in parts if p)[:SEARCH_TEXT_MAX_LENGTH]


def build_query_text(decision: Decision) -> str:
    """Tighter query-side text: subject, context and rationale only."""
    parts = [decision.subject or decision.raw_input, decision.context, decision.rationale]
    return _SEPARATOR.join(p for p in parts if p)[:QUERY_TEXT_MAX_LENGTH]
