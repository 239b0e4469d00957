"""Store adapter: decision CRUD, row locking and vector/lexical query primitives.

On PostgreSQL the similarity primitives run in the database (pgvector's
``<=>`` cosine distance and pg_trgm's ``similarity()``). Other dialects,
used for local runs and tests, compute the same quantities in Python.
"""
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
import uuid

import numpy as np
from sqlalchemy import func
from sqlalchemy.orm import Session

from decision_memory.models.decision import Decision, DecisionEmbedding, DecisionStatus

logger = logging.getLogger(__name__)

_WORD_RE = re.compile(r"[^\W_]+", re.UNICODE)


def _is_postgres(db: Session) -> bool:
    return db.get_bind().dialect.name == "postgresql"


def get_decision(
    db: Session,
    decision_id: uuid.UUID,
    include_deleted: bool = False,
    for_update: bool = False,
) -> Optional[Decision]:
    """
    Fetch a decision by id.

    Args:
        db: Database session
        decision_id: Decision ID
        include_deleted: Return soft-deleted rows too
        for_update: Lock the row until the surrounding transaction ends and
            overwrite any copy already loaded into the session
    """
    query = db.query(Decision).filter(Decision.id == decision_id)
    if not include_deleted:
        query = query.filter(Decision.is_deleted.is_(False))
    if for_update:
        # Guards run against the locked row, not the session's cached copy
        query = query.with_for_update().populate_existing()
    return query.one_or_none()


def list_decisions(db: Session, owner_id: str) -> List[Decision]:
    """All non-deleted decisions of an owner, most recent first."""
    return (
        db.query(Decision)
        .filter(Decision.owner_id == owner_id, Decision.is_deleted.is_(False))
        .order_by(Decision.created_at.desc())
        .all()
    )


def insert_decision(db: Session, owner_id: str, fields: Dict[str, Any]) -> Decision:
    """Add a new DRAFTING decision to the session (caller commits)."""
    decision = Decision(
        owner_id=owner_id,
        status=DecisionStatus.DRAFTING.value,
        subject=fields["subject"],
        context=fields["context"],
        expected_outcome=fields["expected_outcome"],
        rationale=fields["rationale"],
        raw_input=fields.get("raw_input"),
        plan=[],
        draft_plan=[],
        similarity_references=[],
    )
    db.add(decision)
    db.flush()
    return decision


def write_draft_results(
    db: Session,
    decision_id: uuid.UUID,
    plan: List[Dict[str, Any]],
    references: List[Dict[str, Any]],
) -> bool:
    """
    Persist a drafted plan and similarity references.

    Only worker-owned fields are overwritten. The working plan is seeded
    from the draft only while the decision is still DRAFTING and the user
    has not supplied a plan of their own.

    Returns:
        False if the decision vanished or was soft-deleted meanwhile
    """
    decision = get_decision(db, decision_id, include_deleted=True, for_update=True)
    if decision is None or decision.is_deleted:
        db.rollback()
        return False

    decision.draft_plan = [dict(step) for step in plan]
    decision.similarity_references = list(references)
    if decision.status == DecisionStatus.DRAFTING.value and not decision.plan:
        decision.plan = [dict(step) for step in plan]

    db.commit()
    return True


def write_insights_and_embedding(
    db: Session,
    decision_id: uuid.UUID,
    success_driver: Optional[str],
    failure_reason: Optional[str],
    search_text: str,
    vector: Sequence[float],
    text_hash: str,
) -> bool:
    """
    Write extracted insights and upsert the embedding record in one transaction.

    The decision row is locked first so a concurrent soft-delete cannot
    leave an embedding pointing at a deleted decision.

    Returns:
        False if the decision vanished or was soft-deleted meanwhile
    """
    decision = get_decision(db, decision_id, include_deleted=True, for_update=True)
    if decision is None or decision.is_deleted:
        db.rollback()
        return False

    decision.success_driver = success_driver
    decision.failure_reason = failure_reason
    decision.search_text = search_text

    record = db.get(DecisionEmbedding, decision.id)
    if record is None:
        db.add(DecisionEmbedding(
            decision_id=decision.id,
            owner_id=decision.owner_id,
            vector=list(vector),
            content_hash=text_hash,
        ))
    else:
        record.owner_id = decision.owner_id
        record.vector = list(vector)
        record.content_hash = text_hash

    db.commit()
    return True


def delete_embedding(db: Session, decision_id: uuid.UUID) -> int:
    """Remove a decision's embedding record (caller commits). Returns rows removed."""
    return (
        db.query(DecisionEmbedding)
        .filter(DecisionEmbedding.decision_id == decision_id)
        .delete(synchronize_session=False)
    )


def nearest_decisions(
    db: Session,
    query_vector: Sequence[float],
    owner_id: str,
    limit: int,
    exclude_id: Optional[uuid.UUID] = None,
) -> List[Tuple[Decision, float]]:
    """
    Nearest completed decisions of an owner by cosine similarity.

    Returns:
        (decision, cosine_similarity) pairs, most similar first
    """
    if limit <= 0:
        return []

    if _is_postgres(db):
        distance = DecisionEmbedding.vector.cosine_distance(list(query_vector))
        query = _embedded_candidates(db, owner_id, exclude_id, (1 - distance).label("cosine_similarity"))
        rows = query.order_by(distance.asc(), Decision.id.asc()).limit(limit).all()
        return [(decision, float(similarity)) for decision, similarity in rows]

    query_array = np.asarray(query_vector, dtype=float)
    query_norm = np.linalg.norm(query_array)
    scored = []
    for decision, vector in _embedded_candidates(db, owner_id, exclude_id, DecisionEmbedding.vector).all():
        candidate = np.asarray(vector, dtype=float)
        denominator = query_norm * np.linalg.norm(candidate)
        similarity = float(query_array @ candidate / denominator) if denominator else 0.0
        scored.append((decision, similarity))

    scored.sort(key=lambda pair: (-pair[1], str(pair[0].id)))
    return scored[:limit]


def _embedded_candidates(db: Session, owner_id: str, exclude_id: Optional[uuid.UUID], column):
    query = (
        db.query(Decision, column)
        .join(DecisionEmbedding, DecisionEmbedding.decision_id == Decision.id)
        .filter(
            DecisionEmbedding.owner_id == owner_id,
            Decision.owner_id == owner_id,
            Decision.status == DecisionStatus.COMPLETED.value,
            Decision.is_deleted.is_(False),
        )
    )
    if exclude_id is not None:
        query = query.filter(Decision.id != exclude_id)
    return query


def _trigrams(text: str) -> set:
    grams = set()
    for word in _WORD_RE.findall(text.lower()):
        padded = f"  {word} "
        for i in range(len(padded) - 2):
            grams.add(padded[i:i + 3])
    return grams


def trigram_similarity(left: Optional[str], right: Optional[str]) -> float:
    """
    pg_trgm-compatible similarity: shared trigrams over the union of trigrams.

    Words are lower-cased, split on non-alphanumerics and padded with two
    leading and one trailing blank before trigrams are taken.
    """
    left_grams = _trigrams(left or "")
    right_grams = _trigrams(right or "")
    if not left_grams or not right_grams:
        return 0.0
    shared = len(left_grams & right_grams)
    return shared / (len(left_grams) + len(right_grams) - shared)


def lexical_similarities(
    db: Session,
    decisions: Iterable[Decision],
    query_text: str,
) -> Dict[uuid.UUID, float]:
    """Trigram similarity between each decision's stored search text and the query."""
    decisions = list(decisions)
    if not decisions:
        return {}

    if _is_postgres(db):
        rows = (
            db.query(Decision.id, func.similarity(func.coalesce(Decision.search_text, ""), query_text))
            .filter(Decision.id.in_([d.id for d in decisions]))
            .all()
        )
        return {decision_id: float(score or 0.0) for decision_id, score in rows}

    return {d.id: trigram_similarity(d.search_text, query_text) for d in decisions}
