"""Memory API routes: what past decisions have taught."""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from decision_memory.db import get_db
from decision_memory.dependencies import get_embedder, get_user_id
from decision_memory.schemas.decision import MemorySearchRequest
from decision_memory.services.decisions import DecisionValidationError
from decision_memory.services.embeddings import EmbeddingProvider
from decision_memory.services.memory import get_dashboard, search_memory

router = APIRouter(prefix="/api/memory", tags=["memory"])


@router.get("")
def dashboard(
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
):
    """Top success and failure patterns, recent outcomes and counts."""
    return get_dashboard(db, user_id)


@router.post("/search")
def search(
    payload: MemorySearchRequest,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
    embedder: Optional[EmbeddingProvider] = Depends(get_embedder),
):
    """Find the caller's past decisions most similar to free text."""
    try:
        results = search_memory(db, user_id, payload.query, limit=payload.limit, embedder=embedder)
    except DecisionValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return {
        "query": payload.query,
        "results": [r.to_dict() for r in results],
    }
