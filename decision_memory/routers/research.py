"""Web research API routes."""
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from decision_memory.db import get_db, utcnow
from decision_memory.dependencies import get_completion, get_user_id
from decision_memory.services.decisions import DecisionNotFoundError, fetch_decision
from decision_memory.services.llm import CompletionProvider
from decision_memory.services.research import research_decision, search_web, synthesize_brief

router = APIRouter(prefix="/api/research", tags=["research"])


class SearchRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=500)


@router.post("/search")
async def search(payload: SearchRequest, user_id: str = Depends(get_user_id)):
    """Direct web search."""
    query = payload.query.strip()
    if not query:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="query is required")
    return await search_web(query, max_results=5)


@router.post("/decisions/{decision_id}")
async def research(
    decision_id: UUID,
    user_id: str = Depends(get_user_id),
    db: Session = Depends(get_db),
    completion: Optional[CompletionProvider] = Depends(get_completion),
):
    """Research a decision from several angles and return a synthesized brief."""
    try:
        decision = await run_in_threadpool(fetch_decision, db, decision_id, user_id)
    except DecisionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    results = await research_decision(decision)
    brief = await run_in_threadpool(synthesize_brief, completion, decision, results)
    return {
        "synthesis": brief,
        "sources": [s for r in results for s in r["sources"]],
        "queries": [r["query"] for r in results],
        "searched_at": utcnow().isoformat(),
    }
