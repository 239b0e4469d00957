"""Best-effort web research for a decision (Tavily search API)."""
import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from decision_memory.db import utcnow
from decision_memory.models.decision import Decision
from decision_memory.services import prompts
from decision_memory.services.llm import CompletionError, CompletionProvider, complete_json
from decision_memory.settings import settings

logger = logging.getLogger(__name__)

UNAVAILABLE_ANSWER = "Web research unavailable at this time."
NO_ANSWER = "No synthesized answer available."
SNIPPET_LENGTH = 300
MAX_QUERIES = 3
MAX_SOURCES_IN_BRIEF = 8


def _result(query: str, answer: str, sources: List[Dict[str, Any]], available: bool) -> Dict[str, Any]:
    return {
        "query": query,
        "answer": answer,
        "sources": sources,
        "available": available,
        "searched_at": utcnow().isoformat(),
    }


async def search_web(
    query: str,
    max_results: Optional[int] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, Any]:
    """
    Run one web search.

    Never raises: a missing API key, transport error or bad response yields
    a result with ``available`` False and no sources.

    Args:
        query: Search query
        max_results: Number of sources to request
        client: Shared HTTP client (a short-lived one is created otherwise)
    """
    if not settings.TAVILY_API_KEY:
        logger.info("TAVILY_API_KEY not configured, skipping web research")
        return _result(query, UNAVAILABLE_ANSWER, [], available=False)

    body = {
        "api_key": settings.TAVILY_API_KEY,
        "query": query,
        "search_depth": "advanced",
        "max_results": max_results or settings.RESEARCH_MAX_RESULTS,
        "include_answer": True,
    }
    try:
        if client is None:
            async with httpx.AsyncClient(timeout=settings.RESEARCH_TIMEOUT) as own_client:
                response = await own_client.post(settings.TAVILY_API_URL, json=body)
        else:
            response = await client.post(settings.TAVILY_API_URL, json=body)
        response.raise_for_status()
        data = response.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.warning(f"Web search failed for {query!r}: {e}")
        return _result(query, UNAVAILABLE_ANSWER, [], available=False)

    sources = [
        {
            "title": r.get("title") or "Untitled",
            "url": r.get("url") or "",
            "snippet": (r.get("content") or "")[:SNIPPET_LENGTH],
            "score": r.get("score") or 0,
        }
        for r in data.get("results") or []
    ]
    return _result(query, data.get("answer") or NO_ANSWER, sources, available=True)


def research_queries(decision: Decision) -> List[str]:
    """Search angles for a decision: best practices, its context, its risks."""
    subject = decision.subject or (decision.raw_input or "")[:200]
    queries = [f"best practices for: {subject}"]
    if decision.context:
        queries.append(f"{subject} {decision.context} tips and strategies")
    queries.append(f"common mistakes and risks when {subject.lower()}")
    return queries[:MAX_QUERIES]


async def research_decision(
    decision: Decision,
    client: Optional[httpx.AsyncClient] = None,
) -> List[Dict[str, Any]]:
    """Run every research angle for a decision concurrently."""
    queries = research_queries(decision)
    if client is None:
        async with httpx.AsyncClient(timeout=settings.RESEARCH_TIMEOUT) as own_client:
            return list(await asyncio.gather(*(search_web(q, client=own_client) for q in queries)))
    return list(await asyncio.gather(*(search_web(q, client=client) for q in queries)))


def _fallback_brief(answers: List[str]) -> Dict[str, Any]:
    return {
        "brief": answers[0] if answers else "Research completed. Review sources below.",
        "key_insights": [],
        "risks_identified": [],
        "opportunities": [],
    }


def synthesize_brief(
    completion: Optional[CompletionProvider],
    decision: Decision,
    results: List[Dict[str, Any]],
) -> Dict[str, Any]:
    """
    Condense research results into a short intelligence brief.

    Falls back to the first search answer when no completion provider is
    available or the completion fails.
    """
    answers = [r["answer"] for r in results if r["answer"] not in (NO_ANSWER, UNAVAILABLE_ANSWER)]
    sources = [s for r in results for s in r["sources"]]
    if completion is None or not (answers or sources):
        return _fallback_brief(answers)

    lines = [f"DECISION: {decision.subject}"]
    if decision.context:
        lines.append(f"CONTEXT: {decision.context}")
    lines.append("WEB RESEARCH FINDINGS:")
    lines.extend(f"Finding {i}: {answer}" for i, answer in enumerate(answers, 1))
    lines.append("TOP SOURCES:")
    lines.extend(f"- {s['title']}: {s['snippet']}" for s in sources[:MAX_SOURCES_IN_BRIEF])

    try:
        parsed = complete_json(completion, prompts.RESEARCH_SYNTHESIS_PROMPT, "\n".join(lines))
    except CompletionError as e:
        logger.warning(f"Research synthesis failed for decision {decision.id}: {e}")
        return _fallback_brief(answers)

    brief = _fallback_brief(answers)
    if isinstance(parsed.get("brief"), str) and parsed["brief"].strip():
        brief["brief"] = parsed["brief"].strip()
    for key in ("key_insights", "risks_identified", "opportunities"):
        if isinstance(parsed.get(key), list):
            brief[key] = [str(item) for item in parsed[key] if item]
    return brief
