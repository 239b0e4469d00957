"""FastAPI dependencies for caller identity and shared collaborators."""
from typing import Optional

from fastapi import Header, HTTPException, Request, status

from decision_memory.services.embeddings import EmbeddingProvider, get_embedding_provider
from decision_memory.services.llm import CompletionProvider, get_completion_provider
from decision_memory.services.notifier import Broadcaster, ChangeNotifier


async def get_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    """
    Opaque id of the calling user.

    Raises:
        HTTPException 400 if the header is missing or blank
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-User-Id header is required"
        )
    return x_user_id.strip()


def get_notifier(request: Request) -> ChangeNotifier:
    """Change notifier created by the application lifespan."""
    return request.app.state.notifier


def get_broadcaster(request: Request) -> Broadcaster:
    """Broadcaster created by the application lifespan."""
    return request.app.state.broadcaster


def get_embedder(request: Request) -> Optional[EmbeddingProvider]:
    """
    Embedding provider, built on first use and cached on the app.

    None when misconfigured; embedding then uses the deterministic fallback.
    """
    embedder = getattr(request.app.state, "embedder", None)
    if embedder is None:
        try:
            embedder = get_embedding_provider()
        except ValueError:
            return None
        request.app.state.embedder = embedder
    return embedder


def get_completion(request: Request) -> Optional[CompletionProvider]:
    """
    Completion provider, or None when none is configured.

    Only research synthesis runs completions in the HTTP process, and it has
    a fallback without one.
    """
    completion = getattr(request.app.state, "completion", None)
    if completion is None:
        try:
            completion = get_completion_provider()
        except ValueError:
            return None
        request.app.state.completion = completion
    return completion
