"""Embeddings service with pluggable providers and a deterministic fallback."""
import hashlib
import logging
import math
from typing import List, Optional, Protocol, Sequence

from openai import OpenAI

from decision_memory.settings import settings

logger = logging.getLogger(__name__)

_HASH_MASK = 0x7FFFFFFF


class EmbeddingProvider(Protocol):
    """Protocol for embedding providers."""

    def create_embedding(self, text: str) -> List[float]:
        """Create embedding for text."""
        ...

    @property
    def dimensions(self) -> int:
        """Return embedding dimensions."""
        ...


class OpenAIEmbeddingProvider:
    """OpenAI (or OpenAI-compatible) embedding provider."""

    def __init__(self, api_key: str, model: str, dimensions: int, base_url: Optional[str] = None):
        """Initialize OpenAI client."""
        self.client = OpenAI(api_key=api_key, base_url=base_url, timeout=settings.OPENAI_TIMEOUT)
        self.model = model
        self._dimensions = dimensions

    def create_embedding(self, text: str) -> List[float]:
        """Create embedding using OpenAI API."""
        kwargs = {"model": self.model, "input": text}
        # Only text-embedding-3-* models support the dimensions parameter
        if self.model.startswith("text-embedding-3"):
            kwargs["dimensions"] = self._dimensions
        response = self.client.embeddings.create(**kwargs)
        return response.data[0].embedding

    @property
    def dimensions(self) -> int:
        """Return embedding dimensions."""
        return self._dimensions


def deterministic_embedding(text: str, dimensions: int = 1536) -> List[float]:
    """
    Reproducible pseudo-embedding for when no provider is reachable.

    A multiplicative hash of the text seeds a linear congruential
    recurrence that is expanded to ``dimensions`` values in [-1, 1] and
    L2-normalized. Same text always gives the bit-identical vector.
    """
    seed = 0
    for char in text:
        seed = (seed * 31 + ord(char)) & _HASH_MASK

    vector = []
    for _ in range(dimensions):
        seed = (seed * 1103515245 + 12345) & _HASH_MASK
        vector.append((seed / _HASH_MASK) * 2 - 1)

    return normalize(vector)


class DeterministicEmbeddingProvider:
    """
    Deterministic provider for development and tests.

    No external API calls; see ``deterministic_embedding``.
    """

    def __init__(self, dimensions: int = 1536):
        """Initialize with specified dimensions."""
        self._dimensions = dimensions

    def create_embedding(self, text: str) -> List[float]:
        return deterministic_embedding(text, self._dimensions)

    @property
    def dimensions(self) -> int:
        """Return embedding dimensions."""
        return self._dimensions


def normalize(vector: Sequence[float]) -> List[float]:
    """Scale a vector to unit length (a zero vector is returned unchanged)."""
    magnitude = math.sqrt(sum(x * x for x in vector))
    if magnitude == 0:
        return [float(x) for x in vector]
    return [float(x) / magnitude for x in vector]


def get_embedding_provider() -> EmbeddingProvider:
    """
    Get configured embedding provider.

    Returns:
        EmbeddingProvider instance

    Raises:
        ValueError: If provider is 'openai' but API key is invalid
    """
    provider_type = settings.EMBEDDING_PROVIDER

    if provider_type == "openai":
        if not settings.OPENAI_API_KEY or settings.OPENAI_API_KEY.startswith("sk-your"):
            raise ValueError(
                "OpenAI provider selected but OPENAI_API_KEY is not configured. "
                "Set OPENAI_API_KEY or change EMBEDDING_PROVIDER to 'deterministic'."
            )
        return OpenAIEmbeddingProvider(
            api_key=settings.OPENAI_API_KEY,
            model=settings.EMBEDDING_MODEL,
            dimensions=settings.EMBEDDING_DIMENSIONS,
            base_url=settings.OPENAI_BASE_URL,
        )

    return DeterministicEmbeddingProvider(dimensions=settings.EMBEDDING_DIMENSIONS)


def embed(text: str, provider: Optional[EmbeddingProvider] = None) -> List[float]:
    """
    Create a unit-length embedding, never failing the caller.

    Any provider error (unreachable endpoint, wrong dimensionality,
    misconfiguration) degrades to ``deterministic_embedding`` so retrieval
    stays reproducible instead of aborting the pipeline.

    Args:
        text: Text to embed
        provider: Optional provider instance (will get from settings if not provided)

    Returns:
        Embedding vector of ``settings.EMBEDDING_DIMENSIONS`` floats
    """
    dimensions = settings.EMBEDDING_DIMENSIONS
    try:
        if provider is None:
            provider = get_embedding_provider()
        vector = provider.create_embedding(text)
        if len(vector) != dimensions:
            raise ValueError(f"expected {dimensions} dimensions, got {len(vector)}")
        return normalize(vector)
    except Exception as e:
        logger.warning(f"Embedding provider unavailable, using deterministic fallback: {e}")
        return deterministic_embedding(text, dimensions)


def content_hash(text: str) -> str:
    """SHA-256 hex digest of the embedded text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()
