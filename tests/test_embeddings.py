"""Tests for embeddings and the completion client."""
import math
from unittest.mock import MagicMock

import pytest

from decision_memory.services.embeddings import (
    DeterministicEmbeddingProvider,
    content_hash,
    deterministic_embedding,
    embed,
    normalize,
)
from decision_memory.services.llm import CompletionError, complete_json


class TestDeterministicEmbedding:
    """Test the reproducible fallback embedding."""

    def test_same_text_same_vector(self):
        """Identical text gives a bit-identical vector."""
        assert deterministic_embedding("open a second shop") == deterministic_embedding("open a second shop")

    def test_unit_length_and_dimensions(self):
        """Vectors are L2-normalized with the configured dimensionality."""
        vector = deterministic_embedding("hire a sales lead")
        assert len(vector) == 1536
        assert math.isclose(math.sqrt(sum(x * x for x in vector)), 1.0, rel_tol=1e-9)

    def test_different_text_different_vector(self):
        assert deterministic_embedding("a") != deterministic_embedding("b")

    def test_empty_text(self):
        """Empty text still yields a valid vector."""
        vector = deterministic_embedding("")
        assert len(vector) == 1536
        assert math.isclose(math.sqrt(sum(x * x for x in vector)), 1.0, rel_tol=1e-9)

    def test_provider_matches_function(self):
        provider = DeterministicEmbeddingProvider(dimensions=8)
        assert provider.create_embedding("x") == deterministic_embedding("x", 8)
        assert provider.dimensions == 8


class TestEmbedFallback:
    """Test that embedding never fails the caller."""

    def test_provider_error_falls_back(self):
        """A failing provider degrades to the deterministic vector."""
        provider = MagicMock()
        provider.create_embedding.side_effect = RuntimeError("connection refused")

        assert embed("pivot to B2B", provider) == deterministic_embedding("pivot to B2B")

    def test_wrong_dimensions_fall_back(self):
        """A vector of the wrong size is treated as a provider failure."""
        provider = MagicMock()
        provider.create_embedding.return_value = [1.0, 0.0]

        assert embed("pivot to B2B", provider) == deterministic_embedding("pivot to B2B")

    def test_provider_vector_is_normalized(self):
        provider = MagicMock()
        provider.create_embedding.return_value = [3.0, 4.0] + [0.0] * 1534

        vector = embed("anything", provider)

        assert vector[:2] == [0.6, 0.8]

    def test_normalize_zero_vector(self):
        assert normalize([0.0, 0.0]) == [0.0, 0.0]

    def test_content_hash_is_sha256(self):
        assert len(content_hash("text")) == 64
        assert content_hash("text") == content_hash("text")


class TestCompleteJson:
    """Test structured completion parsing."""

    def _provider(self, raw):
        provider = MagicMock()
        provider.complete.return_value = raw
        return provider

    def test_parses_object(self):
        assert complete_json(self._provider('{"plan": []}'), "s", "u") == {"plan": []}

    @pytest.mark.parametrize("raw", ["", "   ", "not json", "[1, 2]"])
    def test_unusable_output_raises(self, raw):
        """Empty, malformed or non-object output is a hard failure."""
        with pytest.raises(CompletionError):
            complete_json(self._provider(raw), "s", "u")
