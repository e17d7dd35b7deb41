"""Tests for embeddings, the vector index and the similarity matcher."""

import math
import time
from types import SimpleNamespace
from unittest.mock import Mock

import pytest

from replyguard.embeddings import (
    HashingEmbedder,
    InvalidEmbeddingDimension,
    OpenAIEmbedder,
    check_dimension,
)
from replyguard.matcher import MatchingUnavailable, SimilarityMatcher
from replyguard.models import AnswerPayload, CandidateMatch
from replyguard.validation import ValidationError
from replyguard.vector_index import InMemoryVectorIndex, SearchFilter


class StaticEmbedder:
    """Returns preset vectors by text."""

    def __init__(self, vectors, dimension=3):
        self.vectors = vectors
        self.dimension = dimension

    def embed(self, text):
        return self.vectors[text]


def payload(owner="owner_1", active=True, category="general", answer="answer"):
    return AnswerPayload(answer_text=answer, is_active=active, owner_scope=owner, category=category)


class TestEmbeddings:
    """Test embedding providers."""

    def test_check_dimension(self):
        """Vectors of the wrong size are rejected, never padded."""
        assert check_dimension([0.0, 1.0], 2) == [0.0, 1.0]
        with pytest.raises(InvalidEmbeddingDimension) as exc_info:
            check_dimension([0.0, 1.0], 3)
        assert exc_info.value.expected == 3
        assert exc_info.value.actual == 2

    def test_hashing_embedder_is_deterministic(self):
        """The same text always maps to the same unit vector."""
        embedder = HashingEmbedder(dimension=64)
        a = embedder.embed("What are your rates?")
        b = embedder.embed("what are your RATES")
        assert a == b
        assert len(a) == 64
        assert math.sqrt(sum(v * v for v in a)) == pytest.approx(1.0)

    def test_hashing_embedder_empty_text(self):
        """Text without tokens gives a zero vector."""
        assert HashingEmbedder(dimension=8).embed("?!") == [0.0] * 8

    def test_openai_embedder_uses_client(self):
        """The OpenAI embedder returns the API vector when its size matches."""
        client = Mock()
        client.embeddings.create.return_value = SimpleNamespace(
            data=[SimpleNamespace(embedding=[0.1, 0.2, 0.3])]
        )
        embedder = OpenAIEmbedder(dimension=3, client=client)

        assert embedder.embed("hello") == [0.1, 0.2, 0.3]
        client.embeddings.create.assert_called_once_with(model="text-embedding-3-small", input="hello")

    def test_openai_embedder_wrong_dimension(self):
        """A wrong-sized API vector raises."""
        client = Mock()
        client.embeddings.create.return_value = SimpleNamespace(data=[SimpleNamespace(embedding=[0.1])])
        with pytest.raises(InvalidEmbeddingDimension):
            OpenAIEmbedder(dimension=3, client=client).embed("hello")


class TestVectorIndex:
    """Test the in-memory cosine index."""

    def setup_method(self):
        self.index = InMemoryVectorIndex(dimension=2)

    def test_filter_scopes_to_owner_and_active(self):
        """Only the owner's active answers are searched."""
        self.index.upsert("a1", [1.0, 0.0], payload())
        self.index.upsert("a2", [1.0, 0.0], payload(active=False))
        self.index.upsert("a3", [1.0, 0.0], payload(owner="owner_2"))

        results = self.index.similarity_search([1.0, 0.0], SearchFilter("owner_1"), top_k=5)
        assert [m.id for m in results] == ["a1"]

    def test_scores_sorted_and_clamped(self):
        """Results are ordered by score, clamped to 0-1."""
        self.index.upsert("same", [1.0, 0.0], payload())
        self.index.upsert("close", [1.0, 1.0], payload())
        self.index.upsert("opposite", [-1.0, 0.0], payload())

        results = self.index.similarity_search([1.0, 0.0], SearchFilter("owner_1"), top_k=3)
        assert [m.id for m in results] == ["same", "close", "opposite"]
        assert results[0].score == pytest.approx(1.0)
        assert results[1].score == pytest.approx(1 / math.sqrt(2))
        assert results[2].score == 0.0

    def test_update_metadata(self):
        """Deactivating an answer hides it from active searches."""
        self.index.upsert("a1", [1.0, 0.0], payload())
        self.index.update_metadata("a1", is_active=False)
        assert self.index.similarity_search([1.0, 0.0], SearchFilter("owner_1"), top_k=1) == []
        with pytest.raises(KeyError):
            self.index.update_metadata("missing", is_active=False)

    def test_upsert_wrong_dimension(self):
        """Vectors of the wrong size cannot be stored."""
        with pytest.raises(InvalidEmbeddingDimension):
            self.index.upsert("a1", [1.0, 0.0, 0.0], payload())

    def test_delete(self):
        """Deleted vectors are gone."""
        self.index.upsert("a1", [1.0, 0.0], payload())
        assert self.index.delete("a1") is True
        assert self.index.delete("a1") is False
        assert len(self.index) == 0


class TestSimilarityMatcher:
    """Test owner-scoped matching with a timeout."""

    def setup_method(self):
        self.embedder = StaticEmbedder({
            "rates": [1.0, 0.0, 0.0],
            "hours": [0.0, 1.0, 0.0],
            "short": [1.0, 0.0],
        })
        self.index = InMemoryVectorIndex(dimension=3)
        self.index.upsert("rates", [1.0, 0.0, 0.0], payload(answer="From $50"))
        self.index.upsert("rates_close", [1.0, 0.5, 0.0], payload(answer="Rates vary"))
        self.index.upsert("rates_old", [1.0, 0.0, 0.0], payload(active=False))
        self.index.upsert("rates_other", [1.0, 0.0, 0.0], payload(owner="owner_2"))
        self.matcher = SimilarityMatcher(self.embedder, self.index, timeout_seconds=0.5)

    def teardown_method(self):
        self.matcher.close()

    def test_query_returns_owner_active_matches(self):
        """Matches are scoped to the owner, active and above the floor."""
        matches = self.matcher.query("rates", "owner_1")
        assert [m.id for m in matches] == ["rates", "rates_close"]
        assert matches[0].score == pytest.approx(1.0)
        assert matches[0].payload.answer_text == "From $50"

    def test_default_floor_is_suggest_threshold(self):
        """Nothing under 0.70 is returned by default."""
        assert self.matcher.query("hours", "owner_1") == []
        assert len(self.matcher.query("hours", "owner_1", min_score=0.0)) == 2

    def test_top_k(self):
        """top_k caps the number of candidates."""
        assert len(self.matcher.query("rates", "owner_1", top_k=1)) == 1

    def test_invalid_arguments(self):
        """Bad arguments raise ValidationError."""
        with pytest.raises(ValidationError):
            self.matcher.query("   ", "owner_1")
        with pytest.raises(ValidationError):
            self.matcher.query("rates", "owner_1", top_k=0)
        with pytest.raises(ValidationError):
            self.matcher.query("rates", "owner_1", min_score=1.5)

    def test_wrong_dimension_raises(self):
        """An embedding of the wrong size is a hard error, not 'unavailable'."""
        with pytest.raises(InvalidEmbeddingDimension):
            self.matcher.query("short", "owner_1")

    def test_slow_index_times_out(self):
        """A search slower than the timeout raises MatchingUnavailable."""
        slow_index = Mock()
        slow_index.similarity_search.side_effect = lambda *args: time.sleep(0.3) or []
        matcher = SimilarityMatcher(self.embedder, slow_index, timeout_seconds=0.05)
        try:
            with pytest.raises(MatchingUnavailable):
                matcher.query("rates", "owner_1")
        finally:
            matcher.close()

    def test_index_failure_is_unavailable(self):
        """A transport error is MatchingUnavailable, never an empty result."""
        broken = Mock()
        broken.similarity_search.side_effect = ConnectionError("refused")
        matcher = SimilarityMatcher(self.embedder, broken)
        try:
            with pytest.raises(MatchingUnavailable):
                matcher.query("rates", "owner_1")
        finally:
            matcher.close()

    def test_embedder_failure_is_unavailable(self):
        """A failing embedding call is MatchingUnavailable."""
        embedder = Mock()
        embedder.embed.side_effect = TimeoutError("slow")
        matcher = SimilarityMatcher(embedder, self.index)
        try:
            with pytest.raises(MatchingUnavailable):
                matcher.query("rates", "owner_1")
        finally:
            matcher.close()

    def test_results_refiltered(self):
        """Hits from an index that ignores the filter are dropped."""
        leaky = Mock()
        leaky.similarity_search.return_value = [
            CandidateMatch("foreign", 0.99, payload(owner="owner_2")),
            CandidateMatch("inactive", 0.95, payload(active=False)),
            CandidateMatch("ok", 0.90, payload()),
            CandidateMatch("weak", 0.50, payload()),
        ]
        matcher = SimilarityMatcher(self.embedder, leaky)
        try:
            assert [m.id for m in matcher.query("rates", "owner_1")] == ["ok"]
        finally:
            matcher.close()
