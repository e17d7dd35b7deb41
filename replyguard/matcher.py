"""
Similarity matching for replyguard.

Wraps the embedding and vector index collaborators behind a typed query.
A slow or failing index raises MatchingUnavailable; callers must treat that
as "no match", never as an empty answer library.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from typing import Optional

from replyguard import config
from replyguard.embeddings import Embedder, InvalidEmbeddingDimension, check_dimension
from replyguard.models import CandidateMatch
from replyguard.validation import validate_min_score, validate_text, validate_top_k
from replyguard.vector_index import SearchFilter, VectorIndex

logger = logging.getLogger(__name__)


class MatchingUnavailable(Exception):
    """Raised when the similarity search times out or its transport fails."""
    pass


class SimilarityMatcher:
    """
    Owner-scoped similarity search with a hard timeout.

    Example:
        ```python
        matcher = SimilarityMatcher(HashingEmbedder(), index)
        matches = matcher.query("What are your rates?", "owner_1")
        best = matches[0] if matches else None
        ```
    """

    def __init__(
        self,
        embedder: Embedder,
        index: VectorIndex,
        timeout_seconds: float = config.MATCHER_TIMEOUT_SECONDS,
        max_workers: int = 4,
    ):
        self.embedder = embedder
        self.index = index
        self.timeout_seconds = timeout_seconds
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="replyguard-match")

    def query(
        self,
        text: str,
        owner_scope: str,
        top_k: int = config.MATCHER_TOP_K,
        min_score: Optional[float] = None,
    ) -> list[CandidateMatch]:
        """
        Find the owner's active answers closest to `text`.

        Args:
            text: Message text (non-empty)
            owner_scope: Owner whose answers are searched
            top_k: Maximum candidates returned
            min_score: Score floor. Defaults to the suggest threshold.

        Returns:
            Candidates ordered by score, highest first

        Raises:
            ValidationError: If an argument is invalid
            InvalidEmbeddingDimension: If the embedder returns the wrong size
            MatchingUnavailable: On timeout or collaborator failure
        """
        if min_score is None:
            min_score = config.CONFIDENCE_THRESHOLDS["suggest"]
        validate_text(text)
        validate_top_k(top_k)
        validate_min_score(min_score)

        try:
            vector = self.embedder.embed(text)
        except InvalidEmbeddingDimension:
            raise
        except Exception as e:
            raise MatchingUnavailable(f"Embedding service unavailable: {e}") from e
        check_dimension(vector, self.embedder.dimension)

        search_filter = SearchFilter(owner_id=owner_scope, active_only=True)
        future = self._pool.submit(self.index.similarity_search, vector, search_filter, top_k)
        try:
            raw = future.result(timeout=self.timeout_seconds)
        except FuturesTimeout as e:
            future.cancel()
            logger.warning(
                "Similarity search timed out after %.2fs for owner=%s", self.timeout_seconds, owner_scope
            )
            raise MatchingUnavailable(f"Similarity search timed out after {self.timeout_seconds}s") from e
        except InvalidEmbeddingDimension:
            raise
        except Exception as e:
            raise MatchingUnavailable(f"Similarity search unavailable: {e}") from e

        # Owner scope and active flag hold even if the index ignores the filter
        matches = [
            m for m in raw
            if m.score >= min_score and search_filter.accepts(m.payload)
        ]
        matches.sort(key=lambda m: m.score, reverse=True)
        return matches[:top_k]

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)
