"""Vector index interface and an in-memory cosine-similarity implementation."""

import math
import threading
from dataclasses import dataclass, replace
from typing import Any, Optional, Protocol

from replyguard.embeddings import check_dimension
from replyguard.models import AnswerPayload, CandidateMatch


@dataclass
class SearchFilter:
    """Restricts a similarity search to one owner's answers."""
    owner_id: str
    active_only: bool = True
    category: Optional[str] = None

    def accepts(self, payload: AnswerPayload) -> bool:
        if payload.owner_scope != self.owner_id:
            return False
        if self.active_only and not payload.is_active:
            return False
        if self.category is not None and payload.category != self.category:
            return False
        return True


class VectorIndex(Protocol):
    """Similarity search collaborator."""

    def similarity_search(
        self, vector: list[float], filter: SearchFilter, top_k: int
    ) -> list[CandidateMatch]:
        ...


def cosine_similarity(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if not norm_a or not norm_b:
        return 0.0
    return dot / (norm_a * norm_b)


class InMemoryVectorIndex:
    """Brute-force cosine index. Scores are clamped to 0-1."""

    def __init__(self, dimension: int):
        self.dimension = dimension
        self._lock = threading.Lock()
        self._vectors: dict[str, list[float]] = {}
        self._payloads: dict[str, AnswerPayload] = {}

    def upsert(self, id: str, vector: list[float], payload: AnswerPayload) -> None:
        check_dimension(vector, self.dimension)
        with self._lock:
            self._vectors[id] = list(vector)
            self._payloads[id] = replace(payload)

    def delete(self, id: str) -> bool:
        with self._lock:
            self._payloads.pop(id, None)
            return self._vectors.pop(id, None) is not None

    def update_metadata(self, id: str, **fields: Any) -> None:
        with self._lock:
            if id not in self._payloads:
                raise KeyError(f"Unknown vector id: {id}")
            self._payloads[id] = replace(self._payloads[id], **fields)

    def __len__(self) -> int:
        with self._lock:
            return len(self._vectors)

    def similarity_search(
        self, vector: list[float], filter: SearchFilter, top_k: int
    ) -> list[CandidateMatch]:
        check_dimension(vector, self.dimension)
        with self._lock:
            items = [
                (id, stored, self._payloads[id])
                for id, stored in self._vectors.items()
                if filter.accepts(self._payloads[id])
            ]
        matches = [
            CandidateMatch(
                id=id,
                score=min(1.0, max(0.0, cosine_similarity(vector, stored))),
                payload=replace(payload),
            )
            for id, stored, payload in items
        ]
        matches.sort(key=lambda m: m.score, reverse=True)
        return matches[:top_k]
