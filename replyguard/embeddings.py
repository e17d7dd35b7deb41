"""
Text embeddings for replyguard.

The matcher only needs `embed(text) -> vector` with a fixed dimension. A
vector of the wrong size is a hard error and is never truncated or padded.
"""

import hashlib
import math
import re
from typing import Optional, Protocol

from openai import OpenAI

from replyguard import config


class InvalidEmbeddingDimension(Exception):
    """Raised when an embedding does not have the expected dimension."""
    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Invalid embedding dimension: expected {expected}, got {actual}")


def check_dimension(vector: list[float], expected: int) -> list[float]:
    """Return the vector unchanged, or raise InvalidEmbeddingDimension."""
    actual = len(vector) if vector is not None else 0
    if actual != expected:
        raise InvalidEmbeddingDimension(expected, actual)
    return vector


class Embedder(Protocol):
    """Maps text to a vector of `dimension` floats."""
    dimension: int

    def embed(self, text: str) -> list[float]:
        ...


class OpenAIEmbedder:
    """
    OpenAI embeddings provider.

    Requires OPENAI_API_KEY environment variable unless an api_key or client
    is passed in.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = config.EMBEDDING_MODEL,
        dimension: int = config.EMBEDDING_DIMENSION,
        timeout_seconds: float = 10.0,
        client: Optional[OpenAI] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.dimension = dimension
        self.timeout_seconds = timeout_seconds
        self._client = client

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI(api_key=self.api_key, timeout=self.timeout_seconds, max_retries=1)
        return self._client

    def embed(self, text: str) -> list[float]:
        response = self.client.embeddings.create(model=self.model, input=text)
        return check_dimension(list(response.data[0].embedding), self.dimension)


_TOKEN = re.compile(r"[a-z0-9']+")


class HashingEmbedder:
    """
    Deterministic bag-of-words embedder.

    Hashes lowercase tokens into a fixed number of signed buckets and
    L2-normalizes the result. No network, so it suits local runs and tests.
    """

    def __init__(self, dimension: int = config.EMBEDDING_DIMENSION):
        if dimension < 1:
            raise ValueError(f"dimension must be >= 1, got {dimension}")
        self.dimension = dimension

    def embed(self, text: str) -> list[float]:
        vector = [0.0] * self.dimension
        for token in _TOKEN.findall(text.lower()):
            digest = hashlib.md5(token.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:4], "big") % self.dimension
            vector[bucket] += 1.0 if digest[4] & 1 else -1.0
        norm = math.sqrt(sum(v * v for v in vector))
        if norm:
            vector = [v / norm for v in vector]
        return vector
