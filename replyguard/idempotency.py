"""
Idempotency cache for replyguard.

Collapses duplicate deliveries of the same logical operation into one
execution. Entries are keyed by a deterministic hash of a normalized
descriptor, expire after a TTL and are evicted least-recently-accessed
first once the cache is full.
"""

import functools
import hashlib
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Optional

from replyguard import config

logger = logging.getLogger(__name__)


def normalize(value: Any) -> Any:
    """
    Normalize a descriptor so logically equal values serialize identically.

    Dict keys are sorted recursively and list elements are sorted by their
    canonical serialization, so {"ids": ["b", "a"]} == {"ids": ["a", "b"]}.
    """
    if isinstance(value, dict):
        return {str(k): normalize(v) for k, v in sorted(value.items(), key=lambda kv: str(kv[0]))}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [normalize(v) for v in value]
        return sorted(items, key=_canonical)
    return value


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def operation_id(descriptor: Any) -> str:
    """Deterministic sha256 hex digest of a normalized descriptor."""
    return hashlib.sha256(_canonical(normalize(descriptor)).encode("utf-8")).hexdigest()


@dataclass
class IdempotencyEntry:
    """One processed operation."""
    operation_id: str
    created_at: float
    attempt_count: int = 1
    result: Any = None

    def is_expired(self, now: float, ttl_seconds: float) -> bool:
        return now - self.created_at >= ttl_seconds


class IdempotencyCache:
    """
    Bounded, time-expiring LRU deduplication table.

    Expired entries are logically absent: lookups evict them lazily and
    `sweep()` removes them in bulk. All methods are thread-safe.
    """

    def __init__(
        self,
        max_size: int = config.IDEMPOTENCY_MAX_SIZE,
        ttl_seconds: float = config.IDEMPOTENCY_TTL_SECONDS,
        store_results: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size < 1:
            raise ValueError(f"max_size must be >= 1, got {max_size}")
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be > 0, got {ttl_seconds}")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self.store_results = store_results
        self._clock = clock
        self._entries: OrderedDict[str, IdempotencyEntry] = OrderedDict()
        self._lock = Lock()
        self._evictions = 0
        self._expirations = 0

    @staticmethod
    def id(descriptor: Any) -> str:
        return operation_id(descriptor)

    def _live_entry(self, op_id: str, now: float) -> Optional[IdempotencyEntry]:
        entry = self._entries.get(op_id)
        if entry is None:
            return None
        if entry.is_expired(now, self.ttl_seconds):
            del self._entries[op_id]
            self._expirations += 1
            return None
        # LRU: accessed entries move to the back
        self._entries.move_to_end(op_id)
        return entry

    def has_processed(self, op_id: str) -> bool:
        with self._lock:
            return self._live_entry(op_id, self._clock()) is not None

    def mark_processed(self, op_id: str, result: Any = None) -> bool:
        """
        Record an operation as processed.

        Returns:
            True if this call created the entry, False if a live entry already
            existed (its attempt count is incremented instead).
        """
        with self._lock:
            now = self._clock()
            entry = self._live_entry(op_id, now)
            if entry is not None:
                entry.attempt_count += 1
                logger.debug("Duplicate operation %s (attempt %d)", op_id[:12], entry.attempt_count)
                return False

            while len(self._entries) >= self.max_size:
                evicted, _ = self._entries.popitem(last=False)
                self._evictions += 1
                logger.debug("Evicted idempotency entry %s", evicted[:12])

            self._entries[op_id] = IdempotencyEntry(
                operation_id=op_id,
                created_at=now,
                result=result if self.store_results else None,
            )
            return True

    def get_result(self, op_id: str) -> Any:
        with self._lock:
            entry = self._live_entry(op_id, self._clock())
            return entry.result if entry else None

    def get_entry(self, op_id: str) -> Optional[IdempotencyEntry]:
        with self._lock:
            return self._live_entry(op_id, self._clock())

    def sweep(self) -> int:
        """Remove every expired entry. Returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [
                op_id for op_id, entry in self._entries.items()
                if entry.is_expired(now, self.ttl_seconds)
            ]
            for op_id in expired:
                del self._entries[op_id]
            self._expirations += len(expired)
        if expired:
            logger.debug("Swept %d expired idempotency entries", len(expired))
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_stats(self) -> dict:
        with self._lock:
            return {
                "size": len(self._entries),
                "max_size": self.max_size,
                "ttl_seconds": self.ttl_seconds,
                "evictions": self._evictions,
                "expirations": self._expirations,
            }


def make_idempotent(
    cache: IdempotencyCache,
    descriptor: Callable[..., Any],
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Wrap an operation with compute descriptor -> check cache -> execute -> store.

    A repeated call within the TTL returns the stored result instead of
    executing again. Failed executions are not recorded, so they can be retried.

    Example:
        ```python
        send_once = make_idempotent(cache, lambda msg_id, text: {"msg": msg_id})(send)
        send_once("m1", "hi")
        send_once("m1", "hi")  # not sent again
        ```
    """
    def decorate(func: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            op_id = cache.id(descriptor(*args, **kwargs))
            if cache.has_processed(op_id):
                cache.mark_processed(op_id)
                return cache.get_result(op_id)
            result = func(*args, **kwargs)
            cache.mark_processed(op_id, result)
            return result
        return wrapper
    return decorate
