"""Tests for the idempotency cache."""

import threading

import pytest

from replyguard.idempotency import (
    IdempotencyCache,
    make_idempotent,
    normalize,
    operation_id,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestOperationId:
    """Test descriptor hashing."""

    def test_key_order_does_not_matter(self):
        """Dicts with the same items in different order hash the same."""
        a = {"message_id": "m1", "answer_id": "a1", "extra": {"x": 1, "y": 2}}
        b = {"extra": {"y": 2, "x": 1}, "answer_id": "a1", "message_id": "m1"}
        assert operation_id(a) == operation_id(b)

    def test_array_order_does_not_matter(self):
        """The same set of ids in a different order hashes the same."""
        assert operation_id({"ids": ["m2", "m1", "m3"]}) == operation_id({"ids": ["m3", "m2", "m1"]})

    def test_nested_arrays_of_objects(self):
        """Arrays of dicts are normalized element-wise before sorting."""
        a = {"items": [{"id": 2, "tags": ["b", "a"]}, {"id": 1}]}
        b = {"items": [{"id": 1}, {"tags": ["a", "b"], "id": 2}]}
        assert operation_id(a) == operation_id(b)

    def test_different_descriptors_differ(self):
        """Distinct descriptors produce distinct hashes."""
        assert operation_id({"message_id": "m1"}) != operation_id({"message_id": "m2"})

    def test_hash_is_sha256_hex(self):
        """Hashes are 64 hex characters."""
        op_id = operation_id({"a": 1})
        assert len(op_id) == 64
        int(op_id, 16)

    def test_normalize_sorts_keys(self):
        """normalize returns keys in sorted order."""
        assert list(normalize({"b": 1, "a": 2})) == ["a", "b"]


class TestIdempotencyCache:
    """Test processed-operation tracking."""

    def setup_method(self):
        self.clock = FakeClock()
        self.cache = IdempotencyCache(max_size=3, ttl_seconds=300, clock=self.clock)

    def test_mark_processed_first_time(self):
        """The first mark is newly marked."""
        op_id = self.cache.id({"message_id": "m1"})
        assert self.cache.has_processed(op_id) is False
        assert self.cache.mark_processed(op_id) is True
        assert self.cache.has_processed(op_id) is True

    def test_mark_processed_twice_increments_attempts(self):
        """A second mark is not new and bumps the attempt count."""
        op_id = self.cache.id({"message_id": "m1"})
        self.cache.mark_processed(op_id)
        assert self.cache.mark_processed(op_id) is False
        assert self.cache.mark_processed(op_id) is False
        assert self.cache.get_entry(op_id).attempt_count == 3
        assert len(self.cache) == 1

    def test_stores_result(self):
        """Results are returned while the entry is live."""
        self.cache.mark_processed("op", {"reply_id": "r1"})
        assert self.cache.get_result("op") == {"reply_id": "r1"}

    def test_store_results_disabled(self):
        """With store_results=False only the fact of processing is kept."""
        cache = IdempotencyCache(store_results=False, clock=self.clock)
        cache.mark_processed("op", {"reply_id": "r1"})
        assert cache.has_processed("op") is True
        assert cache.get_result("op") is None

    def test_expired_entry_is_absent(self):
        """Entries older than the TTL are gone and evicted on lookup."""
        self.cache.mark_processed("op")
        self.clock.advance(299.9)
        assert self.cache.has_processed("op") is True

        self.clock.advance(0.1)
        assert self.cache.has_processed("op") is False
        assert len(self.cache) == 0

    def test_mark_after_expiry_is_new(self):
        """An expired operation can be marked again as new."""
        self.cache.mark_processed("op")
        self.clock.advance(301)
        assert self.cache.mark_processed("op") is True
        assert self.cache.get_entry("op").attempt_count == 1

    def test_evicts_least_recently_accessed(self):
        """Inserting past max_size evicts the least recently accessed entry."""
        for op in ("a", "b", "c"):
            self.cache.mark_processed(op)

        # Touch "a" so "b" becomes the least recently accessed
        assert self.cache.has_processed("a") is True
        self.cache.mark_processed("d")

        assert self.cache.has_processed("b") is False
        assert self.cache.has_processed("a") is True
        assert self.cache.has_processed("c") is True
        assert self.cache.has_processed("d") is True
        assert self.cache.get_stats()["evictions"] == 1

    def test_eviction_without_access_drops_oldest(self):
        """With no accesses the first inserted entry goes, never the newest."""
        for op in ("a", "b", "c", "d"):
            self.cache.mark_processed(op)
        assert self.cache.has_processed("a") is False
        assert self.cache.has_processed("d") is True
        assert len(self.cache) == 3

    def test_sweep_removes_only_expired(self):
        """sweep() removes expired entries and keeps live ones."""
        self.cache.mark_processed("old")
        self.clock.advance(200)
        self.cache.mark_processed("new")
        self.clock.advance(150)

        assert self.cache.sweep() == 1
        assert len(self.cache) == 1
        assert self.cache.has_processed("new") is True

    def test_concurrent_marks_one_winner(self):
        """Concurrent marks of the same operation produce exactly one new mark."""
        cache = IdempotencyCache()
        results = []
        lock = threading.Lock()

        def worker():
            newly = cache.mark_processed("same-op")
            with lock:
                results.append(newly)

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert cache.get_entry("same-op").attempt_count == 20

    def test_rejects_bad_settings(self):
        """max_size and ttl must be positive."""
        with pytest.raises(ValueError):
            IdempotencyCache(max_size=0)
        with pytest.raises(ValueError):
            IdempotencyCache(ttl_seconds=0)


class TestMakeIdempotent:
    """Test the wrapping helper."""

    def setup_method(self):
        self.clock = FakeClock()
        self.cache = IdempotencyCache(clock=self.clock)
        self.calls = []

    def _send(self, message_id, text):
        self.calls.append(message_id)
        return f"sent:{message_id}"

    def test_repeated_call_runs_once(self):
        """A repeated call returns the stored result without executing again."""
        send = make_idempotent(self.cache, lambda mid, text: {"message_id": mid})(self._send)

        assert send("m1", "hi") == "sent:m1"
        assert send("m1", "hi again") == "sent:m1"
        assert self.calls == ["m1"]

    def test_different_descriptor_runs_again(self):
        """A new descriptor executes the operation."""
        send = make_idempotent(self.cache, lambda mid, text: {"message_id": mid})(self._send)
        send("m1", "hi")
        send("m2", "hi")
        assert self.calls == ["m1", "m2"]

    def test_runs_again_after_ttl(self):
        """Once the entry expires the operation runs again."""
        send = make_idempotent(self.cache, lambda mid, text: {"message_id": mid})(self._send)
        send("m1", "hi")
        self.clock.advance(301)
        send("m1", "hi")
        assert self.calls == ["m1", "m1"]

    def test_failure_is_not_recorded(self):
        """A call that raises can be retried."""
        attempts = []

        def flaky(message_id):
            attempts.append(message_id)
            if len(attempts) == 1:
                raise RuntimeError("transient")
            return "ok"

        wrapped = make_idempotent(self.cache, lambda mid: {"message_id": mid})(flaky)
        with pytest.raises(RuntimeError):
            wrapped("m1")
        assert wrapped("m1") == "ok"
        assert wrapped("m1") == "ok"
        assert len(attempts) == 2

    def test_preserves_function_name(self):
        """The wrapper keeps the wrapped function's metadata."""
        def deliver():
            return None

        wrapped = make_idempotent(self.cache, lambda: {"op": "deliver"})(deliver)
        assert wrapped.__name__ == "deliver"
