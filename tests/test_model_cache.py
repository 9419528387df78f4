"""
Tests for ModelContextCache.

Covers single-flight loading, reference counting, and the capacity and
idle-TTL eviction policies.
"""

import threading
import time

import pytest

from conftest import FakeStore
from whisperflow.core.asr.model_cache import LoadStatus, ModelContextCache
from whisperflow.core.errors import ModelLoadError, ModelLoadReason


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _acquire_concurrently(cache, model_id, count):
    barrier = threading.Barrier(count)
    results = []
    errors = []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        try:
            context = cache.acquire(model_id)
        except ModelLoadError as e:
            with lock:
                errors.append(e)
        else:
            with lock:
                results.append(context)

    threads = [threading.Thread(target=worker) for _ in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)
    return results, errors


class TestAcquire:
    """Tests for acquiring and sharing loaded contexts."""

    def test_concurrent_acquires_load_once(self):
        """Test concurrent acquires share one load and handle."""
        store = FakeStore(delay=0.2)
        cache = ModelContextCache(store, capacity=2, idle_ttl=None)

        results, errors = _acquire_concurrently(cache, "parakeet", 8)

        assert errors == []
        assert store.loads == ["parakeet"]
        assert len({id(c.handle) for c in results}) == 1
        assert results[0].handle == "handle:parakeet:1"
        assert results[0].ref_count == 8
        assert results[0].status is LoadStatus.READY

    def test_reuse_after_release(self, store, cache):
        """Test a released context is reused without reloading."""
        first = cache.acquire("parakeet")
        cache.release("parakeet")
        second = cache.acquire("parakeet")

        assert second is first
        assert store.loads == ["parakeet"]
        assert second.ref_count == 1

    def test_reload_once_after_eviction(self, store, cache):
        """Test an evicted model is loaded again exactly once."""
        cache.acquire("parakeet")
        cache.release("parakeet")
        assert cache.evict("parakeet") is True
        assert not cache.is_loaded("parakeet")

        cache.acquire("parakeet")
        cache.acquire("parakeet")

        assert store.loads == ["parakeet", "parakeet"]
        assert store.unloads == ["handle:parakeet:1"]

    def test_lease_releases_on_exit(self, cache):
        """Test the lease context manager releases on exit."""
        with cache.lease("parakeet") as context:
            assert context.ref_count == 1
        assert context.ref_count == 0
        assert cache.is_loaded("parakeet")


    def test_different_models_load_independently(self):
        """Test loads of distinct models do not wait on each other."""
        store = FakeStore(delay=0.5)
        cache = ModelContextCache(store, capacity=3, idle_ttl=None)
        threads = [
            threading.Thread(target=cache.acquire, args=(model_id,))
            for model_id in ("a", "b", "c")
        ]

        start = time.monotonic()
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)
        elapsed = time.monotonic() - start

        assert sorted(store.loads) == ["a", "b", "c"]
        assert elapsed < 1.2
        assert all(cache.is_loaded(m) for m in ("a", "b", "c"))


class _Interrupted(BaseException):
    pass


class InterruptingStore(FakeStore):
    """First load blocks on a gate, then dies with a non-Exception error."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.gate = threading.Event()

    def load(self, model_id):
        if not self.entered.is_set():
            self.entered.set()
            self.gate.wait(5)
            raise _Interrupted()
        return super().load(model_id)


class TestFailedLoads:
    """Tests for load failures and their cleanup."""

    def test_failed_load_leaves_no_entry(self):
        """Test a failed load leaves nothing cached."""
        store = FakeStore(error=ModelLoadError("parakeet", ModelLoadReason.MISSING))
        cache = ModelContextCache(store, capacity=2, idle_ttl=None)

        with pytest.raises(ModelLoadError) as excinfo:
            cache.acquire("parakeet")

        assert excinfo.value.reason is ModelLoadReason.MISSING
        assert cache.snapshot() == []
        assert not cache.is_loaded("parakeet")

    def test_failure_does_not_poison_later_acquires(self):
        """Test a later acquire retries the load."""
        store = FakeStore(error=ModelLoadError("parakeet", ModelLoadReason.MISSING))
        cache = ModelContextCache(store, capacity=2, idle_ttl=None)
        with pytest.raises(ModelLoadError):
            cache.acquire("parakeet")

        store.error = None
        context = cache.acquire("parakeet")

        assert context.status is LoadStatus.READY
        assert len(store.loads) == 2

    def test_concurrent_waiters_share_failure(self):
        """Test waiters receive the loader's error."""
        error = ModelLoadError("parakeet", ModelLoadReason.CORRUPT, "bad weights")
        store = FakeStore(delay=0.3, error=error)
        cache = ModelContextCache(store, capacity=2, idle_ttl=None)

        results, errors = _acquire_concurrently(cache, "parakeet", 4)

        assert results == []
        assert len(errors) == 4
        assert all(e is error for e in errors)
        assert store.loads == ["parakeet"]

    def test_unexpected_exception_is_corrupt(self):
        """Test unknown loader errors map to CORRUPT."""
        cache = ModelContextCache(
            FakeStore(error=RuntimeError("onnx says no")), capacity=1, idle_ttl=None
        )
        with pytest.raises(ModelLoadError) as excinfo:
            cache.acquire("parakeet")
        assert excinfo.value.reason is ModelLoadReason.CORRUPT

    def test_memory_error_is_resource_exhausted(self):
        """Test MemoryError maps to RESOURCE_EXHAUSTED."""
        cache = ModelContextCache(
            FakeStore(error=MemoryError()), capacity=1, idle_ttl=None
        )
        with pytest.raises(ModelLoadError) as excinfo:
            cache.acquire("parakeet")
        assert excinfo.value.reason is ModelLoadReason.RESOURCE_EXHAUSTED


    def test_interrupted_load_leaves_no_entry(self):
        """Test an interrupt during load clears the entry for the next caller."""
        store = InterruptingStore()
        store.gate.set()
        cache = ModelContextCache(store, capacity=2, idle_ttl=None)

        with pytest.raises(_Interrupted):
            cache.acquire("parakeet")

        assert cache.snapshot() == []
        assert cache.acquire("parakeet").status is LoadStatus.READY

    def test_waiter_reloads_after_interrupted_load(self):
        """Test a caller waiting on an interrupted load loads the model itself."""
        store = InterruptingStore()
        cache = ModelContextCache(store, capacity=2, idle_ttl=None)
        outcome = {}

        def loader():
            try:
                cache.acquire("parakeet")
            except _Interrupted:
                outcome["loader"] = "interrupted"

        def waiter():
            outcome["waiter"] = cache.acquire("parakeet")

        first = threading.Thread(target=loader)
        first.start()
        assert store.entered.wait(5)
        second = threading.Thread(target=waiter)
        second.start()
        time.sleep(0.1)
        store.gate.set()
        first.join(5)
        second.join(5)

        assert not second.is_alive()
        assert outcome["loader"] == "interrupted"
        assert outcome["waiter"].status is LoadStatus.READY
        assert outcome["waiter"].ref_count == 1
        assert store.loads == ["parakeet"]


class TestEviction:
    """Tests for capacity and idle-TTL eviction."""

    def test_borrowed_context_not_evicted(self, store, cache):
        """Test a context in use cannot be evicted."""
        cache.acquire("parakeet")

        assert cache.evict("parakeet") is False
        assert cache.is_loaded("parakeet")
        assert store.unloads == []

    def test_evict_unknown_returns_false(self, cache):
        """Test evicting an unknown model returns False."""
        assert cache.evict("missing") is False

    def test_capacity_evicts_least_recently_used(self, store):
        """Test the least recently used idle model goes first."""
        clock = FakeClock()
        cache = ModelContextCache(store, capacity=2, idle_ttl=None, clock=clock)

        for model_id in ("a", "b"):
            clock.now += 1
            cache.acquire(model_id)
            cache.release(model_id)

        clock.now += 1
        cache.acquire("c")

        assert not cache.is_loaded("a")
        assert cache.is_loaded("b")
        assert cache.is_loaded("c")
        assert store.unloads == ["handle:a:1"]

    def test_capacity_never_evicts_borrowed(self, store):
        """Test capacity may be exceeded rather than evict borrowed contexts."""
        cache = ModelContextCache(store, capacity=1, idle_ttl=None)

        cache.acquire("a")
        cache.acquire("b")

        assert cache.is_loaded("a")
        assert cache.is_loaded("b")
        assert store.unloads == []

        cache.release("a")
        assert not cache.is_loaded("a")
        assert cache.is_loaded("b")

    def test_idle_ttl_expiry(self, store):
        """Test idle contexts expire after the TTL."""
        clock = FakeClock()
        cache = ModelContextCache(store, capacity=2, idle_ttl=10.0, clock=clock)
        cache.acquire("parakeet")
        cache.release("parakeet")

        clock.now = 5.0
        assert cache.evict_idle() == []

        clock.now = 11.0
        assert cache.evict_idle() == ["parakeet"]
        assert store.unloads == ["handle:parakeet:1"]

    def test_zero_ttl_unloads_on_release(self, store):
        """Test a zero TTL unloads on last release."""
        cache = ModelContextCache(store, capacity=2, idle_ttl=0)
        cache.acquire("parakeet")
        cache.release("parakeet")

        assert not cache.is_loaded("parakeet")
        assert store.unloads == ["handle:parakeet:1"]

    def test_none_ttl_keeps_forever(self, store):
        """Test a None TTL never expires contexts."""
        clock = FakeClock()
        cache = ModelContextCache(store, capacity=2, idle_ttl=None, clock=clock)
        cache.acquire("parakeet")
        cache.release("parakeet")

        clock.now = 1e9
        assert cache.evict_idle() == []
        assert cache.is_loaded("parakeet")


class TestHousekeeping:
    """Tests for release bookkeeping, snapshots and shutdown."""

    def test_release_unknown_is_ignored(self, cache):
        """Test releasing an unknown model is a no-op."""
        cache.release("never-loaded")

    def test_extra_release_does_not_go_negative(self, cache):
        """Test extra releases keep the count at zero."""
        context = cache.acquire("parakeet")
        cache.release("parakeet")
        cache.release("parakeet")
        assert context.ref_count == 0

    def test_snapshot_hides_handles(self, cache):
        """Test snapshots omit the model handles."""
        cache.acquire("parakeet")

        snapshot = cache.snapshot()

        assert len(snapshot) == 1
        assert snapshot[0].model_id == "parakeet"
        assert snapshot[0].ref_count == 1
        assert snapshot[0].handle is None

    def test_shutdown_unloads_idle_only(self, store, cache):
        """Test shutdown leaves borrowed contexts loaded."""
        cache.acquire("a")
        cache.release("a")
        cache.acquire("b")

        assert cache.shutdown() == 1
        assert not cache.is_loaded("a")
        assert cache.is_loaded("b")

    def test_capacity_must_be_positive(self, store):
        """Test a zero capacity is rejected."""
        with pytest.raises(ValueError):
            ModelContextCache(store, capacity=0)
