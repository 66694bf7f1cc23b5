"""Tests for the single-flight deduplication cache."""

import asyncio

import pytest

from mortgage_resilience.core.validators import ValidationError
from mortgage_resilience.deduplication import (
    CacheStatistics,
    DeduplicationCache,
    DeduplicationConfig,
    DeduplicationEntry,
)
from mortgage_resilience.exceptions import DeduplicationError
from mortgage_resilience.key_builder import args_only_key, hash_key
from mortgage_resilience.metrics import InMemoryMetrics


def identity_config(**kwargs) -> DeduplicationConfig:
    """Config whose key generator keeps caller keys readable."""
    return DeduplicationConfig(key_generator=lambda key: key, **kwargs)


class CountingWork:
    """Async work counting its invocations, optionally gated by an event."""

    def __init__(self, value: object = "result", gate: asyncio.Event | None = None) -> None:
        self.value = value
        self.gate = gate
        self.calls = 0

    async def __call__(self) -> object:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0.01)
        return self.value


class TestDeduplicationConfig:
    """Tests for DeduplicationConfig validation."""

    def test_defaults(self) -> None:
        """Defaults match the documented configuration."""
        config = DeduplicationConfig()

        assert config.ttl == 300.0
        assert config.max_cache_size == 1000
        assert config.cleanup_interval == 60.0
        assert config.key_generator is None

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"ttl": 0.5},
            {"max_cache_size": 99},
            {"max_cache_size": 100.0},
            {"cleanup_interval": 0.1},
            {"key_generator": 42},
        ],
    )
    def test_invalid_values_rejected(self, kwargs: dict) -> None:
        """Out-of-range values raise ValidationError at construction."""
        with pytest.raises(ValidationError):
            DeduplicationConfig(**kwargs)

    def test_merge(self) -> None:
        """merge returns a validated copy."""
        config = DeduplicationConfig().merge(ttl=10)

        assert config.ttl == 10
        with pytest.raises(ValidationError):
            config.merge(size=5)


class TestDeduplicationEntry:
    """Tests for DeduplicationEntry expiry."""

    @pytest.mark.asyncio
    async def test_expiry_boundary(self) -> None:
        """An entry expires strictly after created_at + ttl."""
        future = asyncio.get_running_loop().create_future()
        entry = DeduplicationEntry(key="k", future=future, created_at=100.0, ttl=5.0)

        assert entry.expires_at == 105.0
        assert not entry.is_expired(105.0)
        assert entry.is_expired(105.001)
        assert entry.in_flight
        future.set_result(None)
        assert not entry.in_flight


class TestSingleFlight:
    """Tests for coalescing concurrent callers."""

    @pytest.mark.asyncio
    async def test_single_execution(self, clock) -> None:
        """A first call executes the work and is not a duplicate."""
        async with DeduplicationCache(identity_config(), clock=clock) as cache:
            work = CountingWork()

            outcome = await cache.execute("key1", work)

            assert outcome.result == "result"
            assert outcome.is_duplicate is False
            assert outcome.from_cache is False
            assert work.calls == 1

    @pytest.mark.asyncio
    async def test_concurrent_calls_share_one_execution(self, clock) -> None:
        """Three concurrent callers trigger one execution and share its result."""
        async with DeduplicationCache(identity_config(ttl=5), clock=clock) as cache:
            rates = [{"lender": "A", "rate": 5.1}]
            work = CountingWork(value=rates)

            outcomes = await asyncio.gather(*[cache.execute("rates:CA:25", work) for _ in range(3)])

            assert work.calls == 1
            assert all(outcome.result is rates for outcome in outcomes)
            assert [outcome.is_duplicate for outcome in outcomes] == [False, True, True]
            assert [outcome.from_cache for outcome in outcomes] == [False, True, True]
            assert all(outcome.attach_count == 3 for outcome in outcomes)

    @pytest.mark.asyncio
    async def test_different_keys_not_deduplicated(self, clock) -> None:
        """Distinct keys run independently."""
        async with DeduplicationCache(identity_config(), clock=clock) as cache:
            work = CountingWork()

            await asyncio.gather(cache.execute("a", work), cache.execute("b", work), cache.execute("c", work))

            assert work.calls == 3

    @pytest.mark.asyncio
    async def test_completed_result_reused_within_ttl(self, clock) -> None:
        """A sequential call within the TTL reuses the cached result."""
        async with DeduplicationCache(identity_config(ttl=5), clock=clock) as cache:
            work = CountingWork()

            await cache.execute("k", work)
            clock.advance(4.9)
            outcome = await cache.execute("k", work)

            assert work.calls == 1
            assert outcome.is_duplicate is True
            assert outcome.from_cache is True
            assert outcome.attach_count == 2

    @pytest.mark.asyncio
    async def test_work_runs_again_after_ttl(self, clock) -> None:
        """After the TTL elapses the work executes again."""
        async with DeduplicationCache(identity_config(ttl=5), clock=clock) as cache:
            work = CountingWork()

            await cache.execute("k", work)
            clock.advance(5.1)
            outcome = await cache.execute("k", work)

            assert work.calls == 2
            assert outcome.is_duplicate is False

    @pytest.mark.asyncio
    async def test_ttl_override(self, clock) -> None:
        """A per-call TTL applies to the entry it creates."""
        async with DeduplicationCache(identity_config(ttl=300), clock=clock) as cache:
            work = CountingWork()

            await cache.execute("k", work, ttl=2)
            clock.advance(3)
            await cache.execute("k", work)

            assert work.calls == 2

    @pytest.mark.asyncio
    async def test_invalid_ttl_override(self, clock) -> None:
        """Invalid TTL overrides are rejected before work runs."""
        async with DeduplicationCache(identity_config(), clock=clock) as cache:
            work = CountingWork()

            with pytest.raises(ValidationError):
                await cache.execute("k", work, ttl=0)
            assert work.calls == 0

    @pytest.mark.asyncio
    async def test_execute_or_throw_returns_result(self, clock) -> None:
        """execute_or_throw unwraps the result."""
        async with DeduplicationCache(identity_config(), clock=clock) as cache:
            assert await cache.execute_or_throw("k", CountingWork(value=7)) == 7


class TestFailureHandling:
    """Tests for failures never being cached."""

    @pytest.mark.asyncio
    async def test_failure_does_not_poison_key(self, clock) -> None:
        """After a failure the next call with the same key runs fresh."""
        async with DeduplicationCache(identity_config(ttl=5), clock=clock) as cache:

            async def failing() -> str:
                raise RuntimeError("rate provider down")

            with pytest.raises(RuntimeError, match="rate provider down"):
                await cache.execute("k", failing)

            assert "k" not in cache
            outcome = await cache.execute("k", CountingWork(value="fresh"))
            assert outcome.result == "fresh"
            assert outcome.is_duplicate is False

    @pytest.mark.asyncio
    async def test_synchronous_raise_is_handled(self, clock) -> None:
        """Work raising before returning an awaitable is treated like an async failure."""
        async with DeduplicationCache(identity_config(), clock=clock) as cache:

            def broken():
                raise ValueError("bad payload")

            with pytest.raises(ValueError, match="bad payload"):
                await cache.execute("k", broken)

            assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_error_propagated_to_all_attached_callers(self, clock) -> None:
        """Every attached caller observes the same error instance."""
        async with DeduplicationCache(identity_config(), clock=clock) as cache:
            calls = 0

            async def failing() -> str:
                nonlocal calls
                calls += 1
                await asyncio.sleep(0.02)
                raise ValueError("computation failed")

            results = await asyncio.gather(
                *[cache.execute("error_key", failing) for _ in range(3)], return_exceptions=True
            )

            assert calls == 1
            assert all(isinstance(result, ValueError) for result in results)
            assert results[0] is results[1] is results[2]
            assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_failure_recorded_in_metrics(self, clock) -> None:
        """Work failures are reported to the metrics collector."""
        metrics = InMemoryMetrics()
        async with DeduplicationCache(identity_config(), metrics=metrics, clock=clock) as cache:

            async def failing() -> str:
                raise RuntimeError("boom")

            with pytest.raises(RuntimeError):
                await cache.execute("k", failing)
            await asyncio.sleep(0)

            assert metrics.get_stats().work_errors == 1


class TestCancellation:
    """Tests for cancellation semantics."""

    @pytest.mark.asyncio
    async def test_cancelling_attached_caller_keeps_shared_work(self, clock) -> None:
        """An attached caller being cancelled does not cancel the work."""
        async with DeduplicationCache(identity_config(), clock=clock) as cache:
            gate = asyncio.Event()
            work = CountingWork(value="done", gate=gate)

            originator = asyncio.create_task(cache.execute("k", work))
            await asyncio.sleep(0)
            attached = asyncio.create_task(cache.execute("k", work))
            await asyncio.sleep(0)

            attached.cancel()
            with pytest.raises(asyncio.CancelledError):
                await attached

            gate.set()
            outcome = await originator
            assert outcome.result == "done"
            assert work.calls == 1

    @pytest.mark.asyncio
    async def test_cancel_key_cancels_all_callers(self, clock) -> None:
        """cancel_key cancels the shared work for every caller and drops the entry."""
        async with DeduplicationCache(identity_config(), clock=clock) as cache:
            work = CountingWork(gate=asyncio.Event())

            originator = asyncio.create_task(cache.execute("k", work))
            await asyncio.sleep(0)
            attached = asyncio.create_task(cache.execute("k", work))
            await asyncio.sleep(0)

            assert cache.cancel_key("k") is True

            with pytest.raises(asyncio.CancelledError):
                await originator
            with pytest.raises(asyncio.CancelledError):
                await attached
            assert "k" not in cache
            assert cache.cancel_key("k") is False

    @pytest.mark.asyncio
    async def test_cancelling_originator_removes_entry(self, clock) -> None:
        """Cancelling the originating caller cancels the work and frees the key."""
        async with DeduplicationCache(identity_config(), clock=clock) as cache:
            work = CountingWork(gate=asyncio.Event())

            originator = asyncio.create_task(cache.execute("k", work))
            await asyncio.sleep(0)
            originator.cancel()
            with pytest.raises(asyncio.CancelledError):
                await originator
            await asyncio.sleep(0)

            assert len(cache) == 0


class TestEviction:
    """Tests for TTL sweeps and the size cap."""

    @pytest.mark.asyncio
    async def test_oldest_live_entry_evicted_when_full(self, clock) -> None:
        """A full cache of live entries evicts the oldest one to admit a new key."""
        async with DeduplicationCache(identity_config(max_cache_size=100), clock=clock) as cache:
            for index in range(100):
                await cache.execute(f"key-{index}", CountingWork())
                clock.advance(0.001)

            await cache.execute("new", CountingWork())

            assert len(cache) == 100
            assert "key-0" not in cache
            assert "key-1" in cache
            assert "new" in cache
            assert cache.get_statistics().evictions == 1

    @pytest.mark.asyncio
    async def test_in_flight_entries_evicted_by_creation_order(self, clock) -> None:
        """Outstanding entries are evicted oldest-first without cancelling their work."""
        async with DeduplicationCache(identity_config(max_cache_size=100), clock=clock) as cache:
            gate = asyncio.Event()
            tasks = [asyncio.create_task(cache.execute(f"key-{i}", CountingWork(gate=gate))) for i in range(100)]
            await asyncio.sleep(0)

            extra = asyncio.create_task(cache.execute("extra", CountingWork(gate=gate)))
            await asyncio.sleep(0)

            assert len(cache) == 100
            assert cache.get_keys()[0] == "key-1"
            assert cache.get_keys()[-1] == "extra"

            gate.set()
            results = await asyncio.gather(*tasks, extra)
            assert all(outcome.result == "result" for outcome in results)

    @pytest.mark.asyncio
    async def test_expired_entries_swept_before_evicting_live_ones(self, clock) -> None:
        """The synchronous sweep frees room before any live entry is touched."""
        async with DeduplicationCache(identity_config(max_cache_size=100, ttl=1), clock=clock) as cache:
            for index in range(100):
                await cache.execute(f"old-{index}", CountingWork())
            clock.advance(2)

            await cache.execute("fresh", CountingWork(), ttl=60)

            assert cache.get_keys() == ["fresh"]

    @pytest.mark.asyncio
    async def test_size_never_exceeds_capacity(self, clock) -> None:
        """Distinct keys never push the size above max_cache_size."""
        async with DeduplicationCache(identity_config(max_cache_size=100), clock=clock) as cache:
            for index in range(250):
                await cache.execute(f"key-{index}", CountingWork())
                assert len(cache) <= 100

    @pytest.mark.asyncio
    async def test_sweep_expired(self, clock) -> None:
        """sweep_expired removes only expired entries."""
        async with DeduplicationCache(identity_config(ttl=5), clock=clock) as cache:
            await cache.execute("short", CountingWork(), ttl=1)
            await cache.execute("long", CountingWork())
            clock.advance(2)

            assert cache.sweep_expired() == 1
            assert cache.get_keys() == ["long"]

    @pytest.mark.asyncio
    async def test_periodic_sweep(self, clock) -> None:
        """The background sweep evicts expired entries without new calls."""
        config = identity_config(ttl=1, cleanup_interval=1)
        async with DeduplicationCache(config, clock=clock) as cache:
            await cache.execute("k", CountingWork())
            clock.advance(2)

            await asyncio.sleep(1.1)

            assert len(cache) == 0


class TestManagement:
    """Tests for clearing, keys, statistics and lifecycle."""

    @pytest.mark.asyncio
    async def test_default_key_generator_hashes(self, clock) -> None:
        """Without a key generator keys are SHA-256 digests."""
        async with DeduplicationCache(clock=clock) as cache:
            await cache.execute("rates:CA:25:fixed:500000:50000", CountingWork())

            assert cache.get_keys() == [hash_key("rates:CA:25:fixed:500000:50000")]
            assert "rates:CA:25:fixed:500000:50000" in cache

    @pytest.mark.asyncio
    async def test_clear_key_then_execute_runs_work(self, clock) -> None:
        """clear_key followed by execute always invokes the work."""
        async with DeduplicationCache(clock=clock) as cache:
            work = CountingWork()
            await cache.execute("k", work)

            assert cache.clear_key("k") is True
            assert cache.clear_key("k") is False
            await cache.execute("k", work)

            assert work.calls == 2

    @pytest.mark.asyncio
    async def test_clear(self, clock) -> None:
        """clear drops every entry and reports how many."""
        async with DeduplicationCache(clock=clock) as cache:
            for key in ("a", "b", "c"):
                await cache.execute(key, CountingWork())

            assert cache.clear() == 3
            assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_statistics(self, clock) -> None:
        """Statistics reflect attach counts of current entries."""
        async with DeduplicationCache(identity_config(max_cache_size=500), clock=clock) as cache:
            work = CountingWork()
            await asyncio.gather(*[cache.execute("shared", work) for _ in range(3)])
            await cache.execute("single", CountingWork())

            stats = cache.get_statistics()

            assert stats == CacheStatistics(
                size=2,
                max_size=500,
                hit_rate=pytest.approx(0.5),
                average_attach_count=2.0,
                in_flight=0,
                evictions=0,
                total_requests=4,
            )

    @pytest.mark.asyncio
    async def test_statistics_empty(self) -> None:
        """An empty cache reports zero rates."""
        cache = DeduplicationCache()

        stats = cache.get_statistics()

        assert stats.size == 0
        assert stats.hit_rate == 0.0
        assert stats.average_attach_count == 0.0

    @pytest.mark.asyncio
    async def test_empty_key_rejected(self, clock) -> None:
        """Empty keys are a caller error."""
        async with DeduplicationCache(clock=clock) as cache:
            with pytest.raises(DeduplicationError):
                await cache.execute("", CountingWork())

    @pytest.mark.asyncio
    async def test_clear_key_with_empty_key(self, clock) -> None:
        """Clearing an empty key removes nothing instead of raising."""
        async with DeduplicationCache(clock=clock) as cache:
            await cache.execute("k", CountingWork())

            assert cache.clear_key("") is False
            assert "" not in cache
            assert len(cache) == 1

    @pytest.mark.asyncio
    async def test_closed_cache_rejects_calls(self, clock) -> None:
        """A closed cache refuses new work."""
        cache = DeduplicationCache(clock=clock)
        await cache.execute("k", CountingWork())

        await cache.close()

        assert cache.closed
        assert len(cache) == 0
        with pytest.raises(DeduplicationError, match="closed"):
            await cache.execute("k", CountingWork())

    @pytest.mark.asyncio
    async def test_dedup_metrics(self, clock) -> None:
        """Hits and misses are reported to the metrics collector."""
        metrics = InMemoryMetrics()
        async with DeduplicationCache(identity_config(), metrics=metrics, clock=clock) as cache:
            await asyncio.gather(*[cache.execute("k", CountingWork()) for _ in range(4)])

        stats = metrics.get_stats()
        assert stats.dedup_misses == 1
        assert stats.dedup_hits == 3
        assert metrics.get_key_stats("k").hit_ratio == 0.75

    @pytest.mark.asyncio
    async def test_create_deduplication_function(self, clock) -> None:
        """Factories derive keys from the call arguments."""
        async with DeduplicationCache(identity_config(), clock=clock) as cache:
            dedup = cache.create_deduplication_function(args_only_key)
            dedup_or_throw = cache.create_deduplication_function_or_throw(args_only_key)
            work = CountingWork()

            first = await dedup(work, "CA", 25)
            second = await dedup_or_throw(work, "CA", 25)

            assert first.result == second == "result"
            assert work.calls == 1
            assert cache.get_keys() == ["CA|25"]
