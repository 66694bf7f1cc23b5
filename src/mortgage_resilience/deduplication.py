"""
Single-flight request deduplication with TTL expiry.

Concurrent or rapid-repeat requests sharing a logical key result in exactly
one execution of the underlying work; every caller receives the same result
(or the same error). Completed results are reused until the entry's TTL
elapses. Failures are never cached.

Concurrency model:
    One asyncio event loop. The lookup, replacement of an expired entry,
    capacity enforcement and insert in ``execute`` run with no ``await`` in
    between, so no other caller can interleave and two first-callers can never
    both start work for the same key. Instances are not thread-safe; sharing
    one across threads would require guarding that step with a lock.
"""

import asyncio
import contextlib
import dataclasses
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from .core.constants import (
    DEFAULT_CLEANUP_INTERVAL_SECONDS,
    DEFAULT_DEDUP_TTL_SECONDS,
    DEFAULT_MAX_CACHE_SIZE,
    ERROR_DEDUP_KEY_EMPTY,
    EVICTION_REASON_CAPACITY,
    EVICTION_REASON_EXPIRED,
)
from .core.validators import validate_deduplication_parameters, validate_known_options, validate_ttl
from .exceptions import DeduplicationError
from .key_builder import hash_key
from .metrics import NoOpMetrics
from .protocols import ResilienceMetrics

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class DeduplicationConfig:
    """Deduplication cache configuration.

    Attributes:
        ttl: Seconds an entry lives, in-flight or completed
        max_cache_size: Hard cap on the number of entries
        cleanup_interval: Seconds between background sweeps
        key_generator: Transforms caller keys; SHA-256 digest when None

    Raises:
        ValidationError: On construction, if any value is out of range
    """

    ttl: float = DEFAULT_DEDUP_TTL_SECONDS
    max_cache_size: int = DEFAULT_MAX_CACHE_SIZE
    cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL_SECONDS
    key_generator: Callable[[str], str] | None = None

    def __post_init__(self) -> None:
        validate_deduplication_parameters(
            ttl=self.ttl,
            max_cache_size=self.max_cache_size,
            cleanup_interval=self.cleanup_interval,
            key_generator=self.key_generator,
        )

    def merge(self, **overrides: Any) -> "DeduplicationConfig":
        """Return a new validated config with the given fields replaced."""
        if not overrides:
            return self
        validate_known_options("deduplication config", overrides, (f.name for f in dataclasses.fields(self)))
        return dataclasses.replace(self, **overrides)


@dataclass
class DeduplicationEntry:
    """One in-flight or recently completed execution.

    Owned exclusively by the cache map.

    Attributes:
        key: Generated cache key
        future: Task running the work; shared by every attached caller
        created_at: Clock reading at creation
        ttl: Lifetime in seconds
        attach_count: Callers sharing this entry, the originating one included
    """

    key: str
    future: "asyncio.Future[Any]"
    created_at: float
    ttl: float
    attach_count: int = 1

    @property
    def expires_at(self) -> float:
        return self.created_at + self.ttl

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    @property
    def in_flight(self) -> bool:
        return not self.future.done()


@dataclass(frozen=True)
class DeduplicationOutcome(Generic[T]):
    """Result of one DeduplicationCache.execute call.

    Attributes:
        is_duplicate: True when this caller attached to an existing entry
        result: Value produced by the shared work
        from_cache: True when this caller did not trigger the work
        attach_count: Callers sharing the entry when this caller resolved
    """

    is_duplicate: bool
    result: T
    from_cache: bool
    attach_count: int


@dataclass(frozen=True)
class CacheStatistics:
    """Read-only snapshot of the cache state.

    Attributes:
        size: Current number of entries
        max_size: Configured capacity
        hit_rate: Share of calls on current entries that attached instead of
            starting work
        average_attach_count: Mean attach count per current entry
        in_flight: Entries whose work has not finished
        evictions: Entries evicted since creation (expired or capacity)
        total_requests: execute calls since creation
    """

    size: int
    max_size: int
    hit_rate: float
    average_attach_count: float
    in_flight: int = 0
    evictions: int = 0
    total_requests: int = 0


class DeduplicationCache:
    """Single-flight cache keyed by request fingerprint.

    Features:
    - One execution per live key; attached callers share its result
    - TTL-based reuse of completed results
    - Failed work is removed before its error reaches attached callers
    - Periodic background sweep of expired entries
    - Hard size cap: expired entries are swept first, then the oldest live
      entry is evicted

    Cancellation:
        Cancelling an attached caller never affects the shared work.
        Cancelling the originating caller cancels the shared work, so every
        attached caller observes CancelledError and the entry is removed.
        ``cancel_key`` does the same explicitly.

    Example:
        ```python
        cache = DeduplicationCache(DeduplicationConfig(ttl=5))

        outcome = await cache.execute("rates:CA:25:fixed:500000:50000", fetch_rates)
        rates = outcome.result
        ```
    """

    def __init__(
        self,
        config: DeduplicationConfig | None = None,
        *,
        metrics: ResilienceMetrics | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the cache.

        The background sweep starts lazily on the first ``execute`` (or an
        explicit ``start()``) because it needs a running event loop.

        Args:
            config: Cache configuration (defaults if omitted)
            metrics: Metrics collector (NoOpMetrics if omitted)
            clock: Monotonic clock in seconds
        """
        self._config = config or DeduplicationConfig()
        self._metrics: ResilienceMetrics = metrics or NoOpMetrics()
        self._clock = clock
        self._entries: dict[str, DeduplicationEntry] = {}
        self._sweeper: asyncio.Task[None] | None = None
        self._closed = False
        self._evictions = 0
        self._total_requests = 0

    @property
    def config(self) -> DeduplicationConfig:
        """Configuration of this cache."""
        return self._config

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, str) or not key:
            return False
        entry = self._entries.get(self.generate_key(key))
        return entry is not None and not entry.is_expired(self._clock())

    def generate_key(self, key: str) -> str:
        """Map a caller key to the internal cache key.

        Raises:
            DeduplicationError: If key is empty or not a string
        """
        if not isinstance(key, str) or not key:
            raise DeduplicationError(ERROR_DEDUP_KEY_EMPTY, key=key if isinstance(key, str) else None)
        generator = self._config.key_generator or hash_key
        return generator(key)

    # ========== Execution ==========

    async def execute(
        self,
        key: str,
        work: Callable[[], Awaitable[T]],
        ttl: float | None = None,
    ) -> DeduplicationOutcome[T]:
        """Execute work once per live key.

        Args:
            key: Collision-free request fingerprint
            work: Zero-argument callable returning an awaitable
            ttl: Lifetime override in seconds for a newly created entry

        Returns:
            DeduplicationOutcome with the shared result

        Raises:
            DeduplicationError: If the key is empty or the cache is closed
            ValidationError: If the ttl override is invalid
            Exception: Whatever the shared work raised, for every attached caller
        """
        if self._closed:
            raise DeduplicationError("Deduplication cache is closed", key=key)
        if ttl is not None:
            validate_ttl(ttl)
        cache_key = self.generate_key(key)
        self.start()
        self._total_requests += 1

        # From here to the insert there must be no await.
        now = self._clock()
        entry = self._entries.get(cache_key)
        if entry is not None and not entry.is_expired(now):
            return await self._attach(entry)

        if entry is not None:
            self._evict(cache_key, EVICTION_REASON_EXPIRED)
        self._make_room(now)

        task = asyncio.get_running_loop().create_task(self._run(cache_key, work))
        entry = DeduplicationEntry(
            key=cache_key,
            future=task,
            created_at=now,
            ttl=ttl if ttl is not None else self._config.ttl,
        )
        self._entries[cache_key] = entry
        task.add_done_callback(lambda done: self._on_work_done(cache_key, done))
        self._metrics.record_dedup_miss(cache_key)
        logger.debug(f"Dedup: starting new execution for key '{cache_key}'")

        result = await task
        return DeduplicationOutcome(
            is_duplicate=False,
            result=result,
            from_cache=False,
            attach_count=entry.attach_count,
        )

    async def _attach(self, entry: DeduplicationEntry) -> DeduplicationOutcome[Any]:
        entry.attach_count += 1
        self._metrics.record_dedup_hit(entry.key)
        logger.debug(f"Dedup: attaching to existing execution for key '{entry.key}' (attach #{entry.attach_count})")

        # shield: an attached caller being cancelled must not cancel the shared work
        result = await asyncio.shield(entry.future)
        return DeduplicationOutcome(
            is_duplicate=True,
            result=result,
            from_cache=True,
            attach_count=entry.attach_count,
        )

    async def _run(self, cache_key: str, work: Callable[[], Awaitable[T]]) -> T:
        """Run the work inside the shared task.

        Calling work() is inside the task so a synchronous raise is handled
        exactly like an asynchronous one.
        """
        logger.debug(f"Dedup: executing work for key '{cache_key}'")
        try:
            return await work()
        except (Exception, asyncio.CancelledError):
            self._discard(cache_key, asyncio.current_task())
            raise

    def _discard(self, cache_key: str, task: "asyncio.Future[Any] | None") -> None:
        """Remove the entry only if it still belongs to the given task."""
        entry = self._entries.get(cache_key)
        if entry is not None and entry.future is task:
            del self._entries[cache_key]

    def _on_work_done(self, cache_key: str, task: "asyncio.Future[Any]") -> None:
        """Drop the entry of failed or cancelled work and record the failure.

        Also covers work cancelled before it started running, which never
        reaches the except clause of ``_run``.
        """
        if task.cancelled():
            error: BaseException = asyncio.CancelledError()
        else:
            exception = task.exception()
            if exception is None:
                return
            error = exception

        self._discard(cache_key, task)
        self._metrics.record_work_error(cache_key, error)
        logger.debug(f"Dedup: work failed for key '{cache_key}', entry removed: {error!r}")

    async def execute_or_throw(
        self,
        key: str,
        work: Callable[[], Awaitable[T]],
        ttl: float | None = None,
    ) -> T:
        """Execute work once per live key and return the bare result."""
        outcome = await self.execute(key, work, ttl)
        return outcome.result

    def create_deduplication_function(
        self,
        key_generator: Callable[..., str],
        ttl: float | None = None,
    ) -> Callable[..., Awaitable[DeduplicationOutcome[Any]]]:
        """Create ``async (work, *args)`` that derives the key from args.

        Example:
            ```python
            dedup_rates = cache.create_deduplication_function(args_only_key)
            outcome = await dedup_rates(lambda: fetch_rates("CA", 25), "CA", 25)
            ```
        """
        if ttl is not None:
            validate_ttl(ttl)

        async def run(work: Callable[[], Awaitable[Any]], *args: Any) -> DeduplicationOutcome[Any]:
            return await self.execute(key_generator(*args), work, ttl)

        return run

    def create_deduplication_function_or_throw(
        self,
        key_generator: Callable[..., str],
        ttl: float | None = None,
    ) -> Callable[..., Awaitable[Any]]:
        """Like create_deduplication_function, returning bare results."""
        if ttl is not None:
            validate_ttl(ttl)

        async def run(work: Callable[[], Awaitable[Any]], *args: Any) -> Any:
            return await self.execute_or_throw(key_generator(*args), work, ttl)

        return run

    # ========== Eviction ==========

    def _evict(self, cache_key: str, reason: str) -> None:
        """Remove an entry without cancelling its work."""
        if self._entries.pop(cache_key, None) is not None:
            self._evictions += 1
            self._metrics.record_eviction(cache_key, reason)

    def _make_room(self, now: float) -> None:
        """Keep the cache strictly below capacity before an insert."""
        if len(self._entries) < self._config.max_cache_size:
            return

        self.sweep_expired(now)

        # Full of live entries: evict by creation order (dict insertion order)
        while len(self._entries) >= self._config.max_cache_size:
            oldest_key = next(iter(self._entries))
            logger.debug(f"Dedup: cache full, evicting oldest live entry '{oldest_key}'")
            self._evict(oldest_key, EVICTION_REASON_CAPACITY)

    def sweep_expired(self, now: float | None = None) -> int:
        """Remove every expired entry.

        Returns:
            Number of entries removed
        """
        now = self._clock() if now is None else now
        expired_keys = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired_keys:
            self._evict(key, EVICTION_REASON_EXPIRED)
        if expired_keys:
            logger.debug(f"Dedup: swept {len(expired_keys)} expired entries")
        return len(expired_keys)

    async def _sweep_periodically(self) -> None:
        while True:
            await asyncio.sleep(self._config.cleanup_interval)
            self.sweep_expired()

    # ========== Management ==========

    def clear(self) -> int:
        """Drop all entries.

        Running work is not cancelled; callers already attached still get
        its result.

        Returns:
            Number of entries dropped
        """
        count = len(self._entries)
        self._entries.clear()
        return count

    def clear_key(self, key: str) -> bool:
        """Drop one entry.

        Returns:
            True if an entry was removed, False otherwise (empty keys included)
        """
        if not isinstance(key, str) or not key:
            return False
        return self._entries.pop(self.generate_key(key), None) is not None

    def cancel_key(self, key: str) -> bool:
        """Cancel the in-flight work of a key for every attached caller.

        Returns:
            True if running work was cancelled, False if none was running
        """
        cache_key = self.generate_key(key)
        entry = self._entries.get(cache_key)
        if entry is None or not entry.in_flight:
            return False
        logger.debug(f"Dedup: cancelling in-flight work for key '{cache_key}'")
        del self._entries[cache_key]
        entry.future.cancel()
        return True

    def get_keys(self) -> list[str]:
        """Return the generated keys currently held."""
        return list(self._entries)

    def get_statistics(self) -> CacheStatistics:
        """Return a statistics snapshot."""
        size = len(self._entries)
        total_attaches = sum(entry.attach_count for entry in self._entries.values())
        return CacheStatistics(
            size=size,
            max_size=self._config.max_cache_size,
            hit_rate=(total_attaches - size) / total_attaches if total_attaches > 0 else 0.0,
            average_attach_count=total_attaches / size if size > 0 else 0.0,
            in_flight=sum(1 for entry in self._entries.values() if entry.in_flight),
            evictions=self._evictions,
            total_requests=self._total_requests,
        )

    # ========== Lifecycle ==========

    def start(self) -> None:
        """Start the periodic sweep on the running event loop.

        Raises:
            RuntimeError: If called without a running event loop
        """
        if self._closed:
            return
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_periodically())

    async def close(self) -> None:
        """Stop the periodic sweep and drop all entries."""
        self._closed = True
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None
        self.clear()

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aenter__(self) -> "DeduplicationCache":
        self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
