"""
Retry execution with exponential backoff and jitter.

A RetryPolicy is an immutable, validated value object usually created once
(often from a preset) and shared by many executions. RetryExecutor runs a
unit of async work under a policy and reports a structured RetryOutcome
instead of relying on propagated exceptions.
"""

import asyncio
import dataclasses
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, ClassVar, Generic, TypeVar

from .core.constants import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_BASE_DELAY_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DELAY_SECONDS,
    ERROR_UNKNOWN_PRESET,
    JITTER_RATIO,
)
from .core.validators import ValidationError, validate_known_options, validate_retry_parameters
from .metrics import NoOpMetrics
from .protocols import ResilienceMetrics

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryPredicate = Callable[[Exception], bool]


@dataclass(frozen=True)
class RetryPolicy:
    """Immutable retry configuration.

    Attributes:
        max_attempts: Total attempts including the first
        base_delay: Delay before the first retry in seconds
        max_delay: Hard ceiling on any computed delay in seconds
        backoff_multiplier: Exponential growth factor between retries
        jitter: Randomize each delay by +/-10%
        retry_predicate: Returns False for errors that must not be retried;
            when None every error is retryable

    Raises:
        ValidationError: On construction, if any value is out of range
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = DEFAULT_BASE_DELAY_SECONDS
    max_delay: float = DEFAULT_MAX_DELAY_SECONDS
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    jitter: bool = True
    retry_predicate: RetryPredicate | None = None

    def __post_init__(self) -> None:
        validate_retry_parameters(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            backoff_multiplier=self.backoff_multiplier,
            jitter=self.jitter,
            retry_predicate=self.retry_predicate,
        )

    def merge(self, **overrides: Any) -> "RetryPolicy":
        """Return a new validated policy with the given fields replaced.

        Raises:
            ValidationError: If an override name is unknown or a value invalid
        """
        if not overrides:
            return self
        validate_known_options("retry policy", overrides, (f.name for f in dataclasses.fields(self)))
        return dataclasses.replace(self, **overrides)

    def is_retryable(self, error: Exception) -> bool:
        """Evaluate the retry predicate for an error."""
        if self.retry_predicate is None:
            return True
        return bool(self.retry_predicate(error))

    def compute_delay(self, attempt: int, rng: random.Random | None = None) -> float:
        """Compute the backoff delay after a failed attempt.

        delay = min(base_delay * backoff_multiplier ** (attempt - 1), max_delay),
        then +/-10% jitter when enabled, clamped to [0, max_delay].

        Args:
            attempt: The attempt that just failed (1-based)
            rng: Random source for jitter (defaults to the random module)

        Returns:
            Delay in seconds
        """
        try:
            delay = self.base_delay * self.backoff_multiplier ** (attempt - 1)
        except OverflowError:
            delay = self.max_delay
        delay = min(delay, self.max_delay)

        if self.jitter:
            jitter_range = delay * JITTER_RATIO
            delay += (rng or random).uniform(-jitter_range, jitter_range)

        return max(0.0, min(delay, self.max_delay))


class RetryPresets:
    """Named, conventional retry policies.

    - FAST: transient errors on cheap calls
    - STANDARD: most remote operations
    - SLOW: expensive operations
    - AGGRESSIVE: critical operations that must eventually succeed
    """

    FAST: ClassVar[RetryPolicy] = RetryPolicy(max_attempts=3, base_delay=0.1, max_delay=1.0)
    STANDARD: ClassVar[RetryPolicy] = RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=10.0)
    SLOW: ClassVar[RetryPolicy] = RetryPolicy(max_attempts=5, base_delay=2.0, max_delay=30.0)
    AGGRESSIVE: ClassVar[RetryPolicy] = RetryPolicy(
        max_attempts=10, base_delay=0.5, max_delay=5.0, backoff_multiplier=1.5
    )

    @classmethod
    def names(cls) -> list[str]:
        """Return the available preset names."""
        return ["fast", "standard", "slow", "aggressive"]

    @classmethod
    def get(cls, name: str) -> RetryPolicy:
        """Resolve a preset by case-insensitive name.

        Raises:
            ValidationError: If the preset does not exist
        """
        normalized = name.strip().lower() if isinstance(name, str) else ""
        if normalized not in cls.names():
            raise ValidationError(ERROR_UNKNOWN_PRESET.format(name=name, choices=", ".join(cls.names())))
        return getattr(cls, normalized.upper())


@dataclass(frozen=True)
class RetryOutcome(Generic[T]):
    """Result of one RetryExecutor.execute call.

    Attributes:
        succeeded: Whether the work eventually succeeded
        value: Work result, present iff succeeded
        last_error: Last observed error, present iff not succeeded
        attempts_used: Attempts actually made (1..max_attempts)
        elapsed_time: Seconds from the first attempt to the final resolution
    """

    succeeded: bool
    value: T | None = None
    last_error: Exception | None = None
    attempts_used: int = 1
    elapsed_time: float = 0.0


class RetryExecutor:
    """Runs async work with bounded exponential backoff.

    Holds no mutable shared state beyond its default policy, so concurrent
    independent executions never interact.

    Example:
        ```python
        executor = RetryExecutor(RetryPresets.STANDARD)

        outcome = await executor.execute(lambda: fetch_rates("CA"))
        if outcome.succeeded:
            return outcome.value

        # Validation errors are never worth retrying
        rates = await executor.execute_or_throw(
            lambda: fetch_rates("CA"),
            retry_predicate=lambda e: not isinstance(e, ValueError),
        )
        ```
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        metrics: ResilienceMetrics | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            policy: Default policy (RetryPolicy() if omitted)
            metrics: Metrics collector (NoOpMetrics if omitted)
            sleep: Non-blocking sleep used between attempts
            rng: Random source used for jitter
        """
        self._policy = policy or RetryPolicy()
        self._metrics: ResilienceMetrics = metrics or NoOpMetrics()
        self._sleep = sleep
        self._rng = rng

    @property
    def policy(self) -> RetryPolicy:
        """Default policy of this executor."""
        return self._policy

    def resolve_policy(self, policy: RetryPolicy | None = None, **overrides: Any) -> RetryPolicy:
        """Merge an optional policy and field overrides over the default policy."""
        return (policy or self._policy).merge(**overrides)

    async def execute(
        self,
        work: Callable[[], Awaitable[T]],
        policy: RetryPolicy | None = None,
        **overrides: Any,
    ) -> RetryOutcome[T]:
        """Execute work with retries and return a structured outcome.

        Ordinary exceptions from work never propagate; cancellation does.

        Args:
            work: Zero-argument callable returning an awaitable
            policy: Policy replacing the executor default for this call
            **overrides: Individual policy fields to override

        Returns:
            RetryOutcome describing the execution

        Raises:
            ValidationError: If the overrides are invalid (before any attempt)
        """
        resolved = self.resolve_policy(policy, **overrides)
        start_time = time.monotonic()
        attempt = 1

        while True:
            try:
                value = await work()
            except Exception as e:
                if not resolved.is_retryable(e):
                    logger.debug(f"Attempt {attempt} failed with non-retryable error: {e!r}")
                    return self._failure(e, attempt, start_time)

                if attempt >= resolved.max_attempts:
                    logger.warning(f"Retries exhausted after {attempt} attempt(s): {e!r}")
                    return self._failure(e, attempt, start_time)

                delay = resolved.compute_delay(attempt, self._rng)
                logger.debug(f"Attempt {attempt}/{resolved.max_attempts} failed: {e!r}; retrying in {delay:.3f}s")
                self._metrics.record_retry(attempt, delay, e)
                await self._sleep(delay)
                attempt += 1
                continue

            elapsed = time.monotonic() - start_time
            self._metrics.record_retry_outcome(True, attempt, elapsed)
            return RetryOutcome(succeeded=True, value=value, attempts_used=attempt, elapsed_time=elapsed)

    def _failure(self, error: Exception, attempt: int, start_time: float) -> RetryOutcome[Any]:
        elapsed = time.monotonic() - start_time
        self._metrics.record_retry_outcome(False, attempt, elapsed)
        return RetryOutcome(succeeded=False, last_error=error, attempts_used=attempt, elapsed_time=elapsed)

    async def execute_or_throw(
        self,
        work: Callable[[], Awaitable[T]],
        policy: RetryPolicy | None = None,
        **overrides: Any,
    ) -> T:
        """Execute work with retries, re-raising the last error on failure."""
        outcome = await self.execute(work, policy, **overrides)
        if outcome.succeeded:
            return outcome.value  # type: ignore[return-value]
        raise outcome.last_error  # type: ignore[misc]

    async def execute_with_fallback(
        self,
        work: Callable[[], Awaitable[T]],
        fallback: Callable[[], Awaitable[T]],
        policy: RetryPolicy | None = None,
        **overrides: Any,
    ) -> T:
        """Execute work with retries, awaiting fallback() when they are exhausted."""
        outcome = await self.execute(work, policy, **overrides)
        if outcome.succeeded:
            return outcome.value  # type: ignore[return-value]
        logger.debug(f"Using fallback after {outcome.attempts_used} failed attempt(s)")
        return await fallback()

    def create_retry_function(
        self,
        work: Callable[[], Awaitable[T]],
        policy: RetryPolicy | None = None,
        **overrides: Any,
    ) -> Callable[[], Awaitable[RetryOutcome[T]]]:
        """Bind work and policy into a reusable coroutine function returning outcomes."""
        resolved = self.resolve_policy(policy, **overrides)

        async def run() -> RetryOutcome[T]:
            return await self.execute(work, resolved)

        return run

    def create_retry_function_or_throw(
        self,
        work: Callable[[], Awaitable[T]],
        policy: RetryPolicy | None = None,
        **overrides: Any,
    ) -> Callable[[], Awaitable[T]]:
        """Bind work and policy into a reusable coroutine function that raises on failure."""
        resolved = self.resolve_policy(policy, **overrides)

        async def run() -> T:
            return await self.execute_or_throw(work, resolved)

        return run

    def create_retry_function_with_fallback(
        self,
        work: Callable[[], Awaitable[T]],
        fallback: Callable[[], Awaitable[T]],
        policy: RetryPolicy | None = None,
        **overrides: Any,
    ) -> Callable[[], Awaitable[T]]:
        """Bind work, fallback and policy into a reusable coroutine function."""
        resolved = self.resolve_policy(policy, **overrides)

        async def run() -> T:
            return await self.execute_with_fallback(work, fallback, resolved)

        return run
