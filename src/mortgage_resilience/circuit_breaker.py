"""
Circuit breakers for external service calls.

One breaker per named service (AI rate lookup, affordability engine, ...).
A breaker opens after consecutive failures, rejects calls while open, and
lets a limited number of trial calls through once the recovery timeout has
elapsed.
"""

import dataclasses
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, TypeVar

from .core.constants import (
    DEFAULT_FAILURE_THRESHOLD,
    DEFAULT_HALF_OPEN_MAX_CALLS,
    DEFAULT_RECOVERY_TIMEOUT_SECONDS,
)
from .core.validators import validate_circuit_breaker_parameters, validate_service_name
from .exceptions import CircuitOpenError
from .metrics import NoOpMetrics
from .protocols import ResilienceMetrics

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker state."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Circuit breaker configuration.

    Attributes:
        failure_threshold: Consecutive failures that open the circuit
        recovery_timeout: Seconds the circuit stays open before trial calls
        half_open_max_calls: Trial calls admitted while half-open
    """

    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    recovery_timeout: float = DEFAULT_RECOVERY_TIMEOUT_SECONDS
    half_open_max_calls: int = DEFAULT_HALF_OPEN_MAX_CALLS

    def __post_init__(self) -> None:
        validate_circuit_breaker_parameters(
            failure_threshold=self.failure_threshold,
            recovery_timeout=self.recovery_timeout,
            half_open_max_calls=self.half_open_max_calls,
        )


@dataclass
class CircuitBreakerMetrics:
    """Call statistics of one protected service."""

    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    state: CircuitState = CircuitState.CLOSED
    last_failure_time: datetime | None = None
    last_success_time: datetime | None = None
    failure_rate: float = 0.0
    average_response_time: float = 0.0
    consecutive_failures: int = 0


class CircuitBreaker:
    """State machine for a single service.

    CLOSED -> OPEN after ``failure_threshold`` consecutive failures.
    OPEN -> HALF_OPEN once ``recovery_timeout`` has elapsed since the last failure.
    HALF_OPEN admits at most ``half_open_max_calls`` trial calls; a success
    closes the circuit, a failure re-opens it.
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure_time = 0.0
        self._half_open_calls = 0

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    def is_available(self) -> bool:
        """Return whether a call may proceed, admitting a trial call if half-open."""
        if self._state is CircuitState.CLOSED:
            return True

        if self._state is CircuitState.OPEN:
            if self._clock() - self._last_failure_time > self._config.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
                self._half_open_calls = 1
                return True
            return False

        if self._half_open_calls >= self._config.half_open_max_calls:
            return False
        self._half_open_calls += 1
        return True

    def record_success(self) -> None:
        self._failures = 0
        self._half_open_calls = 0
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self._failures += 1
        self._last_failure_time = self._clock()
        if self._state is CircuitState.HALF_OPEN or self._failures >= self._config.failure_threshold:
            self._state = CircuitState.OPEN

    def release_trial(self) -> None:
        """Give back a half-open trial slot taken by a call that never finished."""
        if self._state is CircuitState.HALF_OPEN and self._half_open_calls > 0:
            self._half_open_calls -= 1

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._half_open_calls = 0
        self._last_failure_time = 0.0


class CircuitBreakerRegistry:
    """Per-service circuit breakers with call metrics.

    Example:
        ```python
        breakers = CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=3))

        rates = await breakers.execute(
            "rates-provider",
            lambda: provider.fetch_rates("CA"),
            fallback=lambda: cached_rates("CA"),
        )
        ```
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        *,
        metrics: ResilienceMetrics | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or CircuitBreakerConfig()
        self._metrics_sink: ResilienceMetrics = metrics or NoOpMetrics()
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._metrics: dict[str, CircuitBreakerMetrics] = {}

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    async def execute(
        self,
        service_name: str,
        operation: Callable[[], Awaitable[T]],
        fallback: Callable[[], Awaitable[T]] | None = None,
    ) -> T:
        """Run an operation behind the service's circuit breaker.

        Args:
            service_name: Protected service name
            operation: Zero-argument callable returning an awaitable
            fallback: Awaited instead of raising when the circuit rejects the
                call or the operation fails

        Returns:
            Operation result, or fallback result

        Raises:
            CircuitOpenError: If the circuit rejects the call and no fallback is given
            Exception: Operation error when no fallback is given
        """
        breaker = self._get_or_create(service_name)

        previous = breaker.state
        available = breaker.is_available()
        self._track_transition(service_name, previous, breaker.state)
        if not available:
            logger.debug(f"Circuit for '{service_name}' is open, rejecting call")
            if fallback is not None:
                return await fallback()
            raise CircuitOpenError(service_name)

        start_time = self._clock()
        try:
            result = await operation()
        except Exception:
            previous = breaker.state
            breaker.record_failure()
            self._update_metrics(service_name, False, self._clock() - start_time)
            self._track_transition(service_name, previous, breaker.state)
            if fallback is not None:
                return await fallback()
            raise
        except BaseException:
            # Cancelled: neither a success nor a failure of the service
            breaker.release_trial()
            raise

        previous = breaker.state
        breaker.record_success()
        self._update_metrics(service_name, True, self._clock() - start_time)
        self._track_transition(service_name, previous, breaker.state)
        return result

    def _get_or_create(self, service_name: str) -> CircuitBreaker:
        validate_service_name(service_name)
        breaker = self._breakers.get(service_name)
        if breaker is None:
            breaker = CircuitBreaker(self._config, self._clock)
            self._breakers[service_name] = breaker
            self._metrics[service_name] = CircuitBreakerMetrics()
        return breaker

    def _track_transition(self, service_name: str, previous: CircuitState, current: CircuitState) -> None:
        if previous is current:
            return
        self._metrics[service_name].state = current
        self._metrics_sink.record_circuit_state(service_name, current.value)
        if current is CircuitState.OPEN:
            logger.warning(f"Circuit for '{service_name}' opened")
        else:
            logger.info(f"Circuit for '{service_name}' moved from {previous.value} to {current.value}")

    def _update_metrics(self, service_name: str, success: bool, response_time: float) -> None:
        metrics = self._metrics[service_name]
        metrics.total_calls += 1
        metrics.state = self._breakers[service_name].state
        now = datetime.now(timezone.utc)

        if success:
            metrics.successful_calls += 1
            metrics.consecutive_failures = 0
            metrics.last_success_time = now
        else:
            metrics.failed_calls += 1
            metrics.consecutive_failures += 1
            metrics.last_failure_time = now

        metrics.failure_rate = metrics.failed_calls / metrics.total_calls
        total_response_time = metrics.average_response_time * (metrics.total_calls - 1) + response_time
        metrics.average_response_time = total_response_time / metrics.total_calls

    def get_metrics(self, service_name: str) -> CircuitBreakerMetrics | None:
        """Return a copy of a service's metrics, or None if unknown."""
        metrics = self._metrics.get(service_name)
        return dataclasses.replace(metrics) if metrics is not None else None

    def get_all_metrics(self) -> dict[str, CircuitBreakerMetrics]:
        return {name: dataclasses.replace(metrics) for name, metrics in self._metrics.items()}

    def get_state(self, service_name: str) -> CircuitState | None:
        breaker = self._breakers.get(service_name)
        return breaker.state if breaker is not None else None

    def reset(self, service_name: str) -> None:
        """Close a service's circuit and clear its metrics."""
        breaker = self._breakers.get(service_name)
        if breaker is not None:
            breaker.reset()
            self._metrics[service_name] = CircuitBreakerMetrics()

    def reset_all(self) -> None:
        for service_name in self._breakers:
            self.reset(service_name)

    def get_health_status(self) -> dict[str, dict[str, Any]]:
        """Return ``{service: {"state": ..., "healthy": ...}}``; healthy means not open."""
        return {
            name: {"state": breaker.state.value, "healthy": breaker.state is not CircuitState.OPEN}
            for name, breaker in self._breakers.items()
        }
