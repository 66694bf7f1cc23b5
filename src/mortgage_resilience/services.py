"""
Service container for the resilience layer.

Builds one RetryExecutor, one DeduplicationCache and one
CircuitBreakerRegistry at process startup and hands them to collaborators
explicitly, instead of relying on module-level singletons.
"""

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from .circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from .deduplication import DeduplicationCache, DeduplicationConfig
from .metrics import NoOpMetrics
from .protocols import ResilienceMetrics
from .retry import RetryExecutor, RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ResilienceServices:
    """Resilience components sharing one metrics sink.

    Attributes:
        retry: Retry executor
        deduplication: Single-flight cache
        circuit_breakers: Per-service circuit breakers
        metrics: Metrics collector shared by all components
    """

    retry: RetryExecutor
    deduplication: DeduplicationCache
    circuit_breakers: CircuitBreakerRegistry
    metrics: ResilienceMetrics

    async def execute(
        self,
        key: str,
        work: Callable[[], Awaitable[T]],
        *,
        policy: RetryPolicy | None = None,
        service_name: str | None = None,
        ttl: float | None = None,
        **overrides: Any,
    ) -> T:
        """Run work deduplicated on the outside and retried on the inside.

        Concurrent callers for the same key share one execution, and that
        single execution is the one being retried. With ``service_name``,
        the retry loop runs behind that service's circuit breaker.

        Args:
            key: Business key, e.g. "rates:CA:25:fixed:500000:50000"
            work: Zero-argument callable returning an awaitable
            policy: Retry policy for this call (executor default if omitted)
            service_name: Circuit breaker to guard the retried work
            ttl: Deduplication lifetime override
            **overrides: Individual retry policy fields to override

        Returns:
            Work result

        Raises:
            CircuitOpenError: If the service circuit rejects the call
            Exception: The last work error when retries are exhausted
        """
        resolved = self.retry.resolve_policy(policy, **overrides)

        async def retried() -> T:
            return await self.retry.execute_or_throw(work, resolved)

        if service_name is None:
            return await self.deduplication.execute_or_throw(key, retried, ttl)

        async def guarded() -> T:
            return await self.circuit_breakers.execute(service_name, retried)

        return await self.deduplication.execute_or_throw(key, guarded, ttl)

    async def aclose(self) -> None:
        """Release background resources (the deduplication sweep)."""
        await self.deduplication.close()

    async def __aenter__(self) -> "ResilienceServices":
        self.deduplication.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()


def create_resilience_services(
    *,
    retry_policy: RetryPolicy | None = None,
    deduplication_config: DeduplicationConfig | None = None,
    circuit_breaker_config: CircuitBreakerConfig | None = None,
    metrics: ResilienceMetrics | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> ResilienceServices:
    """Create the resilience components once, at startup.

    Args:
        retry_policy: Default retry policy
        deduplication_config: Deduplication cache configuration
        circuit_breaker_config: Circuit breaker configuration
        metrics: Metrics collector shared by all components
        clock: Monotonic clock for the cache and the circuit breakers

    Returns:
        Configured ResilienceServices
    """
    sink: ResilienceMetrics = metrics or NoOpMetrics()
    services = ResilienceServices(
        retry=RetryExecutor(retry_policy, metrics=sink),
        deduplication=DeduplicationCache(deduplication_config, metrics=sink, clock=clock),
        circuit_breakers=CircuitBreakerRegistry(circuit_breaker_config, metrics=sink, clock=clock),
        metrics=sink,
    )
    logger.debug("Created resilience services")
    return services
