"""Protocols for library extensibility.

Defines interfaces that allow custom implementations of:
- KeyBuilder: Deduplication key generation for decorated functions
- ResilienceMetrics: Metrics collection for retry, deduplication and circuit events
"""

from collections.abc import Callable
from typing import Any, Protocol


class KeyBuilder(Protocol):
    """Protocol for deduplication key builders.

    Implement this protocol to customize how keys are derived from a
    decorated function and its arguments.

    Example:
        ```python
        class RatesKeyBuilder:
            def build_key(self, func, args, kwargs) -> str:
                return f"rates:{kwargs['state']}:{kwargs['term']}"
        ```
    """

    def build_key(
        self,
        func: Callable[..., Any],
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
    ) -> str:
        """Build a deduplication key.

        Args:
            func: Decorated function
            args: Positional arguments
            kwargs: Keyword arguments

        Returns:
            Key as string
        """
        ...


class ResilienceMetrics(Protocol):
    """Protocol for resilience metrics collectors.

    Implement this protocol to integrate with custom monitoring systems.

    Example:
        ```python
        class PrometheusMetrics:
            def record_dedup_hit(self, key: str) -> None:
                dedup_hits_total.inc()
            ...
        ```
    """

    def record_dedup_hit(self, key: str) -> None:
        """Record a caller attaching to an existing entry.

        Args:
            key: Deduplication key (after key generation)
        """
        ...

    def record_dedup_miss(self, key: str) -> None:
        """Record a caller starting new work.

        Args:
            key: Deduplication key (after key generation)
        """
        ...

    def record_eviction(self, key: str, reason: str) -> None:
        """Record an entry leaving the cache.

        Args:
            key: Deduplication key
            reason: "expired" or "capacity"
        """
        ...

    def record_work_error(self, key: str, error: BaseException) -> None:
        """Record deduplicated work failing.

        Args:
            key: Deduplication key
            error: Exception raised by the work
        """
        ...

    def record_retry(self, attempt: int, delay: float, error: Exception) -> None:
        """Record a retry being scheduled.

        Args:
            attempt: Attempt number that just failed (1-based)
            delay: Backoff delay before the next attempt in seconds
            error: Exception that triggered the retry
        """
        ...

    def record_retry_outcome(self, succeeded: bool, attempts: int, elapsed: float) -> None:
        """Record the final outcome of a retry execution.

        Args:
            succeeded: Whether the work eventually succeeded
            attempts: Attempts used
            elapsed: Total elapsed time in seconds
        """
        ...

    def record_circuit_state(self, service_name: str, state: str) -> None:
        """Record a circuit breaker state transition.

        Args:
            service_name: Protected service name
            state: New state value ("closed", "open", "half_open")
        """
        ...
