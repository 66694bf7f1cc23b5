"""mortgage-resilience: retry and single-flight deduplication for async services.

Resilience and caching layer shared by the request-handling paths of the
mortgage platform (rate lookups, affordability computations, AI calls).

Basic usage:
    ```python
    from mortgage_resilience import RetryPresets, create_resilience_services

    services = create_resilience_services()

    async def get_rates(state: str, term: int) -> list[dict]:
        # Deduplication outside, retry inside
        return await services.execute(
            f"rates:{state}:{term}",
            lambda: rates_provider.fetch(state, term),
            policy=RetryPresets.STANDARD,
        )
    ```

With OpenTelemetry metrics:
    ```python
    from mortgage_resilience import OpenTelemetryMetrics, create_resilience_services

    services = create_resilience_services(metrics=OpenTelemetryMetrics())
    ```
"""

__version__ = "0.1.0"

# Circuit breakers
from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerMetrics,
    CircuitBreakerRegistry,
    CircuitState,
)

# Validation
from .core.validators import ValidationError

# Decorators
from .decorator import deduplicated, retryable

# Deduplication
from .deduplication import (
    CacheStatistics,
    DeduplicationCache,
    DeduplicationConfig,
    DeduplicationEntry,
    DeduplicationOutcome,
)

# Exceptions
from .exceptions import CircuitOpenError, DeduplicationError, ResilienceError

# Key derivation
from .key_builder import (
    DefaultKeyBuilder,
    args_only_key,
    fields_key,
    function_and_args_key,
    hash_key,
)

# Metrics
from .metrics import (
    CompositeMetrics,
    InMemoryMetrics,
    KeyStats,
    LoggingMetrics,
    NoOpMetrics,
    OpenTelemetryMetrics,
    ResilienceStats,
)

# Protocols (for extensibility)
from .protocols import KeyBuilder, ResilienceMetrics

# Retry
from .retry import RetryExecutor, RetryOutcome, RetryPolicy, RetryPresets

# Service container
from .services import ResilienceServices, create_resilience_services

__all__ = [
    # Retry
    "RetryExecutor",
    "RetryOutcome",
    "RetryPolicy",
    "RetryPresets",
    # Deduplication
    "CacheStatistics",
    "DeduplicationCache",
    "DeduplicationConfig",
    "DeduplicationEntry",
    "DeduplicationOutcome",
    # Circuit breakers
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerMetrics",
    "CircuitBreakerRegistry",
    "CircuitState",
    # Key derivation
    "DefaultKeyBuilder",
    "args_only_key",
    "fields_key",
    "function_and_args_key",
    "hash_key",
    # Decorators
    "deduplicated",
    "retryable",
    # Service container
    "ResilienceServices",
    "create_resilience_services",
    # Metrics
    "CompositeMetrics",
    "InMemoryMetrics",
    "KeyStats",
    "LoggingMetrics",
    "NoOpMetrics",
    "OpenTelemetryMetrics",
    "ResilienceStats",
    # Exceptions
    "CircuitOpenError",
    "DeduplicationError",
    "ResilienceError",
    "ValidationError",
    # Protocols
    "KeyBuilder",
    "ResilienceMetrics",
]
