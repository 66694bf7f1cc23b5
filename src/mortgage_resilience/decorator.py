"""Async decorators for deduplicated and retried calls."""

import inspect
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import Any, TypeVar

from .deduplication import DeduplicationCache
from .key_builder import DefaultKeyBuilder
from .protocols import KeyBuilder
from .retry import RetryExecutor, RetryPolicy

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])


def _require_coroutine_function(func: Callable[..., Any], decorator_name: str) -> None:
    if not inspect.iscoroutinefunction(func):
        raise TypeError(f"@{decorator_name} only supports async functions, got {func!r}")


def deduplicated(
    cache: DeduplicationCache,
    *,
    key_builder: KeyBuilder | None = None,
    ttl: float | None = None,
) -> Callable[[F], F]:
    """Share one execution between concurrent calls with equal arguments.

    Methods are supported: 'self'/'cls' are excluded from the default key, so
    instances share entries for equal arguments. When instances are not
    interchangeable (per-tenant providers, different credentials), pass
    ``key_builder=DefaultKeyBuilder(include_instance=True)``.

    Args:
        cache: Deduplication cache holding the shared executions
        key_builder: Key builder (DefaultKeyBuilder if omitted)
        ttl: Lifetime override for entries created by this function

    Example:
        ```python
        @deduplicated(services.deduplication, ttl=30)
        async def fetch_rates(state: str, term: int) -> list[dict]:
            return await provider.rates(state, term)


        class TenantRatesProvider:
            @deduplicated(cache, key_builder=DefaultKeyBuilder(include_instance=True))
            async def rates(self, state: str) -> list[dict]:
                return await self.client.rates(state)
        ```
    """
    builder: KeyBuilder = key_builder or DefaultKeyBuilder()

    def decorator(func: F) -> F:
        _require_coroutine_function(func, "deduplicated")

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            key = builder.build_key(func, args, kwargs)
            return await cache.execute_or_throw(key, lambda: func(*args, **kwargs), ttl)

        return wrapper  # type: ignore[return-value]

    return decorator


def retryable(
    executor: RetryExecutor,
    policy: RetryPolicy | None = None,
    **overrides: Any,
) -> Callable[[F], F]:
    """Run every call of an async function through a RetryExecutor.

    The policy is resolved once, at decoration time, so configuration errors
    surface immediately. The last error is re-raised when retries run out.

    Example:
        ```python
        @retryable(services.retry, RetryPresets.FAST)
        async def score_lead(lead_id: str) -> float:
            return await ai_client.score(lead_id)
        ```
    """
    resolved = executor.resolve_policy(policy, **overrides)

    def decorator(func: F) -> F:
        _require_coroutine_function(func, "retryable")

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            return await executor.execute_or_throw(lambda: func(*args, **kwargs), resolved)

        return wrapper  # type: ignore[return-value]

    return decorator
