"""
Parameter validation utilities.

Configuration errors are rejected synchronously when a policy or config
object is built, never deferred to the moment work is executed.
"""

from collections.abc import Callable, Iterable
from typing import Any

from .constants import (
    ERROR_BOOL_TYPE_INVALID,
    ERROR_CALLABLE_INVALID,
    ERROR_INT_TYPE_INVALID,
    ERROR_KEY_PREFIX_EMPTY,
    ERROR_NUMBER_TYPE_INVALID,
    ERROR_SERVICE_NAME_EMPTY,
    ERROR_UNKNOWN_OVERRIDE,
    ERROR_VALUE_TOO_SMALL,
    MIN_BACKOFF_MULTIPLIER,
    MIN_BASE_DELAY_SECONDS,
    MIN_CLEANUP_INTERVAL_SECONDS,
    MIN_DEDUP_TTL_SECONDS,
    MIN_FAILURE_THRESHOLD,
    MIN_HALF_OPEN_MAX_CALLS,
    MIN_MAX_ATTEMPTS,
    MIN_MAX_CACHE_SIZE,
    MIN_MAX_DELAY_SECONDS,
    MIN_RECOVERY_TIMEOUT_SECONDS,
)


class ValidationError(ValueError):
    """Parameter validation error.

    Raised when resilience parameters fail validation checks.
    """

    pass


def validate_int_at_least(name: str, value: Any, minimum: int) -> None:
    """Validate an integer parameter against a lower bound.

    Args:
        name: Parameter name used in the error message
        value: Value to validate
        minimum: Smallest accepted value

    Raises:
        ValidationError: If value is not an int or is below minimum
    """
    # Check for bool first since bool is subclass of int in Python
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(ERROR_INT_TYPE_INVALID.format(name=name, type_name=type(value).__name__))
    _validate_minimum(name, value, minimum)


def validate_number_at_least(name: str, value: Any, minimum: float) -> None:
    """Validate a numeric (int or float) parameter against a lower bound.

    Args:
        name: Parameter name used in the error message
        value: Value to validate
        minimum: Smallest accepted value

    Raises:
        ValidationError: If value is not numeric or is below minimum
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(ERROR_NUMBER_TYPE_INVALID.format(name=name, type_name=type(value).__name__))
    # NaN compares false against everything, reject it explicitly
    if value != value:
        raise ValidationError(ERROR_VALUE_TOO_SMALL.format(name=name, minimum=minimum, value=value))
    _validate_minimum(name, value, minimum)


def validate_bool(name: str, value: Any) -> None:
    """Validate a boolean flag."""
    if not isinstance(value, bool):
        raise ValidationError(ERROR_BOOL_TYPE_INVALID.format(name=name, type_name=type(value).__name__))


def validate_optional_callable(name: str, value: Callable[..., Any] | None) -> None:
    """Validate an optional callable (predicate, key generator)."""
    if value is not None and not callable(value):
        raise ValidationError(ERROR_CALLABLE_INVALID.format(name=name, type_name=type(value).__name__))


def validate_known_options(target: str, given: Iterable[str], allowed: Iterable[str]) -> None:
    """Reject override names that do not exist on the target config.

    Args:
        target: Human readable name of the config being overridden
        given: Names supplied by the caller
        allowed: Names accepted by the config

    Raises:
        ValidationError: If any name is unknown
    """
    unknown = sorted(set(given) - set(allowed))
    if unknown:
        raise ValidationError(ERROR_UNKNOWN_OVERRIDE.format(target=target, names=", ".join(unknown)))


def validate_retry_parameters(
    max_attempts: int,
    base_delay: float,
    max_delay: float,
    backoff_multiplier: float,
    jitter: bool,
    retry_predicate: Callable[[Exception], bool] | None = None,
) -> None:
    """Validate all retry policy parameters.

    Args:
        max_attempts: Total attempts including the first (>= 1)
        base_delay: Delay before the first retry in seconds (>= 0.1)
        max_delay: Ceiling for any computed delay in seconds (>= 1.0)
        backoff_multiplier: Exponential growth factor (>= 1)
        jitter: Whether to randomize delays by +/-10%
        retry_predicate: Optional retryability predicate

    Raises:
        ValidationError: If any parameter is invalid

    Example:
        ```python
        validate_retry_parameters(3, 0.1, 1.0, 2.0, True)  # valid
        validate_retry_parameters(0, 0.1, 1.0, 2.0, True)  # raises ValidationError
        ```
    """
    validate_int_at_least("max_attempts", max_attempts, MIN_MAX_ATTEMPTS)
    validate_number_at_least("base_delay", base_delay, MIN_BASE_DELAY_SECONDS)
    validate_number_at_least("max_delay", max_delay, MIN_MAX_DELAY_SECONDS)
    validate_number_at_least("backoff_multiplier", backoff_multiplier, MIN_BACKOFF_MULTIPLIER)
    validate_bool("jitter", jitter)
    validate_optional_callable("retry_predicate", retry_predicate)


def validate_deduplication_parameters(
    ttl: float,
    max_cache_size: int,
    cleanup_interval: float,
    key_generator: Callable[[str], str] | None = None,
) -> None:
    """Validate deduplication cache parameters.

    Args:
        ttl: Entry lifetime in seconds (>= 1.0)
        max_cache_size: Hard cap on entries (>= 100)
        cleanup_interval: Seconds between background sweeps (>= 1.0)
        key_generator: Optional custom key transformation

    Raises:
        ValidationError: If any parameter is invalid
    """
    validate_ttl(ttl)
    validate_int_at_least("max_cache_size", max_cache_size, MIN_MAX_CACHE_SIZE)
    validate_number_at_least("cleanup_interval", cleanup_interval, MIN_CLEANUP_INTERVAL_SECONDS)
    validate_optional_callable("key_generator", key_generator)


def validate_ttl(ttl: float) -> None:
    """Validate a deduplication TTL (also used for per-call overrides)."""
    validate_number_at_least("ttl", ttl, MIN_DEDUP_TTL_SECONDS)


def validate_circuit_breaker_parameters(
    failure_threshold: int,
    recovery_timeout: float,
    half_open_max_calls: int,
) -> None:
    """Validate circuit breaker parameters.

    Raises:
        ValidationError: If any parameter is invalid
    """
    validate_int_at_least("failure_threshold", failure_threshold, MIN_FAILURE_THRESHOLD)
    validate_number_at_least("recovery_timeout", recovery_timeout, MIN_RECOVERY_TIMEOUT_SECONDS)
    validate_int_at_least("half_open_max_calls", half_open_max_calls, MIN_HALF_OPEN_MAX_CALLS)


def validate_service_name(service_name: str) -> None:
    """Validate a circuit breaker service name."""
    _validate_non_empty_string("service_name", service_name, ERROR_SERVICE_NAME_EMPTY)


def validate_key_prefix(key_prefix: str) -> None:
    """Validate a key builder prefix."""
    _validate_non_empty_string("key_prefix", key_prefix, ERROR_KEY_PREFIX_EMPTY)


def _validate_minimum(name: str, value: float, minimum: float) -> None:
    """Validate that a number is not below its lower bound."""
    if value < minimum:
        raise ValidationError(ERROR_VALUE_TOO_SMALL.format(name=name, minimum=minimum, value=value))


def _validate_non_empty_string(name: str, value: Any, error_message: str) -> None:
    """Validate that a parameter is a non-blank string."""
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be str, got {type(value).__name__}")
    if not value.strip():
        raise ValidationError(error_message)
