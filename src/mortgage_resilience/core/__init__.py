"""
Core configuration scaffolding.

Shared constants and construction-time validators used by the retry
executor, the deduplication cache and the circuit breakers.
"""

from .validators import (
    ValidationError,
    validate_circuit_breaker_parameters,
    validate_deduplication_parameters,
    validate_known_options,
    validate_retry_parameters,
    validate_ttl,
)

__all__ = [
    "ValidationError",
    "validate_circuit_breaker_parameters",
    "validate_deduplication_parameters",
    "validate_known_options",
    "validate_retry_parameters",
    "validate_ttl",
]
