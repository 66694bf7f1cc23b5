"""
Constants for resilience components.

Defines default values, lower bounds and error message templates used by
the retry executor, the deduplication cache and the circuit breakers.
All durations are expressed in seconds.
"""

# Retry defaults
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_SECONDS = 1.0
DEFAULT_MAX_DELAY_SECONDS = 30.0
DEFAULT_BACKOFF_MULTIPLIER = 2.0
JITTER_RATIO = 0.1  # +/-10% of the computed delay

# Retry lower bounds
MIN_MAX_ATTEMPTS = 1
MIN_BASE_DELAY_SECONDS = 0.1
MIN_MAX_DELAY_SECONDS = 1.0
MIN_BACKOFF_MULTIPLIER = 1.0

# Deduplication defaults
DEFAULT_DEDUP_TTL_SECONDS = 300.0  # 5 minutes
DEFAULT_MAX_CACHE_SIZE = 1000
DEFAULT_CLEANUP_INTERVAL_SECONDS = 60.0

# Deduplication lower bounds
MIN_DEDUP_TTL_SECONDS = 1.0
MIN_MAX_CACHE_SIZE = 100
MIN_CLEANUP_INTERVAL_SECONDS = 1.0

# Circuit breaker defaults
DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_RECOVERY_TIMEOUT_SECONDS = 60.0
DEFAULT_HALF_OPEN_MAX_CALLS = 3

# Circuit breaker lower bounds
MIN_FAILURE_THRESHOLD = 1
MIN_RECOVERY_TIMEOUT_SECONDS = 1.0
MIN_HALF_OPEN_MAX_CALLS = 1

# Key defaults
DEFAULT_KEY_PREFIX = "dedup"
KEY_ARGS_SEPARATOR = "|"
KEY_HASH_LENGTH = 16

# Eviction reasons reported to metrics
EVICTION_REASON_EXPIRED = "expired"
EVICTION_REASON_CAPACITY = "capacity"

# Error message templates
ERROR_INT_TYPE_INVALID = "{name} must be int, got {type_name}"
ERROR_NUMBER_TYPE_INVALID = "{name} must be int or float, got {type_name}"
ERROR_BOOL_TYPE_INVALID = "{name} must be bool, got {type_name}"
ERROR_VALUE_TOO_SMALL = "{name} must be >= {minimum}, got {value}"
ERROR_CALLABLE_INVALID = "{name} must be callable or None, got {type_name}"
ERROR_UNKNOWN_OVERRIDE = "Unknown {target} option(s): {names}"
ERROR_UNKNOWN_PRESET = "Unknown retry preset '{name}', expected one of: {choices}"
ERROR_DEDUP_KEY_EMPTY = "Deduplication key cannot be empty"
ERROR_SERVICE_NAME_EMPTY = "service_name cannot be empty or whitespace-only"
ERROR_KEY_PREFIX_EMPTY = "key_prefix cannot be empty or whitespace-only"
