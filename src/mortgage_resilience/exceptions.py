"""Exception taxonomy for mortgage-resilience."""


class ResilienceError(Exception):
    """Base error for resilience operations."""

    def __init__(self, message: str, key: str | None = None) -> None:
        self.key = key
        super().__init__(message)


class DeduplicationError(ResilienceError):
    """Misuse of the deduplication cache (empty key, closed cache)."""

    pass


class CircuitOpenError(ResilienceError):
    """Call rejected because the service circuit is open."""

    def __init__(self, service_name: str) -> None:
        self.service_name = service_name
        super().__init__(f"Circuit breaker is OPEN for service: {service_name}", key=service_name)
