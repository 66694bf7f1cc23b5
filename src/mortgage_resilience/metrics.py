"""Resilience metrics collectors, including OpenTelemetry export."""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from threading import Lock
from typing import Any

from opentelemetry import metrics as otel_metrics

from .protocols import ResilienceMetrics

logger = logging.getLogger(__name__)


class NoOpMetrics:
    """Metrics collector that does nothing (default)."""

    def record_dedup_hit(self, key: str) -> None:
        pass

    def record_dedup_miss(self, key: str) -> None:
        pass

    def record_eviction(self, key: str, reason: str) -> None:
        pass

    def record_work_error(self, key: str, error: BaseException) -> None:
        pass

    def record_retry(self, attempt: int, delay: float, error: Exception) -> None:
        pass

    def record_retry_outcome(self, succeeded: bool, attempts: int, elapsed: float) -> None:
        pass

    def record_circuit_state(self, service_name: str, state: str) -> None:
        pass


class LoggingMetrics:
    """Collector that writes every event to the module logger.

    Useful during development or when logs are the only telemetry sink.
    Routine events are logged at the configured level; failures use WARNING.
    """

    def __init__(self, log_level: int = logging.DEBUG) -> None:
        """Initialize with configurable log level.

        Args:
            log_level: Log level for routine events (default: DEBUG)
        """
        self._log_level = log_level

    def record_dedup_hit(self, key: str) -> None:
        logger.log(self._log_level, "Dedup HIT for key '%s'", key)

    def record_dedup_miss(self, key: str) -> None:
        logger.log(self._log_level, "Dedup MISS for key '%s'", key)

    def record_eviction(self, key: str, reason: str) -> None:
        logger.log(self._log_level, "Dedup EVICT for key '%s' (reason: %s)", key, reason)

    def record_work_error(self, key: str, error: BaseException) -> None:
        logger.warning("Dedup work ERROR for key '%s': %s (%s)", key, str(error), type(error).__name__)

    def record_retry(self, attempt: int, delay: float, error: Exception) -> None:
        logger.log(
            self._log_level,
            "Retry after attempt %d in %.3fms: %s (%s)",
            attempt,
            delay * 1000,
            str(error),
            type(error).__name__,
        )

    def record_retry_outcome(self, succeeded: bool, attempts: int, elapsed: float) -> None:
        if succeeded:
            logger.log(self._log_level, "Retry SUCCEEDED after %d attempt(s) (%.3fms)", attempts, elapsed * 1000)
        else:
            logger.warning("Retry EXHAUSTED after %d attempt(s) (%.3fms)", attempts, elapsed * 1000)

    def record_circuit_state(self, service_name: str, state: str) -> None:
        logger.log(self._log_level, "Circuit for '%s' is now %s", service_name, state.upper())


@dataclass
class KeyStats:
    """Statistics for a single deduplication key."""

    hits: int = 0
    misses: int = 0
    evictions: int = 0
    errors: int = 0

    @property
    def total_requests(self) -> int:
        return self.hits + self.misses

    @property
    def hit_ratio(self) -> float:
        total = self.total_requests
        return self.hits / total if total > 0 else 0.0


@dataclass
class ResilienceStats:
    """Aggregated resilience statistics."""

    dedup_hits: int = 0
    dedup_misses: int = 0
    evictions: dict[str, int] = field(default_factory=dict)
    work_errors: int = 0
    retries: int = 0
    retry_successes: int = 0
    retry_failures: int = 0
    retry_delays: list[float] = field(default_factory=list)
    retry_attempts: list[int] = field(default_factory=list)
    circuit_states: dict[str, str] = field(default_factory=dict)

    @property
    def dedup_requests(self) -> int:
        return self.dedup_hits + self.dedup_misses

    @property
    def dedup_hit_ratio(self) -> float:
        total = self.dedup_requests
        return self.dedup_hits / total if total > 0 else 0.0

    @property
    def avg_retry_delay_ms(self) -> float:
        if not self.retry_delays:
            return 0.0
        return sum(self.retry_delays) / len(self.retry_delays) * 1000

    @property
    def avg_attempts(self) -> float:
        if not self.retry_attempts:
            return 0.0
        return sum(self.retry_attempts) / len(self.retry_attempts)


class InMemoryMetrics:
    """In-memory metrics collector with per-key statistics.

    Useful for development, tests and admin introspection endpoints.
    Keeps aggregated and per-key statistics with thread-safety.

    Attributes:
        max_samples: Maximum number of delay/attempt samples kept
    """

    def __init__(self, max_samples: int = 1000) -> None:
        """Initialize metrics collector.

        Args:
            max_samples: Maximum number of samples to keep per series
        """
        self._max_samples = max_samples
        self._lock = Lock()
        self._overall = ResilienceStats()
        self._by_key: dict[str, KeyStats] = defaultdict(KeyStats)

    def record_dedup_hit(self, key: str) -> None:
        with self._lock:
            self._overall.dedup_hits += 1
            self._by_key[key].hits += 1

    def record_dedup_miss(self, key: str) -> None:
        with self._lock:
            self._overall.dedup_misses += 1
            self._by_key[key].misses += 1

    def record_eviction(self, key: str, reason: str) -> None:
        with self._lock:
            self._overall.evictions[reason] = self._overall.evictions.get(reason, 0) + 1
            self._by_key[key].evictions += 1

    def record_work_error(self, key: str, error: BaseException) -> None:
        with self._lock:
            self._overall.work_errors += 1
            self._by_key[key].errors += 1

    def record_retry(self, attempt: int, delay: float, error: Exception) -> None:
        with self._lock:
            self._overall.retries += 1
            self._overall.retry_delays.append(delay)
            self._trim_samples(self._overall.retry_delays)

    def record_retry_outcome(self, succeeded: bool, attempts: int, elapsed: float) -> None:
        with self._lock:
            if succeeded:
                self._overall.retry_successes += 1
            else:
                self._overall.retry_failures += 1
            self._overall.retry_attempts.append(attempts)
            self._trim_samples(self._overall.retry_attempts)

    def record_circuit_state(self, service_name: str, state: str) -> None:
        with self._lock:
            self._overall.circuit_states[service_name] = state

    def _trim_samples(self, samples: list[Any]) -> None:
        """Drop the oldest samples beyond the limit."""
        if len(samples) > self._max_samples:
            del samples[: len(samples) - self._max_samples]

    def get_stats(self) -> ResilienceStats:
        """Return a copy of the aggregated statistics."""
        with self._lock:
            return ResilienceStats(
                dedup_hits=self._overall.dedup_hits,
                dedup_misses=self._overall.dedup_misses,
                evictions=dict(self._overall.evictions),
                work_errors=self._overall.work_errors,
                retries=self._overall.retries,
                retry_successes=self._overall.retry_successes,
                retry_failures=self._overall.retry_failures,
                retry_delays=self._overall.retry_delays.copy(),
                retry_attempts=self._overall.retry_attempts.copy(),
                circuit_states=dict(self._overall.circuit_states),
            )

    def get_key_stats(self, key: str) -> KeyStats | None:
        """Return statistics for one key, or None if never seen."""
        with self._lock:
            if key not in self._by_key:
                return None
            stats = self._by_key[key]
            return KeyStats(hits=stats.hits, misses=stats.misses, evictions=stats.evictions, errors=stats.errors)

    def get_top_keys(self, by: str = "hits", limit: int = 10) -> list[tuple[str, int]]:
        """Return the most active keys.

        Args:
            by: Sort criterion (hits, misses, evictions, errors)
            limit: Maximum number of keys returned
        """
        with self._lock:
            items = [(key, getattr(stats, by)) for key, stats in self._by_key.items()]
            items.sort(key=lambda x: x[1], reverse=True)
            return items[:limit]

    def reset(self) -> None:
        """Reset all statistics."""
        with self._lock:
            self._overall = ResilienceStats()
            self._by_key.clear()


class CompositeMetrics:
    """Fan-out collector delegating to several collectors.

    A failing collector is logged and skipped so observability problems
    never break the wrapped work.

    Example:
        metrics = CompositeMetrics([LoggingMetrics(), InMemoryMetrics()])
    """

    def __init__(self, collectors: list[ResilienceMetrics]) -> None:
        self._collectors = list(collectors)

    def _dispatch(self, method: str, *args: Any) -> None:
        for collector in self._collectors:
            try:
                getattr(collector, method)(*args)
            except Exception as e:
                logger.warning("Metrics collector error in %s: %s", method, e)

    def record_dedup_hit(self, key: str) -> None:
        self._dispatch("record_dedup_hit", key)

    def record_dedup_miss(self, key: str) -> None:
        self._dispatch("record_dedup_miss", key)

    def record_eviction(self, key: str, reason: str) -> None:
        self._dispatch("record_eviction", key, reason)

    def record_work_error(self, key: str, error: BaseException) -> None:
        self._dispatch("record_work_error", key, error)

    def record_retry(self, attempt: int, delay: float, error: Exception) -> None:
        self._dispatch("record_retry", attempt, delay, error)

    def record_retry_outcome(self, succeeded: bool, attempts: int, elapsed: float) -> None:
        self._dispatch("record_retry_outcome", succeeded, attempts, elapsed)

    def record_circuit_state(self, service_name: str, state: str) -> None:
        self._dispatch("record_circuit_state", service_name, state)

    def add_collector(self, collector: ResilienceMetrics) -> None:
        """Add a collector to the fan-out."""
        self._collectors.append(collector)

    def remove_collector(self, collector: ResilienceMetrics) -> bool:
        """Remove a collector.

        Returns:
            True if the collector was found and removed, False otherwise
        """
        try:
            self._collectors.remove(collector)
            return True
        except ValueError:
            return False


class OpenTelemetryMetrics:
    """Metrics collector using OpenTelemetry.

    Exports to any backend supported by the configured MeterProvider
    (Prometheus, OTLP, console, ...).

    Exported metrics:
    - resilience.dedup.hits (counter): callers attached to an existing entry
    - resilience.dedup.misses (counter): callers that started new work
    - resilience.dedup.evictions (counter): entries evicted, by reason
    - resilience.dedup.errors (counter): deduplicated work failures
    - resilience.retry.attempts (counter): retries scheduled
    - resilience.retry.outcomes (counter): finished executions, by result
    - resilience.circuit.transitions (counter): circuit state changes
    - resilience.retry.delay (histogram): backoff delays in seconds
    - resilience.retry.duration (histogram): total execution time in seconds

    Keys are deliberately not used as attributes to keep cardinality bounded.

    Example:
        ```python
        from opentelemetry import metrics
        from opentelemetry.sdk.metrics import MeterProvider

        metrics.set_meter_provider(MeterProvider())
        services = create_resilience_services(metrics=OpenTelemetryMetrics())
        ```
    """

    def __init__(self, meter_name: str = "mortgage_resilience") -> None:
        """Initialize OpenTelemetry instruments.

        Args:
            meter_name: Meter name grouping the instruments
        """
        meter = otel_metrics.get_meter(meter_name)

        # Counters
        self._dedup_hits = meter.create_counter(
            "resilience.dedup.hits",
            description="Callers attached to an existing deduplication entry",
            unit="1",
        )
        self._dedup_misses = meter.create_counter(
            "resilience.dedup.misses",
            description="Callers that started new deduplicated work",
            unit="1",
        )
        self._evictions = meter.create_counter(
            "resilience.dedup.evictions",
            description="Deduplication entries evicted",
            unit="1",
        )
        self._work_errors = meter.create_counter(
            "resilience.dedup.errors",
            description="Deduplicated work failures",
            unit="1",
        )
        self._retries = meter.create_counter(
            "resilience.retry.attempts",
            description="Retries scheduled after a failed attempt",
            unit="1",
        )
        self._outcomes = meter.create_counter(
            "resilience.retry.outcomes",
            description="Finished retry executions",
            unit="1",
        )
        self._circuit_transitions = meter.create_counter(
            "resilience.circuit.transitions",
            description="Circuit breaker state transitions",
            unit="1",
        )

        # Histograms
        self._delay_histogram = meter.create_histogram(
            "resilience.retry.delay",
            description="Backoff delay before a retry",
            unit="s",
        )
        self._duration_histogram = meter.create_histogram(
            "resilience.retry.duration",
            description="Total duration of a retry execution",
            unit="s",
        )

    def record_dedup_hit(self, key: str) -> None:
        self._dedup_hits.add(1)

    def record_dedup_miss(self, key: str) -> None:
        self._dedup_misses.add(1)

    def record_eviction(self, key: str, reason: str) -> None:
        self._evictions.add(1, {"reason": reason})

    def record_work_error(self, key: str, error: BaseException) -> None:
        self._work_errors.add(1, {"error_type": type(error).__name__})

    def record_retry(self, attempt: int, delay: float, error: Exception) -> None:
        self._retries.add(1, {"error_type": type(error).__name__})
        self._delay_histogram.record(delay)

    def record_retry_outcome(self, succeeded: bool, attempts: int, elapsed: float) -> None:
        self._outcomes.add(1, {"succeeded": succeeded})
        self._duration_histogram.record(elapsed, {"succeeded": succeeded})

    def record_circuit_state(self, service_name: str, state: str) -> None:
        self._circuit_transitions.add(1, {"service": service_name, "state": state})
