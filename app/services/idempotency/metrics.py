"""
Idempotency Metrics

Side-effect-only observability hook injected into the coordinator.
IdempotencyMetrics is the no-op default; PrometheusIdempotencyMetrics records
to prometheus_client collectors scraped from GET /metrics.
"""

from prometheus_client import Counter, Histogram

CACHE_HITS = Counter(
    "idempotency_cache_hits_total",
    "Replays served without executing the operation",
    labelnames=["source"],
)

CACHE_MISSES = Counter(
    "idempotency_cache_misses_total",
    "Fast-path cache misses",
)

LOCKS_ACQUIRED = Counter(
    "idempotency_locks_acquired_total",
    "Idempotency locks acquired",
)

LOCKS_FAILED = Counter(
    "idempotency_locks_failed_total",
    "Idempotency lock attempts rejected because another attempt holds the key",
)

PAYLOAD_MISMATCHES = Counter(
    "idempotency_payload_mismatches_total",
    "Idempotency keys reused with a different payload",
)

REQUEST_DURATION = Histogram(
    "idempotency_request_duration_seconds",
    "Time spent in the request decision protocol, including the operation",
    labelnames=["outcome"],
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0),
)

JOBS_EXECUTED = Counter(
    "idempotency_jobs_executed_total",
    "Idempotent jobs executed",
    labelnames=["status"],
)

JOBS_SKIPPED = Counter(
    "idempotency_jobs_skipped_total",
    "Idempotent jobs skipped (already processed or running elsewhere)",
    labelnames=["reason"],
)

ERRORS = Counter(
    "idempotency_errors_total",
    "Idempotency layer errors",
    labelnames=["type"],
)


class IdempotencyMetrics:
    """No-op metrics sink. Subclass and override what you want to record."""

    def cache_hit(self, source: str) -> None:
        pass

    def cache_miss(self) -> None:
        pass

    def lock_acquired(self) -> None:
        pass

    def lock_failed(self) -> None:
        pass

    def payload_mismatch(self) -> None:
        pass

    def request_duration(self, seconds: float, outcome: str) -> None:
        pass

    def job_executed(self, status: str) -> None:
        pass

    def job_skipped(self, reason: str) -> None:
        pass

    def error(self, error_type: str) -> None:
        pass


class PrometheusIdempotencyMetrics(IdempotencyMetrics):
    """Records every hook to the module-level Prometheus collectors."""

    def cache_hit(self, source: str) -> None:
        CACHE_HITS.labels(source=source).inc()

    def cache_miss(self) -> None:
        CACHE_MISSES.inc()

    def lock_acquired(self) -> None:
        LOCKS_ACQUIRED.inc()

    def lock_failed(self) -> None:
        LOCKS_FAILED.inc()

    def payload_mismatch(self) -> None:
        PAYLOAD_MISMATCHES.inc()

    def request_duration(self, seconds: float, outcome: str) -> None:
        REQUEST_DURATION.labels(outcome=outcome).observe(seconds)

    def job_executed(self, status: str) -> None:
        JOBS_EXECUTED.labels(status=status).inc()

    def job_skipped(self, reason: str) -> None:
        JOBS_SKIPPED.labels(reason=reason).inc()

    def error(self, error_type: str) -> None:
        ERRORS.labels(type=error_type).inc()


def build_metrics(enabled: bool) -> IdempotencyMetrics:
    """Prometheus-backed metrics when enabled, the no-op sink otherwise."""
    if enabled:
        return PrometheusIdempotencyMetrics()
    return IdempotencyMetrics()
