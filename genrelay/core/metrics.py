"""Prometheus metrics for the dispatch pipeline."""

from prometheus_client import Counter, Histogram, Info, generate_latest

from genrelay.core.config import settings

# --- Metrics ---

APP_INFO = Info("genrelay", "genrelay dispatch layer info")
APP_INFO.info({"version": "0.1.0", "name": "genrelay"})

DISPATCH_TOTAL = Counter(
    "genrelay_dispatch_total",
    "Terminal dispatch outcomes",
    ["backend", "operation", "outcome"],
)

DISPATCH_DURATION = Histogram(
    "genrelay_dispatch_duration_seconds",
    "Backend dispatch duration in seconds, retries included",
    ["backend", "operation"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 120],
)

CACHE_LOOKUPS = Counter(
    "genrelay_cache_lookups_total",
    "Cache lookups by result",
    ["operation", "result"],
)

RETRY_ATTEMPTS = Counter(
    "genrelay_retry_attempts_total",
    "Failed attempts with a retryable error",
    ["backend", "category"],
)

ADMISSION_DENIALS = Counter(
    "genrelay_token_budget_denials_total",
    "Token budget pre-flight denials",
    ["backend"],
)


def record_dispatch(backend: str, operation: str, outcome: str, duration: float | None = None) -> None:
    if not settings.metrics_enabled:
        return
    DISPATCH_TOTAL.labels(backend=backend, operation=operation, outcome=outcome).inc()
    if duration is not None:
        DISPATCH_DURATION.labels(backend=backend, operation=operation).observe(duration)


def record_cache_lookup(operation: str, hit: bool) -> None:
    if not settings.metrics_enabled:
        return
    CACHE_LOOKUPS.labels(operation=operation, result="hit" if hit else "miss").inc()


def record_retry(backend: str, category: str) -> None:
    if not settings.metrics_enabled:
        return
    RETRY_ATTEMPTS.labels(backend=backend, category=category).inc()


def record_budget_denial(backend: str) -> None:
    if not settings.metrics_enabled:
        return
    ADMISSION_DENIALS.labels(backend=backend).inc()


def metrics_payload() -> bytes:
    """Render the Prometheus text exposition for all registered metrics."""
    return generate_latest()
