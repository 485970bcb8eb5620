"""
Prometheus metrics collection for the natal chart engine.

Provides business metrics for monitoring chart generation outcomes,
cache efficiency, rate limiting, and chart service health.
"""

from prometheus_client import (
    Counter, Histogram, Gauge, Info, CollectorRegistry,
    generate_latest, CONTENT_TYPE_LATEST
)
from typing import Dict, Any, Optional
import time


# Global metrics registry
REGISTRY = CollectorRegistry()

# Request metrics
REQUEST_COUNT = Counter(
    'natal_requests_total',
    'Total number of API requests',
    ['method', 'endpoint', 'status_code'],
    registry=REGISTRY
)

REQUEST_DURATION = Histogram(
    'natal_request_duration_seconds',
    'Request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.05, 0.1, 0.2, 0.5, 1.0, 2.0, 5.0],
    registry=REGISTRY
)

# Chart generation metrics
CHART_REQUESTS = Counter(
    'natal_chart_requests_total',
    'Chart requests by source and outcome',
    ['source', 'outcome'],  # generated, cache_hit, offline_cache, error
    registry=REGISTRY
)

CHART_DURATION = Histogram(
    'natal_chart_duration_seconds',
    'Chart generation duration in seconds',
    ['source'],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0],
    registry=REGISTRY
)

# Error metrics
ERRORS_TOTAL = Counter(
    'natal_errors_total',
    'Total number of errors by category',
    ['error_code', 'error_category'],
    registry=REGISTRY
)

# Cache metrics
CACHE_OPERATIONS = Counter(
    'natal_cache_operations_total',
    'Total chart cache operations',
    ['operation'],  # hit, miss, save, evict, persist_failed, read_failed, decode_failed
    registry=REGISTRY
)

CACHE_SIZE = Gauge(
    'natal_cache_size_entries',
    'Number of cached charts at the last scan',
    registry=REGISTRY
)

# Rate limiter metrics
RATE_LIMIT_DECISIONS = Counter(
    'natal_rate_limit_decisions_total',
    'Rate limiter decisions for metered requests',
    ['decision'],  # allowed, denied
    registry=REGISTRY
)

MONTHLY_REQUESTS = Gauge(
    'natal_monthly_upstream_requests',
    'Chart service requests recorded this billing month',
    registry=REGISTRY
)

# Chart service metrics
UPSTREAM_CALLS = Counter(
    'natal_upstream_calls_total',
    'Chart service calls',
    ['endpoint', 'status'],  # success, failed
    registry=REGISTRY
)

UPSTREAM_DURATION = Histogram(
    'natal_upstream_duration_seconds',
    'Chart service call duration',
    ['endpoint'],
    buckets=[0.1, 0.2, 0.5, 1.0, 2.0, 5.0, 10.0],
    registry=REGISTRY
)

# System info
SYSTEM_INFO = Info(
    'natal_system_info',
    'System information',
    registry=REGISTRY
)

APP_START_TIME = Gauge(
    'natal_app_start_time_seconds',
    'Unix timestamp when the application started',
    registry=REGISTRY
)


class MetricsCollector:
    """
    High-level metrics collector for chart pipeline operations.

    Provides methods to record metrics for common operations
    with consistent labeling and timing.
    """

    def __init__(self):
        self.start_time = time.time()
        APP_START_TIME.set(self.start_time)

    def record_request(
        self,
        method: str,
        endpoint: str,
        status_code: int,
        duration_seconds: float
    ):
        """Record HTTP request metrics."""
        REQUEST_COUNT.labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        REQUEST_DURATION.labels(
            method=method,
            endpoint=endpoint
        ).observe(duration_seconds)

    def record_chart(
        self,
        source: str,
        outcome: str,
        duration_seconds: Optional[float] = None
    ):
        """Record a chart request outcome."""
        CHART_REQUESTS.labels(source=source, outcome=outcome).inc()

        if duration_seconds is not None:
            CHART_DURATION.labels(source=source).observe(duration_seconds)

    def record_error(self, error_code: str):
        """Record error metrics."""
        # "RATE.LIMITED" -> "RATE"
        error_category = error_code.split('.')[0] if '.' in error_code else error_code

        ERRORS_TOTAL.labels(
            error_code=error_code,
            error_category=error_category
        ).inc()

    def record_cache_operation(self, operation: str, cache_size: Optional[int] = None):
        CACHE_OPERATIONS.labels(operation=operation).inc()
        if cache_size is not None:
            CACHE_SIZE.set(cache_size)

    def record_rate_limit(self, allowed: bool, monthly_requests: Optional[int] = None):
        RATE_LIMIT_DECISIONS.labels(decision="allowed" if allowed else "denied").inc()
        if monthly_requests is not None:
            MONTHLY_REQUESTS.set(monthly_requests)

    def record_upstream_call(self, endpoint: str, success: bool, duration_seconds: float):
        UPSTREAM_CALLS.labels(
            endpoint=endpoint,
            status="success" if success else "failed"
        ).inc()
        UPSTREAM_DURATION.labels(endpoint=endpoint).observe(duration_seconds)

    def set_system_info(
        self,
        version: str,
        source: str,
        python_version: str,
        ephemeris_version: str
    ):
        """Set system information metrics."""
        SYSTEM_INFO.info({
            'version': version,
            'source': source,
            'python_version': python_version,
            'ephemeris_version': ephemeris_version
        })

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Get summary of key metrics for health checks."""
        uptime_seconds = time.time() - self.start_time

        def sample(name: str, labels: Optional[Dict[str, str]] = None) -> float:
            return REGISTRY.get_sample_value(name, labels or {}) or 0.0

        hits = sample('natal_cache_operations_total', {'operation': 'hit'})
        misses = sample('natal_cache_operations_total', {'operation': 'miss'})

        return {
            "uptime_seconds": round(uptime_seconds, 1),
            "cache": {
                "size": int(sample('natal_cache_size_entries')),
                "hit_rate": round(hits / max(hits + misses, 1), 3)
            },
            "rate_limiting": {
                "allowed": int(sample('natal_rate_limit_decisions_total', {'decision': 'allowed'})),
                "denied": int(sample('natal_rate_limit_decisions_total', {'decision': 'denied'})),
                "monthly_requests": int(sample('natal_monthly_upstream_requests'))
            }
        }


# Global metrics collector instance
metrics = MetricsCollector()


def get_metrics_content() -> tuple[str, str]:
    """
    Get Prometheus metrics content for /metrics endpoint.

    Returns:
        Tuple of (content, content_type)
    """
    content = generate_latest(REGISTRY)
    return content.decode('utf-8'), CONTENT_TYPE_LATEST


class RequestMetricsMiddleware:
    """
    Middleware to automatically record request metrics.

    Records request count, duration, and response status for all requests.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        method = scope["method"]
        endpoint = self._normalize_endpoint(scope["path"])

        start_time = time.perf_counter()
        status_code = 500

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            duration = time.perf_counter() - start_time
            metrics.record_request(method, endpoint, status_code, duration)

    def _normalize_endpoint(self, path: str) -> str:
        """Normalize endpoint path for metrics grouping."""
        if "?" in path:
            path = path.split("?")[0]

        # one series for all image ids
        if path.startswith("/v1/charts/images/"):
            return "/v1/charts/images/{file_id}"
        if path.startswith("/v1/"):
            return path

        if path in ("/", "/healthz", "/metrics"):
            return path
        elif path.startswith("/docs"):
            return "/docs"
        elif path.startswith("/openapi"):
            return "/openapi"
        else:
            return "/other"
