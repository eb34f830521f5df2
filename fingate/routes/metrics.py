"""
Prometheus metrics endpoint.

Exposes system metrics for monitoring.
"""
from fastapi import APIRouter, Response
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

router = APIRouter()

# ============================================
# HTTP Request Metrics
# ============================================

http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# ============================================
# API Guard Metrics
# ============================================

api_auth_failures = Counter(
    'api_auth_failures_total',
    'Programmatic API requests rejected by authentication or scope checks',
    ['reason']
)

rate_limit_exceeded = Counter(
    'rate_limit_exceeded_total',
    'Total requests blocked by rate limiting',
    ['endpoint']
)

# ============================================
# Webhook Metrics
# ============================================

webhook_attempts = Counter(
    'webhook_attempts_total',
    'Webhook delivery attempts',
    ['event_type', 'outcome']
)

webhooks_failed = Counter(
    'webhooks_failed_total',
    'Webhook deliveries that exhausted all retries',
    ['event_type']
)


# ============================================
# Metrics Helper Functions
# ============================================

def track_request(method: str, endpoint: str, status: int, duration_seconds: float):
    """
    Record HTTP request metrics.

    Call this after each request.
    """
    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status=status
    ).inc()

    http_request_duration.labels(
        method=method,
        endpoint=endpoint
    ).observe(duration_seconds)


def track_auth_failure(reason: str):
    """Record a 401 (unauthorized) or 403 (forbidden) from the API guard."""
    api_auth_failures.labels(reason=reason).inc()


def track_rate_limit_exceeded(endpoint: str):
    """Record a rate limit block."""
    rate_limit_exceeded.labels(endpoint=endpoint).inc()


def track_webhook_attempt(event_type: str, outcome: str):
    """Record one webhook delivery attempt (success, http_error, timeout, error)."""
    webhook_attempts.labels(event_type=event_type, outcome=outcome).inc()


def track_webhook_failed(event_type: str):
    """Record a webhook whose retries were exhausted."""
    webhooks_failed.labels(event_type=event_type).inc()


# ============================================
# Prometheus Endpoint
# ============================================

@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Returns all registered metrics in Prometheus format.
    """
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
