"""
Prometheus metrics endpoint.

Exposes delivery and HTTP metrics for monitoring.
"""
from fastapi import APIRouter, Response
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST

router = APIRouter()

# ============================================
# HTTP Request Metrics
# ============================================

http_requests_total = Counter(
    'hookrelay_http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration = Histogram(
    'hookrelay_http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# ============================================
# Webhook Metrics
# ============================================

webhooks_enqueued = Counter(
    'hookrelay_webhooks_enqueued_total',
    'Total webhook jobs enqueued'
)

webhook_attempts = Counter(
    'hookrelay_webhook_attempts_total',
    'Webhook delivery attempts by outcome',
    ['outcome']
)

webhooks_failed = Counter(
    'hookrelay_webhooks_failed_total',
    'Webhook jobs that ended in the failed state'
)

webhook_delivery_duration = Histogram(
    'hookrelay_webhook_delivery_duration_seconds',
    'Outbound webhook request duration in seconds',
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# ============================================
# Queue Metrics
# ============================================

webhook_queue_depth = Gauge(
    'hookrelay_webhook_queue_depth',
    'Webhook jobs per status',
    ['status']
)

processing_cycles = Counter(
    'hookrelay_processing_cycles_total',
    'Polling cycles run',
    ['result']
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


def track_webhook_enqueued():
    """Record a webhook job being enqueued."""
    webhooks_enqueued.inc()


def track_webhook_attempt(outcome: str, duration_seconds: float):
    """Record one delivery attempt."""
    webhook_attempts.labels(outcome=outcome).inc()
    webhook_delivery_duration.observe(duration_seconds)


def track_webhook_failed():
    """Record a job reaching the failed state."""
    webhooks_failed.inc()


def track_cycle(result: str):
    """Record a polling cycle (ok / aborted)."""
    processing_cycles.labels(result=result).inc()


def update_queue_depth(counts: dict[str, int]):
    """Update per-status job gauges."""
    for status, count in counts.items():
        webhook_queue_depth.labels(status=status).set(count)


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
