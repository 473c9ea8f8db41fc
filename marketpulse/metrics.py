"""Prometheus metrics for MarketPulse."""

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("marketpulse", "MarketPulse application info")
app_info.info({"version": "0.1.0", "name": "marketpulse-core"})

# Queue metrics
jobs_enqueued_total = Counter(
    "jobs_enqueued_total",
    "Total number of jobs added to a queue",
    ["queue", "job_type"],
)

jobs_processed_total = Counter(
    "jobs_processed_total",
    "Total number of job attempts by outcome",
    ["queue", "job_type", "status"],
)

job_duration_seconds = Histogram(
    "job_duration_seconds",
    "Time spent executing job handlers",
    ["queue", "job_type"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
)

jobs_stalled_total = Counter(
    "jobs_stalled_total",
    "Total number of stalled jobs detected",
    ["queue", "outcome"],
)

# Delivery metrics
alerts_published_total = Counter(
    "alerts_published_total",
    "Total number of alerts published to live user channels",
    ["alert_type", "severity"],
)

notifications_queued_total = Counter(
    "notifications_queued_total",
    "Total number of notifications queued for offline users",
    ["severity"],
)

live_connections = Gauge(
    "live_connections",
    "Number of live connections held by this process",
)

# Ingestion guard metrics
rate_limit_hits_total = Counter(
    "rate_limit_hits_total",
    "Total number of requests rejected by the fixed-window limiter",
    ["key"],
)

cache_requests_total = Counter(
    "cache_requests_total",
    "Total number of read-through cache lookups",
    ["result"],
)

# Validation metrics
validations_total = Counter(
    "validations_total",
    "Total number of candidate alerts scored",
    ["recommendation"],
)


def record_job_enqueued(queue: str, job_type: str):
    """Record a job being added to a queue."""
    jobs_enqueued_total.labels(queue=queue, job_type=job_type).inc()


def record_job_outcome(queue: str, job_type: str, status: str, duration: float):
    """Record a finished job attempt ("completed", "delayed" or "failed")."""
    jobs_processed_total.labels(queue=queue, job_type=job_type, status=status).inc()
    job_duration_seconds.labels(queue=queue, job_type=job_type).observe(duration)


def record_stalled(queue: str, requeued: int, failed: int):
    """Record stall-recovery results for a queue."""
    if requeued:
        jobs_stalled_total.labels(queue=queue, outcome="requeued").inc(requeued)
    if failed:
        jobs_stalled_total.labels(queue=queue, outcome="failed").inc(failed)


def record_alert_published(alert_type: str, severity: str):
    """Record an alert being published to a live user channel."""
    alerts_published_total.labels(alert_type=alert_type, severity=severity).inc()


def record_notification_queued(severity: str):
    """Record a notification queued for an offline user."""
    notifications_queued_total.labels(severity=severity).inc()


def record_rate_limited(key: str):
    """Record a request rejected by the rate limiter."""
    rate_limit_hits_total.labels(key=key).inc()


def record_cache_lookup(hit: bool):
    """Record a read-through cache lookup."""
    cache_requests_total.labels(result="hit" if hit else "miss").inc()


def record_validation(recommendation: str):
    """Record a validation outcome."""
    validations_total.labels(recommendation=recommendation).inc()


# HTTP metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    ["method", "handler", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "handler"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)


def record_http_request(method: str, handler: str, status_code: int, duration: float):
    """Record one HTTP request; status codes are grouped (2xx, 4xx, ...)."""
    http_requests_total.labels(method=method, handler=handler, status=f"{status_code // 100}xx").inc()
    http_request_duration_seconds.labels(method=method, handler=handler).observe(duration)
