# apps/api/learnhub/monitoring/metrics.py
"""
Prometheus metrics for LearnHub API.
A dedicated registry keeps /metrics free of default process collectors
registered twice under reload.
"""

from prometheus_client import CollectorRegistry, Counter, Histogram

registry = CollectorRegistry(auto_describe=True)

# ────────────────────────────────────────────────
# HTTP
# ────────────────────────────────────────────────
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
    registry=registry,
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
    registry=registry,
)

# ────────────────────────────────────────────────
# Payment lifecycle
# ────────────────────────────────────────────────
webhook_events_total = Counter(
    "learnhub_webhook_events_total",
    "Gateway webhooks by reconciliation outcome",
    ["outcome"],
    registry=registry,
)

payment_transitions_total = Counter(
    "learnhub_payment_transitions_total",
    "Applied payment status transitions",
    ["target", "source"],
    registry=registry,
)

gateway_errors_total = Counter(
    "learnhub_gateway_errors_total",
    "Failed calls to the payment gateway",
    ["operation"],
    registry=registry,
)

subscriptions_swept_total = Counter(
    "learnhub_subscriptions_swept_total",
    "Subscriptions closed by the expiration sweep",
    ["status"],
    registry=registry,
)
