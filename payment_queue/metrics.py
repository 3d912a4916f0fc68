"""Prometheus metrics and a tiny HTTP server to expose them.

Call `start_metrics_server(port)` once in a process to expose /metrics.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram, Gauge, start_http_server


# Publisher metrics
PUBLISH_TOTAL = Counter(
    "payment_queue_publish_total", "Total publish attempts", ["target", "result"]
)

# Consumer metrics
CONSUMED_TOTAL = Counter(
    "payment_queue_consumed_total", "Total deliveries handled by outcome", ["queue", "outcome"]
)
HANDLER_LATENCY_SECONDS = Histogram(
    "payment_queue_handler_latency_seconds",
    "Time spent inside a message handler",
    ["queue"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1, 2, 5, 10),
)
RETRY_SCHEDULED_TOTAL = Counter(
    "payment_queue_retry_scheduled_total", "Total delayed re-publishes scheduled", ["queue"]
)
RETRY_REPUBLISH_FAILED_TOTAL = Counter(
    "payment_queue_retry_republish_failed_total", "Delayed re-publishes the broker did not accept", ["queue"]
)
DEAD_LETTERED_TOTAL = Counter(
    "payment_queue_dead_lettered_total", "Total deliveries rejected into the DLQ", ["queue"]
)
PENDING_RETRIES = Gauge(
    "payment_queue_pending_retries", "Delayed re-publishes waiting for their backoff to elapse"
)

# Connection metrics
RECONNECT_ATTEMPT_TOTAL = Counter(
    "payment_queue_reconnect_attempt_total", "Total connection attempts", ["result"]
)
CONNECTION_UP = Gauge(
    "payment_queue_connection_up", "1 while a broker connection and channel are open"
)


def start_metrics_server(port: int = 9000) -> None:
    start_http_server(port)
