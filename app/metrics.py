"""
Prometheus metrics: orders submitted (API), messages processed/failed (worker), queue depth.
"""
from prometheus_client import Counter, Gauge, generate_latest

# API
orders_submitted_total = Counter(
    "orders_submitted_total",
    "Total orders accepted and queued for processing",
)
order_status_updates_total = Counter(
    "order_status_updates_total",
    "Total manual order status updates",
    ["status"],
)

# Worker: processing outcomes
messages_processed_total = Counter(
    "messages_processed_total",
    "Total messages acknowledged",
    ["outcome"],
)
messages_failed_total = Counter(
    "messages_failed_total",
    "Total messages that failed processing (retried or sent to DLQ)",
    ["error"],
)
messages_dlq_total = Counter(
    "messages_dlq_total",
    "Total messages moved to the dead-letter queue",
)

# Queue depth - backpressure / consumer lag
queue_messages_waiting = Gauge(
    "queue_messages_waiting",
    "Approximate number of messages waiting in the order queue",
)
queue_messages_in_flight = Gauge(
    "queue_messages_in_flight",
    "Approximate number of messages leased but not yet acknowledged",
)
queue_messages_dead_lettered = Gauge(
    "queue_messages_dead_lettered",
    "Approximate number of messages in the dead-letter queue",
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
