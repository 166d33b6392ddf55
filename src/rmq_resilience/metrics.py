"""Prometheus metrics for publish and delivery outcomes."""

from prometheus_client import Counter, Gauge

AMQP_STATUS = Gauge(
    "rmq_resilience_amqp_status",
    "RabbitMQ connection status (1=connected, 0=disconnected)",
)

MESSAGES_PUBLISHED = Counter(
    "rmq_resilience_messages_published_total",
    "Publish attempts by exchange and result code",
    ["exchange", "code"],
)

DELIVERIES_SETTLED = Counter(
    "rmq_resilience_deliveries_total",
    "Deliveries by queue and terminal disposition",
    ["queue", "disposition"],
)

HANDLER_RETRIES = Counter(
    "rmq_resilience_handler_retries_total",
    "Handler invocations repeated by the retry policy",
    ["queue"],
)
