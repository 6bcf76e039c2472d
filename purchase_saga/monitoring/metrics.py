"""
Prometheus metrics for the purchase saga.

Tracks:
- Domain events dispatched and written to the outbox
- Outbox relay throughput and failures
- Payment request attempts and terminal retry outcomes
- Inbound payment result messages
- Retry scheduler tick duration
"""
from prometheus_client import Counter, Gauge, Histogram

# Domain event metrics
domain_events_dispatched_total = Counter(
    "domain_events_dispatched_total",
    "Total domain events handed to in-process handlers",
    ["event_type", "status"],  # status: success, failure
)

outbox_events_written_total = Counter(
    "outbox_events_written_total",
    "Total domain events written to the outbox",
    ["event_type"],
)

# Outbox relay metrics
outbox_events_published_total = Counter(
    "outbox_events_published_total",
    "Total outbox events published to the broker",
    ["event_type"],
)

outbox_publish_failures_total = Counter(
    "outbox_publish_failures_total",
    "Total outbox publish failures",
    ["event_type"],
)

outbox_pending_events = Gauge(
    "outbox_pending_events",
    "Outbox events waiting to be published",
)

# Retry metrics
payment_request_attempts_total = Counter(
    "payment_request_attempts_total",
    "Total payment request attempts",
    ["outcome"],  # published, publish_failed
)

retry_terminal_total = Counter(
    "retry_terminal_total",
    "Total retry histories reaching a terminal status",
    ["status"],  # SUCCESSFUL, FINALLY_FAILED
)

retry_scheduler_tick_duration_seconds = Histogram(
    "retry_scheduler_tick_duration_seconds",
    "Retry scheduler tick duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# Inbound message metrics
inbound_messages_total = Counter(
    "inbound_messages_total",
    "Total inbound saga messages",
    ["kind", "outcome"],  # kind: request, confirmation, failure
)
