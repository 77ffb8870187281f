"""
Prometheus metrics for checkout monitoring.

Tracks:
- Checkout requests by resulting order status
- Checkout duration and order amounts
- Idempotent replays and transition conflicts
- Gateway calls, errors and circuit breaker state
- Reconciliation sweeps and resolutions
- Outbox queue depth
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Checkout metrics
checkout_requests_total = Counter(
    "checkout_requests_total",
    "Total number of checkout requests",
    ["status", "currency"],
)

checkout_duration_seconds = Histogram(
    "checkout_duration_seconds",
    "Checkout duration in seconds",
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 15.0),
)

order_amount_cents = Histogram(
    "order_amount_cents",
    "Order totals in cents",
    buckets=(50, 100, 500, 1000, 5000, 10000, 50000, 100000, 500000, 1000000),
)

# Idempotency metrics
idempotent_replays_total = Counter(
    "idempotent_replays_total",
    "Checkout requests answered from an existing idempotency record",
    ["source"],  # redis, database, wait
)

order_transition_conflicts_total = Counter(
    "order_transition_conflicts_total",
    "Compare-and-swap transitions lost to a concurrent writer",
    ["target_status"],
)

# Gateway metrics
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total payment gateway requests",
    ["operation", "outcome"],  # operation: charge, query_status
)

gateway_errors_total = Counter(
    "gateway_errors_total",
    "Total payment gateway errors",
    ["error_type"],  # transient, permanent, rate_limit, timeout
)

gateway_duration_seconds = Histogram(
    "gateway_duration_seconds",
    "Payment gateway call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

# Circuit breaker metrics
gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Reconciliation metrics
reconciliation_orders_total = Counter(
    "reconciliation_orders_total",
    "Orders examined by reconciliation, by resolution",
    ["resolution"],  # paid, payment_failed, cancelled, unresolved, error
)

reconciliation_unresolved_orders = Gauge(
    "reconciliation_unresolved_orders",
    "Orders left in awaiting_payment by the last sweep",
)

reconciliation_duration_seconds = Histogram(
    "reconciliation_duration_seconds",
    "Reconciliation sweep duration in seconds",
    buckets=(0.5, 1, 5, 10, 30, 60, 120, 300),
)

reconciliation_last_run_timestamp = Gauge(
    "reconciliation_last_run_timestamp",
    "Timestamp of last reconciliation sweep",
)

# Outbox metrics
outbox_queue_depth = Gauge(
    "outbox_queue_depth",
    "Number of unpublished events in outbox",
)

outbox_events_published_total = Counter(
    "outbox_events_published_total",
    "Total outbox events published",
    ["event_type"],
)

outbox_processing_duration_seconds = Histogram(
    "outbox_processing_duration_seconds",
    "Outbox batch processing duration in seconds",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_checkout(status: str, currency: str, amount_cents: int) -> None:
        """Record a checkout request and the status it ended in."""
        checkout_requests_total.labels(status=status, currency=currency).inc()
        order_amount_cents.observe(amount_cents)

    @staticmethod
    def record_checkout_duration(duration_seconds: float) -> None:
        checkout_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_idempotent_replay(source: str) -> None:
        idempotent_replays_total.labels(source=source).inc()

    @staticmethod
    def record_transition_conflict(target_status: str) -> None:
        order_transition_conflicts_total.labels(target_status=target_status).inc()

    @staticmethod
    def record_gateway_call(operation: str, outcome: str, duration_seconds: float) -> None:
        """Record a gateway call."""
        gateway_requests_total.labels(operation=operation, outcome=outcome).inc()
        gateway_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_gateway_error(error_type: str) -> None:
        gateway_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_reconciliation(resolution: str) -> None:
        reconciliation_orders_total.labels(resolution=resolution).inc()

    @staticmethod
    def set_reconciliation_metrics(unresolved: int, duration_seconds: float) -> None:
        """Set metrics at the end of a sweep."""
        reconciliation_unresolved_orders.set(unresolved)
        reconciliation_duration_seconds.observe(duration_seconds)
        reconciliation_last_run_timestamp.set(time.time())

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(event_type: str, duration_seconds: float) -> None:
        """Record outbox event published."""
        outbox_events_published_total.labels(event_type=event_type).inc()
        outbox_processing_duration_seconds.observe(duration_seconds)


# Export singleton instance
metrics = MetricsCollector()
