"""
Prometheus metrics for order and payment reconciliation.

Tracks:
- Pending orders created and expired
- Payment confirmations by source and outcome
- Orders materialized and duplicate confirmations
- Gateway calls, errors and circuit breaker state
- Webhook events
- Invoice renders
- Order status transitions
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Checkout metrics
pending_orders_created_total = Counter(
    "pending_orders_created_total",
    "Total pending orders created",
    ["status", "currency"],  # status: pending, init_failed
)

pending_order_amount_cents = Histogram(
    "pending_order_amount_cents",
    "Pending order amounts in minor units",
    buckets=(100, 500, 1000, 5000, 10000, 50000, 100000, 500000, 1000000),
)

pending_orders_expired_total = Counter(
    "pending_orders_expired_total",
    "Total pending orders moved to expired",
)

# Confirmation metrics
payment_confirmations_total = Counter(
    "payment_confirmations_total",
    "Total payment confirmations processed",
    ["source", "outcome"],  # outcome: materialized, duplicate, failed, mismatch, ...
)

payment_confirmation_duration_seconds = Histogram(
    "payment_confirmation_duration_seconds",
    "Payment confirmation duration in seconds",
    ["source"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

orders_materialized_total = Counter(
    "orders_materialized_total",
    "Total orders created from confirmed payments",
    ["currency"],
)

identifier_collisions_total = Counter(
    "identifier_collisions_total",
    "Unique constraint violations while materializing an order",
)

# Gateway metrics
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total payment gateway requests",
    ["operation", "status"],  # operation: initialize, verify
)

gateway_errors_total = Counter(
    "gateway_errors_total",
    "Total payment gateway errors",
    ["error_type"],  # unavailable, rejected, not_found
)

gateway_request_duration_seconds = Histogram(
    "gateway_request_duration_seconds",
    "Payment gateway call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events received",
    ["event_type"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["event_type", "status"],  # processed, ignored, duplicate, rejected, error
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Invoice metrics
invoice_renders_total = Counter(
    "invoice_renders_total",
    "Total invoice render attempts",
    ["status"],  # success, failed
)

# Order lifecycle metrics
order_status_transitions_total = Counter(
    "order_status_transitions_total",
    "Total order status transitions",
    ["from_status", "to_status"],
)

reconciliation_sweep_duration_seconds = Histogram(
    "reconciliation_sweep_duration_seconds",
    "Pending order reconciliation sweep duration in seconds",
    buckets=(0.5, 1, 5, 10, 30, 60, 120, 300),
)

reconciliation_last_run_timestamp = Gauge(
    "reconciliation_last_run_timestamp",
    "Timestamp of last reconciliation sweep",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_pending_order(status: str, currency: str, amount_cents: int) -> None:
        """Record a pending order creation attempt."""
        pending_orders_created_total.labels(status=status, currency=currency).inc()
        pending_order_amount_cents.observe(amount_cents)

    @staticmethod
    def record_pending_orders_expired(count: int) -> None:
        if count:
            pending_orders_expired_total.inc(count)

    @staticmethod
    def record_confirmation(source: str, outcome: str, duration_seconds: float) -> None:
        """Record a processed payment confirmation."""
        payment_confirmations_total.labels(source=source, outcome=outcome).inc()
        payment_confirmation_duration_seconds.labels(source=source).observe(duration_seconds)

    @staticmethod
    def record_order_materialized(currency: str) -> None:
        orders_materialized_total.labels(currency=currency).inc()

    @staticmethod
    def record_identifier_collision() -> None:
        identifier_collisions_total.inc()

    @staticmethod
    def record_gateway_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record a gateway API call."""
        gateway_requests_total.labels(operation=operation, status=status).inc()
        gateway_request_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_gateway_error(error_type: str) -> None:
        """Record a gateway API error."""
        gateway_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(event_type=event_type).inc()
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_invoice_render(status: str) -> None:
        invoice_renders_total.labels(status=status).inc()

    @staticmethod
    def record_status_transition(from_status: str, to_status: str) -> None:
        order_status_transitions_total.labels(
            from_status=from_status, to_status=to_status
        ).inc()

    @staticmethod
    def record_reconciliation_sweep(duration_seconds: float) -> None:
        """Record a completed reconciliation sweep."""
        reconciliation_sweep_duration_seconds.observe(duration_seconds)
        reconciliation_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
