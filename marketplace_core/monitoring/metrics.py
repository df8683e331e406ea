"""
Prometheus metrics for marketplace monitoring.

Tracks:
- Checkout outcomes and duration
- Payment gateway calls, errors and circuit breaker state
- Expiration sweep results
- Notification deliveries per channel
- Payment webhook processing
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Checkout metrics
checkout_requests_total = Counter(
    "checkout_requests_total",
    "Total number of checkout attempts",
    ["outcome"],  # created, rejected, rolled_back, payment_failed
)

checkout_duration_seconds = Histogram(
    "checkout_duration_seconds",
    "Checkout duration in seconds",
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

commission_amount_total = Counter(
    "commission_amount_total",
    "Commission booked on created checkouts",
    ["currency"],
)

# Gateway metrics
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total payment gateway requests",
    ["operation", "status"],
)

gateway_errors_total = Counter(
    "gateway_errors_total",
    "Total payment gateway errors",
    ["error_type"],  # transient, permanent, rate_limit
)

gateway_duration_seconds = Histogram(
    "gateway_duration_seconds",
    "Payment gateway call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Expiration sweep metrics
expired_orders_cancelled_total = Counter(
    "expired_orders_cancelled_total",
    "Orders cancelled by the expiration sweep",
)

sweep_failures_total = Counter(
    "sweep_failures_total",
    "Expiration sweep step failures",
    ["step"],  # booking, gateway, order
)

sweep_duration_seconds = Histogram(
    "sweep_duration_seconds",
    "Expiration sweep run duration in seconds",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

sweep_last_run_timestamp = Gauge(
    "sweep_last_run_timestamp",
    "Timestamp of last expiration sweep",
)

# Notification metrics
notifications_total = Counter(
    "notifications_total",
    "Notification dispatch outcomes",
    ["outcome", "channel"],  # sent, retry, failed
)

notification_duration_seconds = Histogram(
    "notification_duration_seconds",
    "Notification dispatch run duration in seconds",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# Webhook metrics
webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total payment webhook events processed",
    ["status"],  # applied, ignored, stale, failed
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_checkout(outcome: str, duration_seconds: float) -> None:
        """Record a checkout attempt."""
        checkout_requests_total.labels(outcome=outcome).inc()
        checkout_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_commission(currency: str, amount: float) -> None:
        """Record commission booked by a checkout."""
        commission_amount_total.labels(currency=currency).inc(amount)

    @staticmethod
    def record_gateway_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record payment gateway call."""
        gateway_requests_total.labels(operation=operation, status=status).inc()
        gateway_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_gateway_error(error_type: str) -> None:
        """Record payment gateway error."""
        gateway_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_sweep(cancelled: int, duration_seconds: float) -> None:
        """Record an expiration sweep run."""
        expired_orders_cancelled_total.inc(cancelled)
        sweep_duration_seconds.observe(duration_seconds)
        sweep_last_run_timestamp.set(time.time())

    @staticmethod
    def record_sweep_failure(step: str) -> None:
        sweep_failures_total.labels(step=step).inc()

    @staticmethod
    def record_notification(outcome: str, channel: str = "none") -> None:
        """Record a single notification outcome."""
        notifications_total.labels(outcome=outcome, channel=channel).inc()

    @staticmethod
    def record_dispatch_duration(duration_seconds: float) -> None:
        notification_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_webhook_event(status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_processed_total.labels(status=status).inc()
        webhook_processing_duration_seconds.observe(duration_seconds)


# Export singleton instance
metrics = MetricsCollector()
