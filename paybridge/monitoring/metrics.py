"""
Prometheus metrics for payment orchestration monitoring.

Tracks:
- Initiation requests by provider and outcome
- Provider call errors and durations
- Webhook deliveries by provider and outcome (applied, duplicate, rejected)
- Order reconciliation outcomes
- Rate-limit rejections
- Stale pending transactions found by the reconciliation worker
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Initiation metrics
payment_initiations_total = Counter(
    "payment_initiations_total",
    "Total number of payment initiation requests",
    ["provider", "outcome"],  # outcome: submitted, upstream_error
)

payment_initiation_duration_seconds = Histogram(
    "payment_initiation_duration_seconds",
    "Payment initiation duration in seconds",
    ["provider"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 15.0),
)

payment_amount = Histogram(
    "payment_amount",
    "Payment amounts in major currency units",
    ["currency"],
    buckets=(10, 50, 100, 500, 1000, 5000, 10000, 50000, 100000, 500000),
)

# Provider metrics
provider_errors_total = Counter(
    "provider_errors_total",
    "Total provider call errors absorbed into pending transactions",
    ["provider", "operation"],  # operation: initiate, query
)

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events received",
    ["provider"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["provider", "outcome"],  # applied, duplicate, pending, rejected
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["provider"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Ledger metrics
transaction_status_transitions_total = Counter(
    "transaction_status_transitions_total",
    "Total pending -> terminal transitions applied to the ledger",
    ["provider", "status"],
)

# Order reconciliation metrics
order_reconciliations_total = Counter(
    "order_reconciliations_total",
    "Total order reconciliation attempts",
    ["outcome"],  # reconciled, skipped, failed
)

# Rate limiting metrics
rate_limit_rejections_total = Counter(
    "rate_limit_rejections_total",
    "Total requests rejected by the rate limiter",
)

# Reconciliation worker metrics
stale_pending_transactions = Gauge(
    "stale_pending_transactions",
    "Pending transactions older than the staleness threshold at last sweep",
)

reconciliation_sweep_duration_seconds = Histogram(
    "reconciliation_sweep_duration_seconds",
    "Reconciliation sweep duration in seconds",
    buckets=(0.5, 1, 5, 10, 30, 60, 120, 300),
)

reconciliation_last_run_timestamp = Gauge(
    "reconciliation_last_run_timestamp",
    "Timestamp of last reconciliation sweep",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_initiation(
        provider: str, outcome: str, currency: str, amount: float, duration_seconds: float
    ) -> None:
        """Record a payment initiation."""
        payment_initiations_total.labels(provider=provider, outcome=outcome).inc()
        payment_amount.labels(currency=currency).observe(amount)
        payment_initiation_duration_seconds.labels(provider=provider).observe(duration_seconds)

    @staticmethod
    def record_provider_error(provider: str, operation: str) -> None:
        """Record an absorbed provider error."""
        provider_errors_total.labels(provider=provider, operation=operation).inc()

    @staticmethod
    def record_webhook_event(provider: str, outcome: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(provider=provider).inc()
        webhook_events_processed_total.labels(provider=provider, outcome=outcome).inc()
        webhook_processing_duration_seconds.labels(provider=provider).observe(duration_seconds)

    @staticmethod
    def record_status_transition(provider: str, status: str) -> None:
        """Record a pending -> terminal transition."""
        transaction_status_transitions_total.labels(provider=provider, status=status).inc()

    @staticmethod
    def record_order_reconciliation(outcome: str) -> None:
        """Record an order reconciliation attempt."""
        order_reconciliations_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_rate_limit_rejection() -> None:
        """Record a rate-limited request."""
        rate_limit_rejections_total.inc()

    @staticmethod
    def set_reconciliation_metrics(stale_count: int, duration_seconds: float) -> None:
        """Set reconciliation sweep metrics."""
        stale_pending_transactions.set(stale_count)
        reconciliation_sweep_duration_seconds.observe(duration_seconds)
        reconciliation_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
