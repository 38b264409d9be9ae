"""
Metrics Collection with Prometheus.

Exposes ledger, payment, scheduler and webhook metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Histogram, Info, start_http_server

from billing_engine.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    OPERATION = "operation"
    TRANSACTION_TYPE = "transaction_type"
    PAYMENT_PRIORITY = "payment_priority"
    STATUS = "status"
    PROVIDER = "provider"
    ERROR_TYPE = "error_type"


class BillingMetrics:
    """
    Centralized metrics for the billing engine.

    Minimum viable metrics covering:
    - Ledger postings (rate, amount, CAS conflicts, consistency violations)
    - Payments (rate by policy/outcome, amount, compensations)
    - Scheduler (claims, executions, tick duration)
    - Webhooks (deliveries by outcome)
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "billing_engine",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.service_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.ledger_postings_total = Counter(
            "billing_ledger_postings_total",
            "Total ledger postings",
            [MetricLabels.TRANSACTION_TYPE, MetricLabels.STATUS],
        )

        self.ledger_posting_amount_cents = Histogram(
            "billing_ledger_posting_amount_cents",
            "Ledger posting amounts in cents",
            buckets=(10, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 25000, 100000),
        )

        self.ledger_cas_conflicts_total = Counter(
            "billing_ledger_cas_conflicts_total",
            "Lost compare-and-set races on balance version",
        )

        self.consistency_violations_total = Counter(
            "billing_consistency_violations_total",
            "Ledger read-back or audit mismatches (balance frozen)",
        )

        # ====================================================================
        # Payment Metrics
        # ====================================================================
        self.payments_total = Counter(
            "billing_payments_total",
            "Total routed payments",
            [MetricLabels.PAYMENT_PRIORITY, MetricLabels.STATUS],
        )

        self.payment_amount_cents = Histogram(
            "billing_payment_amount_cents",
            "Routed payment amounts in cents",
            buckets=(100, 500, 1000, 2500, 5000, 10000, 25000, 50000, 100000),
        )

        self.compensations_total = Counter(
            "billing_compensations_total",
            "Saga compensations issued",
            ["kind", "success"],
        )

        self.provider_calls_total = Counter(
            "billing_provider_calls_total",
            "Payment provider calls",
            [MetricLabels.PROVIDER, MetricLabels.OPERATION, "success"],
        )

        # ====================================================================
        # Scheduler Metrics
        # ====================================================================
        self.schedule_claims_total = Counter(
            "billing_schedule_claims_total",
            "Schedule claim attempts",
            ["success"],
        )

        self.schedule_executions_total = Counter(
            "billing_schedule_executions_total",
            "Recorded billing attempts",
            [MetricLabels.STATUS],
        )

        self.tick_duration_seconds = Histogram(
            "billing_tick_duration_seconds",
            "Scheduler tick duration in seconds",
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
        )

        # ====================================================================
        # Webhook Metrics
        # ====================================================================
        self.webhooks_total = Counter(
            "billing_webhooks_total",
            "Webhook deliveries by outcome",
            [MetricLabels.PROVIDER, "outcome"],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "billing_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_posting(self, transaction_type: str, status: str, amount_cents: int) -> None:
        """Record a ledger posting."""
        self.ledger_postings_total.labels(transaction_type=transaction_type, status=status).inc()
        self.ledger_posting_amount_cents.observe(amount_cents)

    def record_payment(self, payment_priority: str, status: str, amount_cents: int) -> None:
        """Record a routed payment outcome."""
        self.payments_total.labels(payment_priority=payment_priority, status=status).inc()
        if status == "succeeded":
            self.payment_amount_cents.observe(amount_cents)

    def record_compensation(self, kind: str, success: bool) -> None:
        self.compensations_total.labels(kind=kind, success=str(success)).inc()

    def record_provider_call(self, provider: str, operation: str, success: bool) -> None:
        self.provider_calls_total.labels(
            provider=provider, operation=operation, success=str(success)
        ).inc()

    def record_claim(self, success: bool) -> None:
        self.schedule_claims_total.labels(success=str(success)).inc()

    def record_execution(self, status: str) -> None:
        self.schedule_executions_total.labels(status=status).inc()

    def record_webhook(self, provider: str, outcome: str) -> None:
        self.webhooks_total.labels(provider=provider, outcome=outcome).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = BillingMetrics()


def start_metrics_server() -> None:
    """Expose /metrics on the configured port (worker processes)."""
    if settings.metrics_enabled:
        start_http_server(settings.metrics_port)
