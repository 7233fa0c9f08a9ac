"""
Metrics Collection with Prometheus.

Exposes ledger, usage and payment metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from token_ledger.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    TRANSACTION_TYPE = "transaction_type"
    ERROR_TYPE = "error_type"


class LedgerMetrics:
    """
    Centralized metrics for the token ledger.

    Covers:
    - HTTP requests (rate, duration, in flight)
    - Ledger writes (per transaction type, token volume)
    - Usage recording and auto-recharge outcomes
    - Webhook events and invariant violations
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        self.service_info = Info("ledger_service", "Service information")
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "ledger_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "ledger_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "ledger_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.ledger_writes_total = Counter(
            "ledger_transactions_written_total",
            "Ledger transactions written",
            [MetricLabels.TRANSACTION_TYPE],
        )

        self.ledger_tokens_moved = Histogram(
            "ledger_transaction_tokens",
            "Absolute token amount per ledger transaction",
            [MetricLabels.TRANSACTION_TYPE],
            buckets=(100, 1000, 5000, 10000, 50000, 150000, 750000, 2250000, 7500000),
        )

        self.accounts_created_total = Counter(
            "ledger_accounts_created_total",
            "Token accounts created",
            ["welcome_bonus"],
        )

        self.account_suspensions_total = Counter(
            "ledger_account_suspensions_total",
            "Accounts moved to suspended by a negative balance",
        )

        self.invariant_violations_total = Counter(
            "ledger_invariant_violations_total",
            "Detected ledger invariant violations (should stay at zero)",
            [MetricLabels.OPERATION],
        )

        # ====================================================================
        # Usage Metrics
        # ====================================================================
        self.usage_records_total = Counter(
            "ledger_usage_records_total",
            "Usage records written",
            [MetricLabels.OPERATION, "success", "billed"],
        )

        self.usage_rejections_total = Counter(
            "ledger_usage_rejections_total",
            "Usage recording attempts rejected at the trust boundary",
        )

        # ====================================================================
        # Payment Metrics
        # ====================================================================
        self.auto_recharges_total = Counter(
            "ledger_auto_recharges_total",
            "Auto-recharge attempts by outcome",
            ["outcome"],
        )

        self.webhook_events_total = Counter(
            "ledger_webhook_events_total",
            "Payment webhook events received",
            ["event_type", "result"],
        )

        self.checkout_sessions_total = Counter(
            "ledger_checkout_sessions_total",
            "Checkout sessions created",
            ["success"],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "ledger_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_ledger_write(self, transaction_type: str, amount: int) -> None:
        """Record one committed ledger transaction."""
        self.ledger_writes_total.labels(transaction_type=transaction_type).inc()
        self.ledger_tokens_moved.labels(transaction_type=transaction_type).observe(abs(amount))

    def record_usage(self, operation: str, success: bool, billed: bool) -> None:
        """Record a usage record write."""
        self.usage_records_total.labels(
            operation=operation, success=str(success), billed=str(billed)
        ).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = LedgerMetrics()
