"""
Metrics Collection with Prometheus.

Exposes ledger and system metrics for monitoring.
"""

import time
from enum import Enum
from typing import Callable

from prometheus_client import Counter, Gauge, Histogram, Info

from credit_ledger.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    ACTION = "action"
    POOL = "pool"
    EVENT_TYPE = "event_type"
    OUTCOME = "outcome"
    ERROR_TYPE = "error_type"


class LedgerMetrics:
    """
    Centralized metrics for the credit ledger.

    Covers:
    - HTTP requests (rate, duration)
    - Credit checks (allowed/denied with reason)
    - Deductions (credits per action, overage)
    - Top-ups, renewals and other balance writes
    - Webhook processing outcomes
    - Storage conflicts, retries and write verification
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "ledger_service",
            "Service information",
        )
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
        # Credit Check Metrics
        # ====================================================================
        self.credit_checks_total = Counter(
            "ledger_credit_checks_total",
            "Total credit checks performed",
            ["allowed", "reason"],
        )

        self.credit_check_duration_seconds = Histogram(
            "ledger_credit_check_duration_seconds",
            "Credit check duration in seconds",
            buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5),
        )

        # ====================================================================
        # Deduction Metrics
        # ====================================================================
        self.deductions_total = Counter(
            "ledger_deductions_total",
            "Total deductions recorded",
            [MetricLabels.ACTION, "tracked"],
        )

        self.credits_deducted_total = Counter(
            "ledger_credits_deducted_total",
            "Credits consumed by metered actions",
            [MetricLabels.ACTION, MetricLabels.POOL],
        )

        self.overage_credits_total = Counter(
            "ledger_overage_credits_total",
            "Credits consumed beyond the available balance",
            [MetricLabels.ACTION],
        )

        self.deduction_duration_seconds = Histogram(
            "ledger_deduction_duration_seconds",
            "Deduction duration in seconds (including retries)",
            buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
        )

        # ====================================================================
        # Credit Addition Metrics
        # ====================================================================
        self.credits_added_total = Counter(
            "ledger_credits_added_total",
            "Credits added to tenant pools",
            ["entry_type", MetricLabels.POOL],
        )

        self.accounts_provisioned_total = Counter(
            "ledger_accounts_provisioned_total",
            "Total tenant accounts provisioned",
        )

        # ====================================================================
        # Webhook Metrics
        # ====================================================================
        self.webhooks_total = Counter(
            "ledger_webhooks_total",
            "Payment gateway webhooks received",
            [MetricLabels.EVENT_TYPE, MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Storage Metrics
        # ====================================================================
        self.storage_conflicts_total = Counter(
            "ledger_storage_conflicts_total",
            "Optimistic concurrency conflicts on tenant accounts",
        )

        self.storage_retries_total = Counter(
            "ledger_storage_retries_total",
            "Retries of ledger writes after conflicts or transient failures",
            [MetricLabels.OPERATION],
        )

        self.db_write_verifications_total = Counter(
            "ledger_db_write_verifications_total",
            "Total write verification checks",
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

    # ========================================================================
    # Helper Methods
    # ========================================================================

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

    def record_credit_check(self, allowed: bool, reason: str | None, duration: float) -> None:
        """Record credit check metrics."""
        self.credit_checks_total.labels(allowed=str(allowed), reason=reason or "ok").inc()
        self.credit_check_duration_seconds.observe(duration)

    def record_deduction(
        self,
        action: str,
        tracked: bool,
        subscription_amount: int,
        topoff_amount: int,
        overage: int,
        duration: float,
    ) -> None:
        """Record deduction metrics."""
        self.deductions_total.labels(action=action, tracked=str(tracked)).inc()
        if subscription_amount:
            self.credits_deducted_total.labels(action=action, pool="subscription").inc(
                subscription_amount
            )
        if topoff_amount:
            self.credits_deducted_total.labels(action=action, pool="topoff").inc(topoff_amount)
        if overage:
            self.overage_credits_total.labels(action=action).inc(overage)
        self.deduction_duration_seconds.observe(duration)

    def record_credit_addition(self, entry_type: str, pool: str, amount: int) -> None:
        """Record credits added to a pool."""
        if amount > 0:
            self.credits_added_total.labels(entry_type=entry_type, pool=pool).inc(amount)

    def record_webhook(self, event_type: str, outcome: str) -> None:
        """Record webhook processing outcome."""
        self.webhooks_total.labels(event_type=event_type, outcome=outcome).inc()

    def record_storage_retry(self, operation: str, error_type: str) -> None:
        """Record a retried ledger write."""
        if error_type == "StorageConflictError":
            self.storage_conflicts_total.inc()
        self.storage_retries_total.labels(operation=operation).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = LedgerMetrics()


class track_http_request:
    """
    Context manager for tracking HTTP requests.

    Usage:
        with track_http_request("/v1/credits/deduct", "POST") as tracker:
            # ... process request
            tracker.set_status_code(200)
    """

    def __init__(self, endpoint: str, method: str) -> None:
        self.endpoint = endpoint
        self.method = method
        self.status_code = 200
        self.start_time: float = 0.0

    def set_status_code(self, status_code: int) -> None:
        """Set the response status code."""
        self.status_code = status_code

    def __enter__(self) -> "track_http_request":
        """Start tracking."""
        self.start_time = time.time()
        metrics.http_requests_in_progress.labels(
            endpoint=self.endpoint, method=self.method
        ).inc()
        return self

    def __exit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        """Record metrics."""
        duration = time.time() - self.start_time
        if exc_type is not None:
            self.status_code = 500
        metrics.record_http_request(self.endpoint, self.method, self.status_code, duration)
        metrics.http_requests_in_progress.labels(
            endpoint=self.endpoint, method=self.method
        ).dec()


def get_metrics_handler() -> Callable[[], bytes]:
    """Get Prometheus exposition handler for the /metrics route."""
    from prometheus_client import REGISTRY, generate_latest

    def metrics_endpoint() -> bytes:
        return generate_latest(REGISTRY)

    return metrics_endpoint
