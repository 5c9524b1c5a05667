"""
Metrics Collection with Prometheus.

Exposes access-reconciliation and system metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from purchase_access.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    ERROR_TYPE = "error_type"
    OUTCOME = "outcome"


class AccessMetrics:
    """
    Centralized metrics for the Purchase Access API.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Access grants (created/extended, retries)
    - Ownership rejections (security events)
    - Guest purchases and claims
    - Payment state transitions and sweeps
    - One-time offers
    """

    def __init__(self) -> None:
        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "purchase_access_service",
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
            "purchase_access_http_requests_total",
            "Total HTTP requests",
            [
                MetricLabels.ENDPOINT.value,
                MetricLabels.METHOD.value,
                MetricLabels.STATUS_CODE.value,
            ],
        )

        self.http_request_duration_seconds = Histogram(
            "purchase_access_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT.value, MetricLabels.METHOD.value],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "purchase_access_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT.value, MetricLabels.METHOD.value],
        )

        # ====================================================================
        # Access Grant Metrics
        # ====================================================================
        self.access_grants_total = Counter(
            "purchase_access_grants_total",
            "Access grants by outcome (created, extended, failed)",
            [MetricLabels.OUTCOME.value],
        )

        self.access_grant_retries_total = Counter(
            "purchase_access_grant_retries_total",
            "Read-modify-write retries after a lost version check or transient error",
        )

        # ====================================================================
        # Ownership Metrics (security)
        # ====================================================================
        self.ownership_rejections_total = Counter(
            "purchase_access_ownership_rejections_total",
            "Ownership resolution rejections by reason",
            ["reason"],
        )

        # ====================================================================
        # Guest / Claim Metrics
        # ====================================================================
        self.guest_purchases_total = Counter(
            "purchase_access_guest_purchases_total",
            "Guest purchases recorded",
            [MetricLabels.OUTCOME.value],
        )

        self.claims_total = Counter(
            "purchase_access_claims_total",
            "Guest purchase claims by outcome (claimed, skipped, failed)",
            [MetricLabels.OUTCOME.value],
        )

        # ====================================================================
        # Payment State Metrics
        # ====================================================================
        self.payment_transitions_total = Counter(
            "purchase_access_payment_transitions_total",
            "Payment event status transitions",
            ["from_status", "to_status"],
        )

        self.payments_abandoned_total = Counter(
            "purchase_access_payments_abandoned_total",
            "Pending payments swept into abandoned",
        )

        self.fulfilment_leg_failures_total = Counter(
            "purchase_access_fulfilment_leg_failures_total",
            "Fulfilment legs that failed and were left for retry",
            ["leg"],
        )

        self.payment_amount_minor = Histogram(
            "purchase_access_payment_amount_minor",
            "Completed payment amounts in minor units (cents)",
            buckets=(100, 500, 1000, 2500, 5000, 10000, 25000, 50000, 100000),
        )

        # ====================================================================
        # One-Time Offer Metrics
        # ====================================================================
        self.oto_offers_total = Counter(
            "purchase_access_oto_offers_total",
            "One-time offers by outcome (created, existing, skipped_owned, redeemed)",
            [MetricLabels.OUTCOME.value],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "purchase_access_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE.value, MetricLabels.OPERATION.value],
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

    def record_grant(self, outcome: str) -> None:
        self.access_grants_total.labels(outcome=outcome).inc()

    def record_ownership_rejection(self, reason: str) -> None:
        self.ownership_rejections_total.labels(reason=reason).inc()

    def record_claim(self, outcome: str) -> None:
        self.claims_total.labels(outcome=outcome).inc()

    def record_transition(self, from_status: str, to_status: str) -> None:
        self.payment_transitions_total.labels(from_status=from_status, to_status=to_status).inc()

    def record_oto(self, outcome: str) -> None:
        self.oto_offers_total.labels(outcome=outcome).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = AccessMetrics()
