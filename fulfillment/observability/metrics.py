"""
Metrics Collection with Prometheus.

Exposes lifecycle, dispatch, ledger and inventory metrics for monitoring.
"""

from enum import StrEnum

from prometheus_client import Counter, Gauge, Histogram, Info

from fulfillment.config import settings


class MetricLabels(StrEnum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    CATEGORY = "category"
    OUTCOME = "outcome"
    ERROR_TYPE = "error_type"


class FulfillmentMetrics:
    """
    Centralized metrics for the fulfillment engine.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Service request intake and status transitions
    - Dispatcher sweeps and per-request outcomes
    - Ledger mutations
    - Inventory stock movements
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        self.service_info = Info(
            "fulfillment_service",
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
            "fulfillment_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "fulfillment_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "fulfillment_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Lifecycle Metrics
        # ====================================================================
        self.requests_submitted_total = Counter(
            "fulfillment_requests_submitted_total",
            "Service requests submitted",
            [MetricLabels.CATEGORY, MetricLabels.OUTCOME],
        )

        self.transitions_total = Counter(
            "fulfillment_transitions_total",
            "Service request status transitions",
            ["from_status", "to_status"],
        )

        # ====================================================================
        # Dispatcher Metrics
        # ====================================================================
        self.dispatch_outcomes_total = Counter(
            "fulfillment_dispatch_outcomes_total",
            "Dispatch attempts by outcome",
            [MetricLabels.CATEGORY, MetricLabels.OUTCOME],
        )

        self.dispatch_sweep_duration_seconds = Histogram(
            "fulfillment_dispatch_sweep_duration_seconds",
            "Dispatcher sweep duration in seconds",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.ledger_mutations_total = Counter(
            "fulfillment_ledger_mutations_total",
            "Wallet mutations by direction and outcome",
            ["direction", MetricLabels.OUTCOME],
        )

        self.ledger_amount_minor = Histogram(
            "fulfillment_ledger_amount_minor",
            "Absolute wallet mutation amounts in minor units",
            buckets=(1000, 5000, 10000, 50000, 100000, 500000, 1000000, 5000000),
        )

        # ====================================================================
        # Inventory Metrics
        # ====================================================================
        self.inventory_codes_added_total = Counter(
            "fulfillment_inventory_codes_added_total",
            "Inventory codes added",
            [MetricLabels.CATEGORY],
        )

        self.inventory_claims_total = Counter(
            "fulfillment_inventory_claims_total",
            "Inventory claim attempts",
            [MetricLabels.CATEGORY, MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "fulfillment_errors_total",
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

    def record_submission(self, category: str, outcome: str) -> None:
        """Record a submit attempt."""
        self.requests_submitted_total.labels(category=category, outcome=outcome).inc()

    def record_transition(self, from_status: str, to_status: str) -> None:
        """Record a status transition."""
        self.transitions_total.labels(from_status=from_status, to_status=to_status).inc()

    def record_dispatch(self, category: str, outcome: str) -> None:
        """Record a dispatch outcome."""
        self.dispatch_outcomes_total.labels(category=category, outcome=outcome).inc()

    def record_ledger_mutation(self, direction: str, outcome: str, amount_minor: int) -> None:
        """Record a wallet mutation attempt."""
        self.ledger_mutations_total.labels(direction=direction, outcome=outcome).inc()
        if outcome == "applied":
            self.ledger_amount_minor.observe(abs(amount_minor))

    def record_inventory_claim(self, category: str, outcome: str) -> None:
        """Record an inventory claim attempt."""
        self.inventory_claims_total.labels(category=category, outcome=outcome).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = FulfillmentMetrics()
