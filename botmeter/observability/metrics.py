"""
Metrics Collection with Prometheus.

Exposes gate, ledger and scheduler metrics for monitoring.
"""

from enum import StrEnum

from prometheus_client import Counter, Gauge, Histogram, Info

from botmeter.config import settings


class MetricLabels(StrEnum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    GATE = "gate"
    OUTCOME = "outcome"
    BUCKET = "bucket"
    TRANSACTION_TYPE = "transaction_type"
    TASK_ID = "task_id"
    ERROR_TYPE = "error_type"


class BotmeterMetrics:
    """
    Centralized metrics for botmeter.

    Covers:
    - HTTP requests (rate, duration)
    - Gate decisions (allowed / denied by code)
    - Credit debits by bucket and ledger grants
    - Counter-feature usage
    - Schedules created / cancelled and task outcomes
    - Errors by operation
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        self.service_info = Info("botmeter_service", "Service information")
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
            "botmeter_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "botmeter_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "botmeter_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Gate Metrics
        # ====================================================================
        self.gate_decisions_total = Counter(
            "botmeter_gate_decisions_total",
            "Gate decisions by gate and outcome",
            [MetricLabels.GATE, MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.credits_debited_total = Counter(
            "botmeter_credits_debited_total",
            "Credits consumed, by bucket (plan or purchased)",
            [MetricLabels.BUCKET],
        )

        self.credit_usage_attempts_total = Counter(
            "botmeter_credit_usage_attempts_total",
            "Credit debit attempts by outcome",
            [MetricLabels.OUTCOME],
        )

        self.credit_usage_duration_seconds = Histogram(
            "botmeter_credit_usage_duration_seconds",
            "Credit debit duration in seconds",
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
        )

        self.credits_granted_total = Counter(
            "botmeter_credits_granted_total",
            "Credits added to balances",
            [MetricLabels.TRANSACTION_TYPE],
        )

        # ====================================================================
        # Usage Metrics
        # ====================================================================
        self.usage_recorded_total = Counter(
            "botmeter_usage_recorded_total",
            "Counter-feature quantity recorded",
            ["feature"],
        )

        # ====================================================================
        # Scheduler Metrics
        # ====================================================================
        self.schedules_created_total = Counter(
            "botmeter_schedules_created_total",
            "Deferred tasks scheduled",
            [MetricLabels.TASK_ID],
        )

        self.schedules_cancelled_total = Counter(
            "botmeter_schedules_cancelled_total",
            "Cancellation requests by outcome",
            [MetricLabels.OUTCOME],
        )

        self.task_runs_total = Counter(
            "botmeter_task_runs_total",
            "Scheduled task executions by outcome",
            [MetricLabels.TASK_ID, MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "botmeter_errors_total",
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

    def record_gate_decision(self, gate: str, outcome: str) -> None:
        """Record a gate decision ('allowed' or a denial code)."""
        self.gate_decisions_total.labels(gate=gate, outcome=outcome).inc()

    def record_credit_usage(
        self, success: bool, from_plan: int, from_purchased: int, duration: float
    ) -> None:
        """Record credit debit metrics."""
        self.credit_usage_attempts_total.labels(outcome="success" if success else "denied").inc()
        if success:
            if from_plan:
                self.credits_debited_total.labels(bucket="plan").inc(from_plan)
            if from_purchased:
                self.credits_debited_total.labels(bucket="purchased").inc(from_purchased)
        self.credit_usage_duration_seconds.observe(duration)

    def record_credit_grant(self, transaction_type: str, amount: int) -> None:
        """Record ledger grant metrics."""
        self.credits_granted_total.labels(transaction_type=transaction_type).inc(amount)

    def record_usage(self, feature: str, quantity: int) -> None:
        """Record counter-feature usage."""
        self.usage_recorded_total.labels(feature=feature).inc(quantity)

    def record_schedule_created(self, task_id: str) -> None:
        self.schedules_created_total.labels(task_id=task_id).inc()

    def record_schedule_cancelled(self, cancelled: bool) -> None:
        self.schedules_cancelled_total.labels(
            outcome="cancelled" if cancelled else "not_found"
        ).inc()

    def record_task_run(self, task_id: str, outcome: str) -> None:
        self.task_runs_total.labels(task_id=task_id, outcome=outcome).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = BotmeterMetrics()
