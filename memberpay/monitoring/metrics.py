"""
Prometheus metrics for payment orchestration.

Tracks:
- Payment initiations by gateway and outcome
- Gateway API calls and errors
- Webhook deliveries
- Attempt transitions and amount mismatches
- Entitlement activations and their failures
- Expiry sweeps
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Initiation metrics
payment_initiations_total = Counter(
    "payment_initiations_total",
    "Total payment initiations",
    ["gateway", "kind", "status"],  # status: pending, rejected, failed
)

payment_initiation_duration_seconds = Histogram(
    "payment_initiation_duration_seconds",
    "Payment initiation duration in seconds",
    ["gateway"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 30.0),
)

# Gateway API metrics
gateway_errors_total = Counter(
    "gateway_errors_total",
    "Total gateway errors surfaced to callers",
    ["gateway", "error_code"],
)

gateway_status_checks_total = Counter(
    "gateway_status_checks_total",
    "Total gateway status verifications",
    ["gateway", "outcome"],
)

# Webhook metrics
webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook deliveries processed",
    ["gateway", "result"],  # completed, failed, duplicate, unknown_attempt, invalid...
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["gateway"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Ledger metrics
attempt_transitions_total = Counter(
    "attempt_transitions_total",
    "Total attempt state transitions",
    ["status", "source"],  # source: webhook, poll, initiate, cancel, sweeper
)

amount_mismatches_total = Counter(
    "amount_mismatches_total",
    "Settlements whose amount differed from the recorded amount",
    ["gateway"],
)

outcome_conflicts_total = Counter(
    "outcome_conflicts_total",
    "Callbacks contradicting an attempt's recorded outcome",
    ["gateway"],
)

# Activation metrics
entitlement_activations_total = Counter(
    "entitlement_activations_total",
    "Total entitlements activated",
    ["kind"],
)

entitlement_activation_failures_total = Counter(
    "entitlement_activation_failures_total",
    "Completed payments whose entitlement could not be granted",
    ["kind"],
)

commissions_created_total = Counter(
    "commissions_created_total",
    "Total referral commissions created",
)

# Sweeper metrics
sweeper_expired_attempts_total = Counter(
    "sweeper_expired_attempts_total",
    "Pending attempts expired by the sweeper",
)

sweeper_resumed_activations_total = Counter(
    "sweeper_resumed_activations_total",
    "Activations resumed by the sweeper",
    ["status"],  # activated, failed
)

sweeper_last_run_timestamp = Gauge(
    "sweeper_last_run_timestamp",
    "Timestamp of last sweeper run",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_initiation(gateway: str, kind: str, status: str, duration_seconds: float) -> None:
        """Record a payment initiation."""
        payment_initiations_total.labels(gateway=gateway, kind=kind, status=status).inc()
        payment_initiation_duration_seconds.labels(gateway=gateway).observe(duration_seconds)

    @staticmethod
    def record_gateway_error(gateway: str, error_code: str) -> None:
        """Record a gateway error."""
        gateway_errors_total.labels(gateway=gateway, error_code=error_code).inc()

    @staticmethod
    def record_status_check(gateway: str, outcome: str) -> None:
        gateway_status_checks_total.labels(gateway=gateway, outcome=outcome).inc()

    @staticmethod
    def record_webhook(gateway: str, result: str, duration_seconds: float) -> None:
        """Record webhook processing."""
        webhook_events_processed_total.labels(gateway=gateway, result=result).inc()
        webhook_processing_duration_seconds.labels(gateway=gateway).observe(duration_seconds)

    @staticmethod
    def record_transition(status: str, source: str) -> None:
        attempt_transitions_total.labels(status=status, source=source).inc()

    @staticmethod
    def record_amount_mismatch(gateway: str) -> None:
        amount_mismatches_total.labels(gateway=gateway).inc()

    @staticmethod
    def record_outcome_conflict(gateway: str) -> None:
        outcome_conflicts_total.labels(gateway=gateway).inc()

    @staticmethod
    def record_activation(kind: str) -> None:
        entitlement_activations_total.labels(kind=kind).inc()

    @staticmethod
    def record_activation_failure(kind: str) -> None:
        """Record a failed entitlement activation."""
        entitlement_activation_failures_total.labels(kind=kind).inc()

    @staticmethod
    def record_commission() -> None:
        commissions_created_total.inc()

    @staticmethod
    def record_sweep(expired: int, activated: int, failed: int) -> None:
        """Record one sweeper pass."""
        sweeper_expired_attempts_total.inc(expired)
        sweeper_resumed_activations_total.labels(status="activated").inc(activated)
        sweeper_resumed_activations_total.labels(status="failed").inc(failed)
        sweeper_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
