"""
Prometheus metrics for settlement monitoring.

Tracks:
- Webhook deliveries by gateway and ledger outcome
- Gateway API calls, errors and circuit breaker state
- Ledger transitions and terminal-state conflicts
- Payout creation, disbursement outcomes and amounts
- Settlement run duration
- Outbox queue depth
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Charge metrics
charges_initiated_total = Counter(
    "charges_initiated_total",
    "Total charge initiations",
    ["gateway", "status"],
)

charge_amount_minor_units = Histogram(
    "charge_amount_minor_units",
    "Charged customer totals in minor units",
    buckets=(50, 100, 500, 1000, 5000, 10000, 50000, 100000, 500000, 1000000),
)

# Gateway API metrics
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total gateway API requests",
    ["gateway", "operation", "status"],
)

gateway_errors_total = Counter(
    "gateway_errors_total",
    "Total gateway API errors",
    ["gateway", "category"],  # declined, config_error, transient
)

gateway_request_duration_seconds = Histogram(
    "gateway_request_duration_seconds",
    "Gateway API call duration in seconds",
    ["gateway", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 15.0),
)

gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["gateway"],
)

gateway_token_refreshes_total = Counter(
    "gateway_token_refreshes_total",
    "Provider OAuth token refreshes",
    ["gateway"],
)

# Webhook metrics
webhook_events_total = Counter(
    "webhook_events_total",
    "Total webhook deliveries by ledger outcome",
    ["gateway", "status"],  # applied, duplicate, conflict, stale, unknown, ignored
)

webhook_security_failures_total = Counter(
    "webhook_security_failures_total",
    "Webhook deliveries rejected by authenticity checks",
    ["gateway"],
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["gateway"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Ledger metrics
ledger_transitions_total = Counter(
    "ledger_transitions_total",
    "Applied transaction status transitions",
    ["from_status", "to_status"],
)

ledger_conflicts_total = Counter(
    "ledger_conflicts_total",
    "Conflicting terminal-state events absorbed by the ledger",
    ["gateway"],
)

# Payout metrics
payouts_created_total = Counter(
    "payouts_created_total",
    "Payouts created by aggregation",
    ["currency"],
)

payout_amount_minor_units = Histogram(
    "payout_amount_minor_units",
    "Payout amounts in minor units",
    buckets=(1000, 5000, 10000, 50000, 100000, 500000, 1000000, 5000000),
)

payouts_finalized_total = Counter(
    "payouts_finalized_total",
    "Payouts reaching a terminal state",
    ["status", "reason"],
)

aggregation_claim_conflicts_total = Counter(
    "aggregation_claim_conflicts_total",
    "Payout creations rejected because a transaction was already claimed",
)

# Settlement run metrics
settlement_run_duration_seconds = Histogram(
    "settlement_run_duration_seconds",
    "Settlement run duration in seconds",
    buckets=(1, 5, 10, 30, 60, 120, 300, 600),
)

settlement_last_run_timestamp = Gauge(
    "settlement_last_run_timestamp",
    "Timestamp of last settlement run",
)

# Outbox metrics
outbox_queue_depth = Gauge(
    "outbox_queue_depth",
    "Number of unpublished notifications in outbox",
)

outbox_events_published_total = Counter(
    "outbox_events_published_total",
    "Total outbox notifications delivered",
    ["event_type"],
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_charge(gateway: str, status: str, amount: int) -> None:
        """Record a charge initiation."""
        charges_initiated_total.labels(gateway=gateway, status=status).inc()
        if status == "initiated":
            charge_amount_minor_units.observe(amount)

    @staticmethod
    def record_gateway_call(
        gateway: str, operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record gateway API call."""
        gateway_requests_total.labels(gateway=gateway, operation=operation, status=status).inc()
        gateway_request_duration_seconds.labels(gateway=gateway, operation=operation).observe(
            duration_seconds
        )

    @staticmethod
    def record_gateway_error(gateway: str, category: str) -> None:
        """Record gateway API error."""
        gateway_errors_total.labels(gateway=gateway, category=category).inc()

    @staticmethod
    def set_circuit_breaker_state(gateway: str, state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.labels(gateway=gateway).set(state_map.get(state, 0))

    @staticmethod
    def record_token_refresh(gateway: str) -> None:
        gateway_token_refreshes_total.labels(gateway=gateway).inc()

    @staticmethod
    def record_webhook_event(gateway: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_total.labels(gateway=gateway, status=status).inc()
        webhook_processing_duration_seconds.labels(gateway=gateway).observe(duration_seconds)

    @staticmethod
    def record_webhook_security_failure(gateway: str) -> None:
        webhook_security_failures_total.labels(gateway=gateway).inc()

    @staticmethod
    def record_ledger_transition(from_status: str, to_status: str) -> None:
        ledger_transitions_total.labels(from_status=from_status, to_status=to_status).inc()

    @staticmethod
    def record_ledger_conflict(gateway: str) -> None:
        ledger_conflicts_total.labels(gateway=gateway).inc()

    @staticmethod
    def record_payout_created(currency: str, amount: int) -> None:
        """Record a payout materialized by aggregation."""
        payouts_created_total.labels(currency=currency).inc()
        payout_amount_minor_units.observe(amount)

    @staticmethod
    def record_claim_conflict() -> None:
        aggregation_claim_conflicts_total.inc()

    @staticmethod
    def record_payout_finalized(status: str, reason: str = "") -> None:
        payouts_finalized_total.labels(status=status, reason=reason or "none").inc()

    @staticmethod
    def record_settlement_run(duration_seconds: float) -> None:
        """Record settlement run duration."""
        settlement_run_duration_seconds.observe(duration_seconds)
        settlement_last_run_timestamp.set(time.time())

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(event_type: str) -> None:
        """Record outbox event published."""
        outbox_events_published_total.labels(event_type=event_type).inc()


# Export singleton instance
metrics = MetricsCollector()
