"""
Prometheus metrics for payout engine monitoring.

Tracks:
- Disbursement requests by rail and outcome
- Disbursement amounts and processing duration
- Provider API calls and errors
- Circuit breaker state per provider
- View sync fetches by platform and source
- Webhook events
- Reconciliation outcomes
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Disbursement metrics
disbursement_requests_total = Counter(
    "payout_disbursement_requests_total",
    "Total number of disbursement requests",
    ["rail", "status"],  # status: processing, failed, duplicate
)

disbursement_processing_duration_seconds = Histogram(
    "payout_disbursement_processing_duration_seconds",
    "Disbursement processing duration in seconds",
    ["rail"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

disbursement_amount_dollars = Histogram(
    "payout_disbursement_amount_dollars",
    "Gross disbursement amounts in dollars",
    buckets=(10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 50000),
)

transaction_transitions_total = Counter(
    "payout_transaction_transitions_total",
    "Transaction state transitions",
    ["from_status", "to_status"],
)

# Provider API metrics
provider_api_requests_total = Counter(
    "payout_provider_api_requests_total",
    "Total provider API requests",
    ["provider", "status"],  # status: success, error
)

provider_api_errors_total = Counter(
    "payout_provider_api_errors_total",
    "Total provider API errors",
    ["provider", "error_type"],  # transient, permanent, rate_limit
)

provider_api_duration_seconds = Histogram(
    "payout_provider_api_duration_seconds",
    "Provider API call duration in seconds",
    ["provider"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

provider_circuit_breaker_state = Gauge(
    "payout_provider_circuit_breaker_state",
    "Provider circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["provider"],
)

# View tracking metrics
view_fetches_total = Counter(
    "payout_view_fetches_total",
    "View count fetches by platform, source and outcome",
    ["platform", "source", "status"],
)

view_sync_links_updated_total = Counter(
    "payout_view_sync_links_updated_total",
    "Content links updated by the view sync job",
)

view_sync_last_run_timestamp = Gauge(
    "payout_view_sync_last_run_timestamp",
    "Timestamp of last view sync run",
)

# Webhook metrics
webhook_events_processed_total = Counter(
    "payout_webhook_events_processed_total",
    "Total webhook events processed",
    ["provider", "event_type", "status"],  # success, duplicate, no_handler
)

# Reconciliation metrics
reconciliation_settled_total = Counter(
    "payout_reconciliation_settled_total",
    "Transactions settled by reconciliation",
    ["rail", "outcome"],
)

reconciliation_last_run_timestamp = Gauge(
    "payout_reconciliation_last_run_timestamp",
    "Timestamp of last reconciliation run",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_disbursement(rail: str, status: str, amount: float, duration_seconds: float) -> None:
        """Record a disbursement attempt."""
        disbursement_requests_total.labels(rail=rail, status=status).inc()
        disbursement_amount_dollars.observe(amount)
        disbursement_processing_duration_seconds.labels(rail=rail).observe(duration_seconds)

    @staticmethod
    def record_duplicate_disbursement(rail: str) -> None:
        """Record an initiate call answered with an existing transaction."""
        disbursement_requests_total.labels(rail=rail, status="duplicate").inc()

    @staticmethod
    def record_transition(from_status: str, to_status: str) -> None:
        """Record a transaction state transition."""
        transaction_transitions_total.labels(from_status=from_status, to_status=to_status).inc()

    @staticmethod
    def record_provider_call(provider: str, status: str, duration_seconds: float) -> None:
        """Record provider API call."""
        provider_api_requests_total.labels(provider=provider, status=status).inc()
        provider_api_duration_seconds.labels(provider=provider).observe(duration_seconds)

    @staticmethod
    def record_provider_error(provider: str, error_type: str) -> None:
        """Record provider API error."""
        provider_api_errors_total.labels(provider=provider, error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(provider: str, state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        provider_circuit_breaker_state.labels(provider=provider).set(state_map.get(state, 0))

    @staticmethod
    def record_view_fetch(platform: str, source: str, status: str) -> None:
        """Record a metrics gateway fetch."""
        view_fetches_total.labels(platform=platform, source=source, status=status).inc()

    @staticmethod
    def record_view_sync(links_updated: int) -> None:
        """Record a finished view sync run."""
        view_sync_links_updated_total.inc(links_updated)
        view_sync_last_run_timestamp.set(time.time())

    @staticmethod
    def record_webhook_event(provider: str, event_type: str, status: str) -> None:
        """Record webhook event processing."""
        webhook_events_processed_total.labels(
            provider=provider, event_type=event_type, status=status
        ).inc()

    @staticmethod
    def record_settlement(rail: str, outcome: str) -> None:
        """Record a reconciliation settlement."""
        reconciliation_settled_total.labels(rail=rail, outcome=outcome).inc()

    @staticmethod
    def mark_reconciliation_run() -> None:
        """Stamp the reconciliation run time."""
        reconciliation_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
