"""
Prometheus metrics for payment orchestration monitoring.

Tracks:
- Transaction requests by kind, provider and outcome
- Provider API calls, latency and transport errors
- State transitions and consistency anomalies
- Callback processing
- Payout retries
- Reconciliation sweeps
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Transaction metrics
transaction_requests_total = Counter(
    "transaction_requests_total",
    "Total number of payin/payout/refund requests",
    ["kind", "provider", "outcome"],
)

transaction_processing_duration_seconds = Histogram(
    "transaction_processing_duration_seconds",
    "Time from request to provider acknowledgement in seconds",
    ["kind"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 10.0, 30.0),
)

idempotency_cache_hits_total = Counter(
    "idempotency_cache_hits_total",
    "Total idempotency cache hits",
    ["source"],  # redis, database, miss
)

# Provider API metrics
provider_api_requests_total = Counter(
    "provider_api_requests_total",
    "Total provider API requests",
    ["provider", "operation", "status"],  # status: ok, rejected, transport_error
)

provider_api_duration_seconds = Histogram(
    "provider_api_duration_seconds",
    "Provider API call duration in seconds",
    ["provider", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 10.0, 30.0),
)

provider_circuit_breaker_state = Gauge(
    "provider_circuit_breaker_state",
    "Provider circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["provider"],
)

# State machine metrics
state_transitions_total = Counter(
    "state_transitions_total",
    "Total state transition attempts",
    ["entity", "outcome"],  # applied, noop, rejected, not_found
)

consistency_anomalies_total = Counter(
    "consistency_anomalies_total",
    "Conflicting terminal transitions and unresolvable signals",
    ["entity", "kind"],
)

reconciliation_risks_total = Counter(
    "reconciliation_risks_total",
    "Provider-accepted submissions that could not be persisted",
    ["provider", "kind"],
)

# Callback metrics
callbacks_received_total = Counter(
    "callbacks_received_total",
    "Total provider callbacks received",
    ["provider"],
)

callbacks_processed_total = Counter(
    "callbacks_processed_total",
    "Total provider callbacks processed",
    ["provider", "outcome"],
)

callback_processing_duration_seconds = Histogram(
    "callback_processing_duration_seconds",
    "Callback processing duration in seconds",
    ["provider"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Retry metrics
payout_retries_total = Counter(
    "payout_retries_total",
    "Total payout retry decisions",
    ["outcome"],  # submitted, failed, cooldown, not_retryable, exhausted, conflict
)

# Reconciliation metrics
reconciliation_records_checked = Gauge(
    "reconciliation_records_checked",
    "Records re-checked in the last reconciliation sweep",
)

reconciliation_records_updated = Gauge(
    "reconciliation_records_updated",
    "Records moved by the last reconciliation sweep",
)

reconciliation_duration_seconds = Histogram(
    "reconciliation_duration_seconds",
    "Reconciliation sweep duration in seconds",
    buckets=(1, 5, 10, 30, 60, 120, 300),
)

reconciliation_last_run_timestamp = Gauge(
    "reconciliation_last_run_timestamp",
    "Timestamp of last reconciliation sweep",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_transaction_request(
        kind: str, provider: str, outcome: str, duration_seconds: float = 0
    ) -> None:
        """Record a payin/payout/refund request."""
        transaction_requests_total.labels(kind=kind, provider=provider, outcome=outcome).inc()
        if duration_seconds > 0:
            transaction_processing_duration_seconds.labels(kind=kind).observe(duration_seconds)

    @staticmethod
    def record_idempotency_cache_hit(source: str) -> None:
        """Record idempotency cache hit."""
        idempotency_cache_hits_total.labels(source=source).inc()

    @staticmethod
    def record_provider_call(
        provider: str, operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record provider API call."""
        provider_api_requests_total.labels(
            provider=provider, operation=operation, status=status
        ).inc()
        provider_api_duration_seconds.labels(provider=provider, operation=operation).observe(
            duration_seconds
        )

    @staticmethod
    def set_circuit_breaker_state(provider: str, state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        provider_circuit_breaker_state.labels(provider=provider).set(state_map.get(state, 0))

    @staticmethod
    def record_transition(entity: str, outcome: str) -> None:
        """Record a state transition attempt."""
        state_transitions_total.labels(entity=entity, outcome=outcome).inc()

    @staticmethod
    def record_consistency_anomaly(entity: str, kind: str) -> None:
        """Record a consistency anomaly."""
        consistency_anomalies_total.labels(entity=entity, kind=kind).inc()

    @staticmethod
    def record_reconciliation_risk(provider: str, kind: str) -> None:
        """Record an unpersisted provider submission."""
        reconciliation_risks_total.labels(provider=provider, kind=kind).inc()

    @staticmethod
    def record_callback(provider: str, outcome: str, duration_seconds: float) -> None:
        """Record callback processing."""
        callbacks_received_total.labels(provider=provider).inc()
        callbacks_processed_total.labels(provider=provider, outcome=outcome).inc()
        callback_processing_duration_seconds.labels(provider=provider).observe(duration_seconds)

    @staticmethod
    def record_payout_retry(outcome: str) -> None:
        """Record a payout retry decision."""
        payout_retries_total.labels(outcome=outcome).inc()

    @staticmethod
    def set_reconciliation_metrics(checked: int, updated: int, duration_seconds: float) -> None:
        """Set reconciliation metrics."""
        reconciliation_records_checked.set(checked)
        reconciliation_records_updated.set(updated)
        reconciliation_duration_seconds.observe(duration_seconds)
        reconciliation_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
