"""Prometheus metrics for monitoring reconciliations, lateness and external side effects"""

from prometheus_client import Counter, Histogram

# Reconciliation metrics
reconciliation_counter = Counter(
    "billing_reconciliation_total",
    "Billing record events applied to account balances",
    ["operation", "outcome"],  # create|update|delete x applied|replayed|rejected|failed
)

reconciliation_conflict_counter = Counter(
    "billing_reconciliation_conflicts_total",
    "Optimistic version conflicts that forced a reconciliation retry",
)

balance_delta_histogram = Histogram(
    "billing_balance_delta_cents",
    "Absolute balance movement per reconciliation",
    buckets=[0, 1_000, 5_000, 10_000, 50_000, 100_000, 500_000],
)

lateness_transition_counter = Counter(
    "billing_lateness_transitions_total",
    "Accounts changing lateness status",
    ["to_status"],  # current | late
)

overdue_transition_counter = Counter(
    "billing_records_overdue_total",
    "Billing records auto-transitioned to overdue",
)

# External side effects
notification_failure_counter = Counter(
    "billing_notification_failures_total",
    "Failed steps of the invoice/email side effect",
    ["step"],  # invoice | payment_link | attach_invoice | email
)

external_call_latency_histogram = Histogram(
    "billing_external_call_latency_seconds",
    "Invoicing and email provider response time",
    ["provider"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_reconciliation(operation: str, outcome: str, balance_delta_cents: int = 0) -> None:
    """Record reconciliation outcome and balance movement"""
    reconciliation_counter.labels(operation=operation, outcome=outcome).inc()
    if outcome == "applied":
        balance_delta_histogram.observe(abs(balance_delta_cents))


def record_lateness_change(previous: str, current: str) -> None:
    """Count lateness flips; steady states are not interesting"""
    if previous != current:
        lateness_transition_counter.labels(to_status=current).inc()
