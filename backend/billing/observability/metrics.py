"""Prometheus metrics helpers for the billing domain."""
from __future__ import annotations

from prometheus_client import Counter, Histogram

BILLING_REQUEST_COUNT = Counter(
    "billing_request_total",
    "Number of billing API requests",
    labelnames=("endpoint", "method", "status"),
)

BILLING_REQUEST_LATENCY = Histogram(
    "billing_request_duration_seconds",
    "Latency of billing API requests",
    labelnames=("endpoint", "method"),
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5),
)

EVENT_DISPATCH_COUNT = Counter(
    "billing_event_dispatch_total",
    "Provider events handled by the dispatcher",
    labelnames=("event_type", "outcome"),
)

SUBSCRIPTION_TRANSITION_COUNT = Counter(
    "billing_subscription_transition_total",
    "Committed subscription status transitions",
    labelnames=("from_status", "to_status"),
)

SEAT_CONFLICT_COUNT = Counter(
    "billing_seat_conflict_total",
    "Seat operations rejected because the seat limit was reached",
    labelnames=("operation",),
)

SUBSCRIPTION_LOCK_WAIT = Histogram(
    "billing_subscription_lock_wait_seconds",
    "Time spent acquiring the per-subscription row lock",
    buckets=(0.001, 0.01, 0.05, 0.1, 0.5, 1, 5),
)

AUDIT_EMIT_FAILURE_COUNT = Counter(
    "billing_audit_emit_failure_total",
    "Audit records that could not be written",
    labelnames=("event_type",),
)
