"""
Metrics instrumentation for observability.
Exposes Prometheus-compatible metrics at /metrics endpoint.
"""

from fastapi import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

# Booking metrics
booking_attempts = Counter(
    "booking_attempts_total",
    "Total booking reservation attempts",
    ["outcome"],  # reserved, insufficient, not_bookable, invalid, error
)

reserve_latency = Histogram(
    "booking_reserve_latency_seconds",
    "Latency of the reserve transaction",
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
)

booking_transitions = Counter(
    "booking_transitions_total",
    "Booking state transitions applied",
    ["to_status"],
)

# Hold accelerator metrics
hold_store_operations = Counter(
    "hold_store_operations_total",
    "Hold accelerator operations",
    ["operation", "result"],  # arm/release/check, ok/unavailable/error
)

# Sweeper metrics
swept_bookings = Counter(
    "expired_bookings_swept_total",
    "Bookings visited by the expiry sweeper",
    ["outcome"],  # cancelled, skipped, failed
)

sweep_duration = Histogram(
    "expiry_sweep_duration_seconds",
    "Duration of one expiry sweep",
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 60.0],
)

# Payment metrics
payment_signals = Counter(
    "payment_signals_total",
    "Payment status signals received",
    ["channel", "outcome"],  # verify/webhook, success/failed/pending/duplicate/ignored
)

webhook_rejections = Counter(
    "payment_webhook_rejections_total",
    "Webhooks rejected before touching state",
    ["provider"],
)

paid_after_expiry = Counter(
    "payments_paid_after_expiry_total",
    "Successful payments whose booking had already lapsed",
)

side_effect_failures = Counter(
    "best_effort_side_effect_failures_total",
    "Best-effort side effects that failed",
    ["effect"],  # ticket, notification
)


def metrics_endpoint() -> Response:
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )


def record_booking_attempt(outcome: str):
    booking_attempts.labels(outcome=outcome).inc()


def record_transition(to_status: str):
    booking_transitions.labels(to_status=to_status).inc()


def record_hold_operation(operation: str, result: str):
    hold_store_operations.labels(operation=operation, result=result).inc()


def record_swept(outcome: str):
    swept_bookings.labels(outcome=outcome).inc()


def record_payment_signal(channel: str, outcome: str):
    payment_signals.labels(channel=channel, outcome=outcome).inc()


def record_side_effect_failure(effect: str):
    side_effect_failures.labels(effect=effect).inc()
