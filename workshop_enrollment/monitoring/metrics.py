"""
Prometheus metrics for workshop admission monitoring.

Tracks:
- Admission decisions by outcome
- Seat reservations and releases
- Waitlist promotions and claim outcomes
- Payment event outcomes
- Refund outcomes and escalations
- Stripe API calls and errors
- Workshop lock acquisitions
- Notification failures and outbox depth
"""
from prometheus_client import Counter, Gauge, Histogram

# Admission metrics
enrollment_requests_total = Counter(
    "enrollment_requests_total",
    "Total enrollment requests",
    ["decision"],  # reserved, waitlisted, rejected
)

seat_reservations_total = Counter(
    "seat_reservations_total",
    "Total seat reservation attempts",
    ["result"],  # reserved, no_capacity
)

seat_releases_total = Counter(
    "seat_releases_total",
    "Total seat releases",
    ["result"],  # released, already_released
)

# Waitlist metrics
waitlist_promotions_total = Counter(
    "waitlist_promotions_total",
    "Total waitlist entries offered a claim link",
)

waitlist_claims_total = Counter(
    "waitlist_claims_total",
    "Total claim link attempts",
    ["outcome"],  # accepted, expired, invalid, already_claimed, requeued
)

waitlist_expired_offers_total = Counter(
    "waitlist_expired_offers_total",
    "Total claim offers that expired unclaimed",
)

# Payment event metrics
payment_events_total = Counter(
    "payment_events_total",
    "Total payment events handled",
    ["event_type", "outcome"],
)

payment_event_duration_seconds = Histogram(
    "payment_event_duration_seconds",
    "Payment event handling duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Refund metrics
refunds_total = Counter(
    "refunds_total",
    "Total refund attempts",
    ["outcome"],
)

refund_escalations_total = Counter(
    "refund_escalations_total",
    "Refunds handed to an operator after retries were exhausted",
)

# Stripe API metrics
stripe_api_requests_total = Counter(
    "stripe_api_requests_total",
    "Total Stripe API requests",
    ["operation", "status"],
)

stripe_api_errors_total = Counter(
    "stripe_api_errors_total",
    "Total Stripe API errors",
    ["error_type"],  # transient, permanent, rate_limit
)

stripe_api_duration_seconds = Histogram(
    "stripe_api_duration_seconds",
    "Stripe API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

stripe_circuit_breaker_state = Gauge(
    "stripe_circuit_breaker_state",
    "Stripe circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Lock metrics
workshop_lock_acquisitions_total = Counter(
    "workshop_lock_acquisitions_total",
    "Total workshop lock acquisitions",
    ["status"],  # acquired, failed
)

workshop_lock_duration_seconds = Histogram(
    "workshop_lock_duration_seconds",
    "Workshop lock hold duration in seconds",
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0),
)

# Seat releases or promotions that failed after the status change committed
seat_recovery_pending_total = Counter(
    "seat_recovery_pending_total",
    "Seat releases or waitlist promotions left for the expiry sweep",
    ["stage"],  # release, promotion
)

# Notification and outbox metrics
notification_failures_total = Counter(
    "notification_failures_total",
    "Total notifications that could not be delivered",
    ["kind"],
)

outbox_queue_depth = Gauge(
    "outbox_queue_depth",
    "Number of unpublished events in outbox",
)

outbox_events_published_total = Counter(
    "outbox_events_published_total",
    "Total outbox events published",
    ["event_type"],
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_enrollment_request(decision: str) -> None:
        """Record an admission decision."""
        enrollment_requests_total.labels(decision=decision).inc()

    @staticmethod
    def record_seat_reservation(result: str) -> None:
        seat_reservations_total.labels(result=result).inc()

    @staticmethod
    def record_seat_release(result: str) -> None:
        seat_releases_total.labels(result=result).inc()

    @staticmethod
    def record_waitlist_promotion() -> None:
        waitlist_promotions_total.inc()

    @staticmethod
    def record_waitlist_claim(outcome: str) -> None:
        """Record a claim link attempt."""
        waitlist_claims_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_expired_offers(count: int) -> None:
        if count > 0:
            waitlist_expired_offers_total.inc(count)

    @staticmethod
    def record_payment_event(event_type: str, outcome: str, duration_seconds: float) -> None:
        """Record payment event processing."""
        payment_events_total.labels(event_type=event_type, outcome=outcome).inc()
        payment_event_duration_seconds.labels(event_type=event_type).observe(duration_seconds)

    @staticmethod
    def record_refund(outcome: str) -> None:
        refunds_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_refund_escalation() -> None:
        refund_escalations_total.inc()

    @staticmethod
    def record_stripe_api_call(
        operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record Stripe API call."""
        stripe_api_requests_total.labels(operation=operation, status=status).inc()
        stripe_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_stripe_api_error(error_type: str) -> None:
        """Record Stripe API error."""
        stripe_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        stripe_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_workshop_lock(status: str) -> None:
        """Record workshop lock acquisition."""
        workshop_lock_acquisitions_total.labels(status=status).inc()

    @staticmethod
    def record_workshop_lock_held(duration_seconds: float) -> None:
        workshop_lock_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_seat_recovery_pending(stage: str) -> None:
        seat_recovery_pending_total.labels(stage=stage).inc()

    @staticmethod
    def record_notification_failure(kind: str) -> None:
        notification_failures_total.labels(kind=kind).inc()

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(event_type: str) -> None:
        outbox_events_published_total.labels(event_type=event_type).inc()


# Export singleton instance
metrics = MetricsCollector()
