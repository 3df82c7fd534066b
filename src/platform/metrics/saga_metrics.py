from datetime import datetime, timezone

from prometheus_client import Counter, Gauge, Histogram


class SagaMetrics:
    """
    Booking Saga Core Metrics Collector

    Tracks bus delivery health, saga outcomes, seat holds, the payment circuit
    and admission decisions
    """

    def __init__(self):
        # ========== Event Bus Metrics ==========
        self.bus_messages_processed = Counter(
            'saga_bus_messages_processed_total',
            'Envelopes handled by a consumer group',
            ['group', 'event_type', 'result'],  # result: ok/duplicate/dead_letter
        )

        self.bus_redeliveries = Counter(
            'saga_bus_redeliveries_total',
            'Envelopes redelivered after a handler error',
            ['group', 'event_type'],
        )

        self.bus_processing_duration = Histogram(
            'saga_bus_processing_duration_seconds',
            'Envelope handling duration',
            ['group', 'event_type'],
            buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0],
        )

        self.outbox_published = Counter(
            'saga_outbox_published_total', 'Outbox records published', ['event_type']
        )

        self.outbox_relay_lag = Histogram(
            'saga_outbox_relay_lag_seconds',
            'Time from the state change to the bus acknowledging its event',
            ['event_type'],
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
        )

        # ========== Saga Business Metrics ==========
        self.reservations_terminal = Counter(
            'saga_reservations_terminal_total',
            'Reservations reaching a terminal state',
            ['status', 'reason_code'],
        )

        self.duplicates_ignored = Counter(
            'saga_duplicates_ignored_total',
            'Messages dropped by the idempotency ledger',
            ['consumer'],
        )

        self.seat_hold_operations = Counter(
            'saga_seat_hold_operations_total',
            'Seat hold operations',
            ['operation', 'result'],  # operation: acquire/release/confirm/expire
        )

        # ========== Payment Metrics ==========
        self.payment_attempts = Counter(
            'saga_payment_attempts_total',
            'Gateway charge attempts',
            ['result'],  # result: succeeded/declined/error
        )

        self.circuit_state = Gauge(
            'saga_circuit_state',
            'Circuit breaker state (0=closed, 1=half_open, 2=open)',
            ['circuit'],
        )

        # ========== Admission Metrics ==========
        self.admission_decisions = Counter(
            'saga_admission_decisions_total',
            'Gateway admission decisions',
            ['result'],  # result: admitted/unauthenticated/rate_limited/no_route/circuit_open
        )

    def record_bus_message(self, *, group: str, event_type: str, result: str, duration: float):
        self.bus_messages_processed.labels(group=group, event_type=event_type, result=result).inc()
        self.bus_processing_duration.labels(group=group, event_type=event_type).observe(duration)

    def record_redelivery(self, *, group: str, event_type: str):
        self.bus_redeliveries.labels(group=group, event_type=event_type).inc()

    def record_outbox_published(self, *, event_type: str, occurred_at: datetime):
        self.outbox_published.labels(event_type=event_type).inc()
        if occurred_at.tzinfo is None:
            occurred_at = occurred_at.replace(tzinfo=timezone.utc)
        lag = (datetime.now(timezone.utc) - occurred_at).total_seconds()
        self.outbox_relay_lag.labels(event_type=event_type).observe(max(lag, 0.0))

    def record_terminal(self, *, status: str, reason_code: str | None):
        self.reservations_terminal.labels(status=status, reason_code=reason_code or 'NONE').inc()

    def record_duplicate(self, *, consumer: str):
        self.duplicates_ignored.labels(consumer=consumer).inc()

    def record_seat_hold(self, *, operation: str, result: str):
        self.seat_hold_operations.labels(operation=operation, result=result).inc()

    def record_payment_attempt(self, *, result: str):
        self.payment_attempts.labels(result=result).inc()

    def set_circuit_state(self, *, circuit: str, value: int):
        self.circuit_state.labels(circuit=circuit).set(value)

    def record_admission(self, *, result: str):
        self.admission_decisions.labels(result=result).inc()


# Global metrics instance
metrics = SagaMetrics()
