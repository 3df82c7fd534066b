"""Event Type Enum"""

from enum import StrEnum


class EventType(StrEnum):
    RESERVATION_CREATED = 'reservation.created'
    PAYMENT_SUCCEEDED = 'payment.succeeded'
    PAYMENT_FAILED = 'payment.failed'
    RESERVATION_CONFIRMED = 'reservation.confirmed'
    RESERVATION_CANCELLED = 'reservation.cancelled'

    # Internal triggers, never leave the saga's own consumer group
    PAYMENT_DEADLINE_EXPIRED = 'reservation.payment_deadline_expired'
    SEAT_HOLD_EXPIRED = 'seat_hold.expired'
