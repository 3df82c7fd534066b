"""
Event Envelope - the only unit carried by the event bus

Every saga message is an envelope around exactly one typed payload. The envelope
carries routing (partition_key = reservation id, so one reservation's events stay
ordered), deduplication (idempotency_key = stable id of the logical occurrence)
and tracing (causation_id / correlation_id) metadata.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional, Union
from uuid import UUID

import attrs
from uuid_utils.compat import uuid7

from src.service.shared_kernel.domain.enum.event_type import EventType
from src.service.shared_kernel.domain.enum.reason_code import ReasonCode


def _to_uuid(value: Any) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


def _to_amount(value: Any) -> int:
    # bool is an int subclass; an amount of True is a malformed message
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f'amount must be an integer in minor units, got {value!r}')
    return value


def _to_reason(value: Any) -> ReasonCode:
    return ReasonCode(value)


@attrs.frozen
class ReservationCreatedPayload:
    reservation_id: UUID = attrs.field(converter=_to_uuid)
    passenger_ref: str
    flight_ref: str
    seat_ref: str


@attrs.frozen
class PaymentSucceededPayload:
    reservation_id: UUID = attrs.field(converter=_to_uuid)
    payment_id: UUID = attrs.field(converter=_to_uuid)
    amount: int = attrs.field(converter=_to_amount)


@attrs.frozen
class PaymentFailedPayload:
    reservation_id: UUID = attrs.field(converter=_to_uuid)
    payment_id: UUID = attrs.field(converter=_to_uuid)
    amount: int = attrs.field(converter=_to_amount)
    reason_code: ReasonCode = attrs.field(converter=_to_reason)


@attrs.frozen
class ReservationConfirmedPayload:
    reservation_id: UUID = attrs.field(converter=_to_uuid)


@attrs.frozen
class ReservationCancelledPayload:
    reservation_id: UUID = attrs.field(converter=_to_uuid)
    reason_code: ReasonCode = attrs.field(converter=_to_reason)


@attrs.frozen
class PaymentDeadlineExpiredPayload:
    reservation_id: UUID = attrs.field(converter=_to_uuid)


@attrs.frozen
class SeatHoldExpiredPayload:
    reservation_id: UUID = attrs.field(converter=_to_uuid)
    seat_key: str


EventPayload = Union[
    ReservationCreatedPayload,
    PaymentSucceededPayload,
    PaymentFailedPayload,
    ReservationConfirmedPayload,
    ReservationCancelledPayload,
    PaymentDeadlineExpiredPayload,
    SeatHoldExpiredPayload,
]

PAYLOAD_TYPES: dict[EventType, type] = {
    EventType.RESERVATION_CREATED: ReservationCreatedPayload,
    EventType.PAYMENT_SUCCEEDED: PaymentSucceededPayload,
    EventType.PAYMENT_FAILED: PaymentFailedPayload,
    EventType.RESERVATION_CONFIRMED: ReservationConfirmedPayload,
    EventType.RESERVATION_CANCELLED: ReservationCancelledPayload,
    EventType.PAYMENT_DEADLINE_EXPIRED: PaymentDeadlineExpiredPayload,
    EventType.SEAT_HOLD_EXPIRED: SeatHoldExpiredPayload,
}

EVENT_TYPES_BY_PAYLOAD: dict[type, EventType] = {
    payload_type: event_type for event_type, payload_type in PAYLOAD_TYPES.items()
}


@attrs.frozen
class EventEnvelope:
    event_type: EventType
    partition_key: str
    idempotency_key: str
    payload: EventPayload
    event_id: UUID = attrs.field(factory=uuid7)
    causation_id: Optional[str] = None
    correlation_id: Optional[str] = None
    occurred_at: datetime = attrs.field(factory=lambda: datetime.now(timezone.utc))

    @property
    def reservation_id(self) -> UUID:
        return self.payload.reservation_id

    @classmethod
    def build(
        cls,
        *,
        payload: EventPayload,
        idempotency_key: str,
        causation: Optional[EventEnvelope] = None,
    ) -> EventEnvelope:
        """
        Wrap a payload. Partition key is always the reservation id; causation and
        correlation are inherited from the triggering envelope when there is one.
        """
        reservation_id = str(payload.reservation_id)
        return cls(
            event_type=EVENT_TYPES_BY_PAYLOAD[type(payload)],
            partition_key=reservation_id,
            idempotency_key=idempotency_key,
            payload=payload,
            causation_id=str(causation.event_id) if causation else None,
            correlation_id=(causation.correlation_id if causation else None) or reservation_id,
        )
