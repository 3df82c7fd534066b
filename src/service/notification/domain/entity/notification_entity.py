from datetime import datetime, timezone
from enum import StrEnum
from typing import Optional
from uuid import UUID

import attrs
from uuid_utils.compat import uuid7

from src.platform.exception.exceptions import ValidationError
from src.service.shared_kernel.domain.enum.event_type import EventType
from src.service.shared_kernel.domain.event_envelope import (
    EventEnvelope,
    ReservationCancelledPayload,
    ReservationConfirmedPayload,
)


class NotificationChannel(StrEnum):
    EMAIL = 'EMAIL'


_CANCELLATION_REASONS = {
    'DECLINED': 'your payment was declined',
    'GATEWAY_UNAVAILABLE': 'we could not reach the payment provider',
    'TIMEOUT': 'payment was not completed in time',
    'SEAT_CONFLICT': 'the seat is no longer available',
    'USER_REQUESTED': 'you asked us to cancel it',
}


@attrs.frozen
class Notification:
    reservation_id: UUID
    event_type: EventType
    subject: str
    body: str
    channel: NotificationChannel = NotificationChannel.EMAIL
    id: UUID = attrs.field(factory=uuid7)
    sent_at: Optional[datetime] = None

    @classmethod
    def for_event(cls, envelope: EventEnvelope) -> 'Notification':
        payload = envelope.payload
        if isinstance(payload, ReservationConfirmedPayload):
            return cls(
                reservation_id=payload.reservation_id,
                event_type=envelope.event_type,
                subject=f'Reservation {payload.reservation_id} confirmed',
                body='Your seat is booked and your payment has been received.',
            )
        if isinstance(payload, ReservationCancelledPayload):
            reason = _CANCELLATION_REASONS.get(payload.reason_code.value, payload.reason_code.value)
            return cls(
                reservation_id=payload.reservation_id,
                event_type=envelope.event_type,
                subject=f'Reservation {payload.reservation_id} cancelled',
                body=f'Your reservation was cancelled because {reason}. '
                'Any payment taken will be refunded.',
            )
        raise ValidationError(f'No notification for {envelope.event_type}')

    def mark_sent(self) -> 'Notification':
        return attrs.evolve(self, sent_at=datetime.now(timezone.utc))
