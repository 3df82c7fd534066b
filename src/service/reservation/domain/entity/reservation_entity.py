from datetime import datetime, timezone
from enum import StrEnum
import re
from typing import Optional
from uuid import UUID

import attrs
from uuid_utils.compat import uuid7

from src.platform.exception.exceptions import ConflictError, ValidationError
from src.service.inventory.domain.entity.seat_hold_entity import make_seat_key
from src.service.shared_kernel.domain.enum.reason_code import ReasonCode


class ReservationStatus(StrEnum):
    PENDING = 'PENDING'
    SEAT_HELD = 'SEAT_HELD'
    AWAITING_PAYMENT = 'AWAITING_PAYMENT'
    CONFIRMED = 'CONFIRMED'
    CANCELLED = 'CANCELLED'
    FAILED = 'FAILED'


TERMINAL_STATUSES = frozenset(
    {ReservationStatus.CONFIRMED, ReservationStatus.CANCELLED, ReservationStatus.FAILED}
)

# Forward-only state machine
_ALLOWED_TRANSITIONS = {
    ReservationStatus.PENDING: {ReservationStatus.SEAT_HELD, ReservationStatus.FAILED},
    ReservationStatus.SEAT_HELD: {
        ReservationStatus.AWAITING_PAYMENT,
        ReservationStatus.CANCELLED,
        ReservationStatus.FAILED,
    },
    ReservationStatus.AWAITING_PAYMENT: {
        ReservationStatus.CONFIRMED,
        ReservationStatus.CANCELLED,
    },
}

_REFERENCE_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$')


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_reference(name: str, value: str) -> str:
    value = (value or '').strip()
    if not _REFERENCE_PATTERN.match(value):
        raise ValidationError(f'{name} must be 1-64 characters of letters, digits, "-" or "_"')
    return value


@attrs.define
class Reservation:
    id: UUID
    passenger_ref: str
    flight_ref: str
    seat_ref: str
    status: ReservationStatus = ReservationStatus.PENDING
    version: int = 1
    reason_code: Optional[ReasonCode] = None
    payment_deadline_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def open(
        cls,
        *,
        passenger_ref: str,
        flight_ref: str,
        seat_ref: str,
        now: Optional[datetime] = None,
    ) -> 'Reservation':
        now = now or _utc_now()
        return cls(
            id=uuid7(),
            passenger_ref=_normalize_reference('passengerRef', passenger_ref),
            flight_ref=_normalize_reference('flightRef', flight_ref),
            seat_ref=_normalize_reference('seatRef', seat_ref),
            created_at=now,
            updated_at=now,
        )

    @property
    def seat_key(self) -> str:
        return make_seat_key(flight_ref=self.flight_ref, seat_ref=self.seat_ref)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    # `now` stamps updated_at; callers with an injected clock pass it through

    def hold_seat(self, *, now: Optional[datetime] = None) -> 'Reservation':
        return self._transition(ReservationStatus.SEAT_HELD, now=now)

    def await_payment(
        self, *, deadline_at: datetime, now: Optional[datetime] = None
    ) -> 'Reservation':
        return self._transition(
            ReservationStatus.AWAITING_PAYMENT, now=now, payment_deadline_at=deadline_at
        )

    def confirm(self, *, now: Optional[datetime] = None) -> 'Reservation':
        return self._transition(ReservationStatus.CONFIRMED, now=now)

    def cancel(self, *, reason_code: ReasonCode, now: Optional[datetime] = None) -> 'Reservation':
        return self._transition(ReservationStatus.CANCELLED, now=now, reason_code=reason_code)

    def fail(
        self, *, reason_code: Optional[ReasonCode], now: Optional[datetime] = None
    ) -> 'Reservation':
        return self._transition(ReservationStatus.FAILED, now=now, reason_code=reason_code)

    def _transition(
        self, target: ReservationStatus, *, now: Optional[datetime], **changes
    ) -> 'Reservation':
        """
        Returns a new instance one version ahead. A transition requested on a
        terminal reservation returns self unchanged (callers check `is`).
        """
        if self.is_terminal:
            return self
        if target not in _ALLOWED_TRANSITIONS[self.status]:
            raise ConflictError(f'Reservation {self.id} cannot move from {self.status} to {target}')
        return attrs.evolve(
            self,
            status=target,
            version=self.version + 1,
            updated_at=now or _utc_now(),
            **changes,
        )
