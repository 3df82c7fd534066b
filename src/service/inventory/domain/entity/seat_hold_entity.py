from datetime import datetime
from uuid import UUID

import attrs


def make_seat_key(*, flight_ref: str, seat_ref: str) -> str:
    return f'{flight_ref}:{seat_ref}'


@attrs.frozen
class SeatHold:
    """
    Exclusive, time-limited claim on one seat by one reservation.

    A hold that has not been confirmed stops counting once expires_at passes,
    whether or not the sweeper has removed it yet. version increases on every
    change so a stale writer can be told apart from the current owner.
    """

    seat_key: str
    reservation_id: UUID
    expires_at: datetime
    version: int = 1
    confirmed: bool = False

    def is_active(self, *, now: datetime) -> bool:
        return self.confirmed or self.expires_at > now

    def is_owned_by(self, reservation_id: UUID) -> bool:
        return self.reservation_id == reservation_id
