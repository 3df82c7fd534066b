from typing import Iterable, Optional

from src.platform.exception.exceptions import ValidationError
from src.service.reservation.app.interface.i_reference_validator import IReferenceValidator


class StaticReferenceValidator(IReferenceValidator):
    """
    Accepts any well-formed reference, or only configured flights when a list is given.
    Passenger and seat catalogues live outside this system.
    """

    def __init__(self, *, known_flights: Optional[Iterable[str]] = None) -> None:
        self.known_flights = frozenset(known_flights) if known_flights else None

    async def validate(self, *, passenger_ref: str, flight_ref: str, seat_ref: str) -> None:
        if self.known_flights is not None and flight_ref not in self.known_flights:
            raise ValidationError(f'Unknown flight {flight_ref}')
