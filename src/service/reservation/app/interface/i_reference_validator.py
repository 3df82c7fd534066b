from abc import ABC, abstractmethod


class IReferenceValidator(ABC):
    """Checks passenger / flight / seat references against their owning systems."""

    @abstractmethod
    async def validate(self, *, passenger_ref: str, flight_ref: str, seat_ref: str) -> None:
        """Raise ValidationError for an unknown reference."""
        pass
