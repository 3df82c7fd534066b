from abc import ABC, abstractmethod

import attrs


@attrs.frozen
class Fare:
    amount: int  # minor units
    currency: str


class IFareProvider(ABC):
    @abstractmethod
    async def fare_for(self, *, flight_ref: str, seat_ref: str) -> Fare:
        pass
