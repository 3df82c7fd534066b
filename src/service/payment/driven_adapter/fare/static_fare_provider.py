from src.service.payment.app.interface.i_fare_provider import Fare, IFareProvider


class StaticFareProvider(IFareProvider):
    """One configured fare for every seat. Pricing is owned by an external system."""

    def __init__(self, *, amount: int, currency: str) -> None:
        self.fare = Fare(amount=amount, currency=currency)

    async def fare_for(self, *, flight_ref: str, seat_ref: str) -> Fare:
        return self.fare
