from abc import ABC, abstractmethod

from src.service.payment.domain.value_object.payment_request import PaymentRequest, PaymentResult


class IPaymentGateway(ABC):
    """Raw external gateway. Any exception means the gateway did not give an answer."""

    @abstractmethod
    async def charge(self, request: PaymentRequest) -> PaymentResult:
        pass

    @abstractmethod
    async def refund(self, *, request: PaymentRequest, gateway_reference: str | None) -> None:
        pass
