from abc import ABC, abstractmethod
from typing import Optional
from uuid import UUID

from src.service.payment.domain.entity.payment_entity import Payment


class IPaymentRepo(ABC):
    @abstractmethod
    async def add(self, *, payment: Payment) -> None:
        pass

    @abstractmethod
    async def update(self, *, payment: Payment) -> None:
        pass

    @abstractmethod
    async def get_by_reservation(self, *, reservation_id: UUID) -> Optional[Payment]:
        pass
