from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from src.service.reservation.domain.entity.reservation_entity import Reservation


class IReservationRepo(ABC):
    @abstractmethod
    async def add(self, *, reservation: Reservation) -> None:
        pass

    @abstractmethod
    async def update(self, *, reservation: Reservation, expected_version: int) -> None:
        """Write only if the stored version still equals expected_version, else StaleVersionError."""
        pass

    @abstractmethod
    async def get(self, *, reservation_id: UUID) -> Optional[Reservation]:
        pass

    @abstractmethod
    async def list_awaiting_payment(self) -> List[Reservation]:
        pass

    @abstractmethod
    async def list_pending_created_before(self, *, before: datetime) -> List[Reservation]:
        pass
