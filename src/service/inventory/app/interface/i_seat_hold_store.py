from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from src.service.inventory.domain.entity.seat_hold_entity import SeatHold


class ISeatHoldStore(ABC):
    """
    Atomic compare-and-set store for seat holds. Every method is a single atomic
    step against the backing store; callers never read-then-write.
    """

    @abstractmethod
    async def try_acquire(
        self, *, seat_key: str, reservation_id: UUID, expires_at: datetime, now: datetime
    ) -> SeatHold:
        """Create the hold, or return it unchanged if this reservation already owns it.
        Raises ConflictError while another reservation's active hold exists."""
        pass

    @abstractmethod
    async def release(self, *, seat_key: str, reservation_id: UUID) -> bool:
        """Remove the hold if this reservation owns it. False when there was nothing to do."""
        pass

    @abstractmethod
    async def confirm(self, *, seat_key: str, reservation_id: UUID, now: datetime) -> SeatHold:
        """Make the hold permanent. Raises ConflictError if it is missing, expired or
        owned by another reservation."""
        pass

    @abstractmethod
    async def get(self, *, seat_key: str, now: datetime) -> Optional[SeatHold]:
        """Active hold on the seat, or None (expired holds are reported as None)."""
        pass

    @abstractmethod
    async def pop_expired(self, *, now: datetime, limit: int) -> List[SeatHold]:
        """Remove and return unconfirmed holds whose expiry has passed."""
        pass
