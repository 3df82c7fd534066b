"""
In-Memory Seat Hold Store - single-process ISeatHoldStore

All operations run under one lock, which makes each of them an atomic
compare-and-set exactly like the Lua scripts of the Kvrocks store.
"""

from datetime import datetime
import threading
from typing import Dict, List, Optional
from uuid import UUID

import attrs

from src.platform.exception.exceptions import ConflictError
from src.service.inventory.app.interface.i_seat_hold_store import ISeatHoldStore
from src.service.inventory.domain.entity.seat_hold_entity import SeatHold


class InMemorySeatHoldStore(ISeatHoldStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._holds: Dict[str, SeatHold] = {}
        self._versions: Dict[str, int] = {}

    async def try_acquire(
        self, *, seat_key: str, reservation_id: UUID, expires_at: datetime, now: datetime
    ) -> SeatHold:
        with self._lock:
            current = self._holds.get(seat_key)
            if current is not None and current.is_active(now=now):
                if current.is_owned_by(reservation_id):
                    return current
                raise ConflictError(f'Seat {seat_key} is held by another reservation')

            version = self._versions.get(seat_key, 0) + 1
            hold = SeatHold(
                seat_key=seat_key,
                reservation_id=reservation_id,
                expires_at=expires_at,
                version=version,
            )
            self._holds[seat_key] = hold
            self._versions[seat_key] = version
            return hold

    async def release(self, *, seat_key: str, reservation_id: UUID) -> bool:
        with self._lock:
            current = self._holds.get(seat_key)
            if current is None or not current.is_owned_by(reservation_id):
                return False
            del self._holds[seat_key]
            return True

    async def confirm(self, *, seat_key: str, reservation_id: UUID, now: datetime) -> SeatHold:
        with self._lock:
            current = self._holds.get(seat_key)
            if current is None:
                raise ConflictError(f'No hold on seat {seat_key}')
            if not current.is_owned_by(reservation_id):
                raise ConflictError(f'Seat {seat_key} is held by another reservation')
            if current.confirmed:
                return current
            if not current.is_active(now=now):
                raise ConflictError(f'Hold on seat {seat_key} expired')

            confirmed = attrs.evolve(current, confirmed=True, version=current.version + 1)
            self._holds[seat_key] = confirmed
            self._versions[seat_key] = confirmed.version
            return confirmed

    async def get(self, *, seat_key: str, now: datetime) -> Optional[SeatHold]:
        with self._lock:
            current = self._holds.get(seat_key)
        if current is None or not current.is_active(now=now):
            return None
        return current

    async def pop_expired(self, *, now: datetime, limit: int) -> List[SeatHold]:
        with self._lock:
            expired = [hold for hold in self._holds.values() if not hold.is_active(now=now)]
            expired.sort(key=lambda hold: hold.expires_at)
            expired = expired[:limit]
            for hold in expired:
                del self._holds[hold.seat_key]
        return expired
