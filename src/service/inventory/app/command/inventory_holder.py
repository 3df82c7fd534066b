"""
Inventory Holder - seat hold lifecycle on top of an ISeatHoldStore

    acquire  -> exclusive hold for ttl (ConflictError if another reservation holds it)
    confirm  -> hold becomes permanent, only by its owner and only before expiry
    release  -> idempotent; releasing an absent or foreign hold is a no-op
    sweep    -> remove expired unconfirmed holds and report them
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional
from uuid import UUID

from opentelemetry import trace

from src.platform.exception.exceptions import ConflictError
from src.platform.logging.loguru_io import Logger
from src.platform.metrics.saga_metrics import metrics
from src.service.inventory.app.interface.i_seat_hold_store import ISeatHoldStore
from src.service.inventory.domain.entity.seat_hold_entity import SeatHold


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class InventoryHolder:
    def __init__(
        self,
        *,
        store: ISeatHoldStore,
        hold_ttl_seconds: float,
        sweep_batch_size: int = 500,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.store = store
        self.hold_ttl = timedelta(seconds=hold_ttl_seconds)
        self.sweep_batch_size = sweep_batch_size
        self.clock = clock
        self.tracer = trace.get_tracer(__name__)

    @Logger.io
    async def acquire(self, *, seat_key: str, reservation_id: UUID) -> SeatHold:
        with self.tracer.start_as_current_span(
            'inventory.acquire', attributes={'seat.key': seat_key}
        ):
            now = self.clock()
            try:
                hold = await self.store.try_acquire(
                    seat_key=seat_key,
                    reservation_id=reservation_id,
                    expires_at=now + self.hold_ttl,
                    now=now,
                )
            except ConflictError:
                metrics.record_seat_hold(operation='acquire', result='conflict')
                raise
            metrics.record_seat_hold(operation='acquire', result='ok')
            return hold

    @Logger.io
    async def confirm(self, *, seat_key: str, reservation_id: UUID) -> SeatHold:
        with self.tracer.start_as_current_span(
            'inventory.confirm', attributes={'seat.key': seat_key}
        ):
            try:
                hold = await self.store.confirm(
                    seat_key=seat_key, reservation_id=reservation_id, now=self.clock()
                )
            except ConflictError:
                metrics.record_seat_hold(operation='confirm', result='conflict')
                raise
            metrics.record_seat_hold(operation='confirm', result='ok')
            return hold

    @Logger.io
    async def release(self, *, seat_key: str, reservation_id: UUID) -> bool:
        released = await self.store.release(seat_key=seat_key, reservation_id=reservation_id)
        metrics.record_seat_hold(operation='release', result='ok' if released else 'noop')
        return released

    async def get(self, *, seat_key: str) -> Optional[SeatHold]:
        return await self.store.get(seat_key=seat_key, now=self.clock())

    async def sweep_expired(self) -> List[SeatHold]:
        expired = await self.store.pop_expired(now=self.clock(), limit=self.sweep_batch_size)
        for _ in expired:
            metrics.record_seat_hold(operation='expire', result='ok')
        return expired
