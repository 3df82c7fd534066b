"""
Hold Expiry Sweeper

Periodically removes expired seat holds and emits seat_hold.expired for each, so
the saga can compensate a reservation still waiting for payment on that seat.
The saga decides whether the trigger still matters; the sweeper does not look
at reservation state.
"""

from typing import List

import anyio

from src.platform.logging.loguru_io import Logger
from src.platform.message_queue.i_event_bus import IEventBus
from src.service.inventory.app.command.inventory_holder import InventoryHolder
from src.service.inventory.domain.entity.seat_hold_entity import SeatHold
from src.service.shared_kernel.domain.event_envelope import EventEnvelope, SeatHoldExpiredPayload


class HoldExpirySweeper:
    def __init__(
        self,
        *,
        inventory_holder: InventoryHolder,
        event_bus: IEventBus,
        interval_seconds: float,
    ) -> None:
        self.inventory_holder = inventory_holder
        self.event_bus = event_bus
        self.interval_seconds = interval_seconds

    async def sweep_once(self) -> List[SeatHold]:
        expired = await self.inventory_holder.sweep_expired()
        for hold in expired:
            envelope = EventEnvelope.build(
                payload=SeatHoldExpiredPayload(
                    reservation_id=hold.reservation_id, seat_key=hold.seat_key
                ),
                idempotency_key=f'seat-hold-expired:{hold.reservation_id}:{hold.version}',
            )
            await self.event_bus.publish(envelope)
            Logger.base.info(
                f'⌛ [SWEEPER] Hold on {hold.seat_key} for reservation {hold.reservation_id} expired'
            )
        return expired

    async def run(self) -> None:
        Logger.base.info(f'🧹 [SWEEPER] Started (every {self.interval_seconds}s)')
        while True:
            try:
                await self.sweep_once()
            except Exception as e:
                Logger.base.exception(f'❌ [SWEEPER] Sweep failed: {e}')
            await anyio.sleep(self.interval_seconds)
