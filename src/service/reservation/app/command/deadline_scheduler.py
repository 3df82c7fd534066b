"""
Deadline Scheduler - payment deadline timers for AWAITING_PAYMENT reservations

A min-heap of (deadline, reservation id) plus a dict holding the live deadline
per reservation. Cancelling only drops the dict entry; stale heap entries are
skipped when they surface. A due deadline is published to the bus as
reservation.payment_deadline_expired, so the timeout goes through the same
ordered, idempotent consumer path as payment results.
"""

from datetime import datetime, timezone
import heapq
import threading
from typing import Callable, Dict, List, Tuple
from uuid import UUID

import anyio

from src.platform.logging.loguru_io import Logger
from src.platform.message_queue.i_event_bus import IEventBus
from src.service.shared_kernel.domain.event_envelope import (
    EventEnvelope,
    PaymentDeadlineExpiredPayload,
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DeadlineScheduler:
    def __init__(
        self,
        *,
        event_bus: IEventBus,
        tick_seconds: float = 0.5,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.event_bus = event_bus
        self.tick_seconds = tick_seconds
        self.clock = clock
        self._lock = threading.Lock()
        self._heap: List[Tuple[datetime, UUID]] = []
        self._deadlines: Dict[UUID, datetime] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._deadlines)

    def is_scheduled(self, *, reservation_id: UUID) -> bool:
        with self._lock:
            return reservation_id in self._deadlines

    def schedule(self, *, reservation_id: UUID, deadline_at: datetime) -> None:
        with self._lock:
            self._deadlines[reservation_id] = deadline_at
            heapq.heappush(self._heap, (deadline_at, reservation_id))

    def cancel(self, *, reservation_id: UUID) -> None:
        with self._lock:
            self._deadlines.pop(reservation_id, None)

    def _pop_due(self, now: datetime) -> List[Tuple[UUID, datetime]]:
        due = []
        with self._lock:
            while self._heap and self._heap[0][0] <= now:
                deadline_at, reservation_id = heapq.heappop(self._heap)
                if self._deadlines.get(reservation_id) != deadline_at:
                    continue  # cancelled or rescheduled
                del self._deadlines[reservation_id]
                due.append((reservation_id, deadline_at))
        return due

    async def fire_due(self) -> List[UUID]:
        fired = []
        for reservation_id, deadline_at in self._pop_due(self.clock()):
            envelope = EventEnvelope.build(
                payload=PaymentDeadlineExpiredPayload(reservation_id=reservation_id),
                idempotency_key=f'payment-deadline:{reservation_id}',
            )
            try:
                await self.event_bus.publish(envelope)
            except Exception as e:
                # Re-arm so the next tick tries again
                self.schedule(reservation_id=reservation_id, deadline_at=deadline_at)
                Logger.base.error(
                    f'⏰ [DEADLINE] Could not publish timeout for {reservation_id}: {e}'
                )
                continue
            Logger.base.info(f'⏰ [DEADLINE] Payment deadline passed for {reservation_id}')
            fired.append(reservation_id)
        return fired

    async def run(self) -> None:
        Logger.base.info(f'⏰ [DEADLINE] Scheduler started (tick {self.tick_seconds}s)')
        while True:
            await self.fire_due()
            await anyio.sleep(self.tick_seconds)
