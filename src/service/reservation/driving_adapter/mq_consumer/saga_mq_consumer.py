"""
Saga MQ Consumer

Consumer group: saga-coordinator
- payment.succeeded / payment.failed       -> confirm or compensate
- reservation.payment_deadline_expired     -> cancel with TIMEOUT
- seat_hold.expired                        -> cancel with SEAT_CONFLICT
"""

from typing import Awaitable, Callable, Dict

from src.platform.exception.exceptions import ValidationError
from src.platform.message_queue.i_event_bus import IEventBus
from src.service.reservation.app.command.saga_coordinator import SAGA_CONSUMER, SagaCoordinator
from src.service.shared_kernel.domain.enum.event_type import EventType
from src.service.shared_kernel.domain.event_envelope import EventEnvelope


class SagaMqConsumer:
    def __init__(self, *, saga_coordinator: SagaCoordinator) -> None:
        self._handlers: Dict[EventType, Callable[[EventEnvelope], Awaitable[object]]] = {
            EventType.PAYMENT_SUCCEEDED: saga_coordinator.on_payment_result,
            EventType.PAYMENT_FAILED: saga_coordinator.on_payment_result,
            EventType.PAYMENT_DEADLINE_EXPIRED: saga_coordinator.on_timeout,
            EventType.SEAT_HOLD_EXPIRED: saga_coordinator.on_hold_expired,
        }

    async def handle(self, envelope: EventEnvelope) -> None:
        handler = self._handlers.get(envelope.event_type)
        if handler is None:
            raise ValidationError(f'{SAGA_CONSUMER} does not handle {envelope.event_type}')
        await handler(envelope)

    def register(self, *, event_bus: IEventBus, partitions: int) -> None:
        event_bus.register_consumer_group(
            group_id=SAGA_CONSUMER,
            event_types=frozenset(self._handlers),
            handler=self.handle,
            partitions=partitions,
        )
