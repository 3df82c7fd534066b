"""
Payment MQ Consumer

Consumer group: payment-service
- reservation.created   -> charge the fare
- reservation.cancelled -> refund if the charge had succeeded
"""

from typing import Awaitable, Callable, Dict

from src.platform.exception.exceptions import ValidationError
from src.platform.message_queue.i_event_bus import IEventBus
from src.service.payment.app.command.charge_reservation_use_case import (
    PAYMENT_CONSUMER,
    ChargeReservationUseCase,
)
from src.service.payment.app.command.refund_payment_use_case import RefundPaymentUseCase
from src.service.shared_kernel.domain.enum.event_type import EventType
from src.service.shared_kernel.domain.event_envelope import EventEnvelope


class PaymentMqConsumer:
    def __init__(
        self,
        *,
        charge_reservation_use_case: ChargeReservationUseCase,
        refund_payment_use_case: RefundPaymentUseCase,
    ) -> None:
        self._handlers: Dict[EventType, Callable[[EventEnvelope], Awaitable[object]]] = {
            EventType.RESERVATION_CREATED: charge_reservation_use_case.execute,
            EventType.RESERVATION_CANCELLED: refund_payment_use_case.execute,
        }

    async def handle(self, envelope: EventEnvelope) -> None:
        handler = self._handlers.get(envelope.event_type)
        if handler is None:
            raise ValidationError(f'{PAYMENT_CONSUMER} does not handle {envelope.event_type}')
        await handler(envelope)

    def register(self, *, event_bus: IEventBus, partitions: int) -> None:
        event_bus.register_consumer_group(
            group_id=PAYMENT_CONSUMER,
            event_types=frozenset(self._handlers),
            handler=self.handle,
            partitions=partitions,
        )
