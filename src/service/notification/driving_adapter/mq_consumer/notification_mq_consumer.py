"""
Notification MQ Consumer

Consumer group: notification-dispatcher
- reservation.confirmed / reservation.cancelled -> notify the passenger
"""

from src.platform.message_queue.i_event_bus import IEventBus
from src.service.notification.app.command.notification_dispatcher import (
    NOTIFICATION_CONSUMER,
    NotificationDispatcher,
)
from src.service.shared_kernel.domain.enum.event_type import EventType
from src.service.shared_kernel.domain.event_envelope import EventEnvelope


NOTIFIED_EVENT_TYPES = frozenset({EventType.RESERVATION_CONFIRMED, EventType.RESERVATION_CANCELLED})


class NotificationMqConsumer:
    def __init__(self, *, notification_dispatcher: NotificationDispatcher) -> None:
        self.notification_dispatcher = notification_dispatcher

    async def handle(self, envelope: EventEnvelope) -> None:
        await self.notification_dispatcher.dispatch(envelope)

    def register(self, *, event_bus: IEventBus, partitions: int) -> None:
        event_bus.register_consumer_group(
            group_id=NOTIFICATION_CONSUMER,
            event_types=NOTIFIED_EVENT_TYPES,
            handler=self.handle,
            partitions=partitions,
        )
