"""
Notification Dispatcher - one notification per terminal reservation event

Flow:
1. Ledger claim on (notification-dispatcher, idempotency key)
2. Render and send
3. One transaction: audit record + ledger APPLIED

A crash or cancellation between 2 and 3 gives the claim back, so the redelivery
sends again; a redelivery after 3 is a ledger DUPLICATE and sends nothing.
"""

from typing import Optional

from src.platform.database.db_setting import Database
from src.platform.idempotency.idempotency_ledger import IdempotencyLedger, LedgerDecision
from src.platform.logging.loguru_io import Logger
from src.service.notification.app.interface.i_notification_sender import INotificationSender
from src.service.notification.domain.entity.notification_entity import Notification
from src.service.notification.driven_adapter.repo.notification_record_repo import (
    NotificationRecordRepo,
)
from src.service.shared_kernel.domain.event_envelope import EventEnvelope


NOTIFICATION_CONSUMER = 'notification-dispatcher'


class NotificationDispatcher:
    def __init__(
        self,
        *,
        database: Database,
        ledger: IdempotencyLedger,
        sender: INotificationSender,
    ) -> None:
        self.database = database
        self.ledger = ledger
        self.sender = sender

    @Logger.io
    async def dispatch(self, envelope: EventEnvelope) -> Optional[Notification]:
        notification = Notification.for_event(envelope)

        async with self.ledger.claim(
            consumer=NOTIFICATION_CONSUMER, idempotency_key=envelope.idempotency_key
        ) as decision:
            if decision is LedgerDecision.DUPLICATE:
                return None

            await self.sender.send(notification)
            notification = notification.mark_sent()
            async with self.database.transaction() as session:
                await NotificationRecordRepo(session=session).add(notification=notification)
                await self.ledger.mark_applied(
                    session=session,
                    consumer=NOTIFICATION_CONSUMER,
                    idempotency_key=envelope.idempotency_key,
                    result=str(notification.id),
                )

        Logger.base.info(
            f'📧 [NOTIFY] {notification.channel} sent for reservation {notification.reservation_id} '
            f'({envelope.event_type})'
        )
        return notification
