from typing import List
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.service.notification.domain.entity.notification_entity import (
    Notification,
    NotificationChannel,
)
from src.service.notification.driven_adapter.model.notification_model import (
    NotificationRecordModel,
)
from src.service.shared_kernel.domain.enum.event_type import EventType


class NotificationRecordRepo:
    """Audit trail of delivered notifications."""

    def __init__(self, *, session: AsyncSession) -> None:
        self.session = session

    async def add(self, *, notification: Notification) -> None:
        self.session.add(
            NotificationRecordModel(
                id=notification.id,
                reservation_id=notification.reservation_id,
                channel=notification.channel.value,
                event_type=notification.event_type.value,
                subject=notification.subject,
                sent_at=notification.sent_at,
            )
        )
        await self.session.flush()

    async def list_for_reservation(self, *, reservation_id: UUID) -> List[Notification]:
        result = await self.session.execute(
            select(NotificationRecordModel)
            .where(NotificationRecordModel.reservation_id == reservation_id)
            .order_by(NotificationRecordModel.sent_at)
        )
        return [
            Notification(
                id=row.id,
                reservation_id=row.reservation_id,
                channel=NotificationChannel(row.channel),
                event_type=EventType(row.event_type),
                subject=row.subject,
                body='',
                sent_at=row.sent_at,
            )
            for row in result.scalars().all()
        ]
