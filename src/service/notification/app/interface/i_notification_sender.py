from abc import ABC, abstractmethod

from src.service.notification.domain.entity.notification_entity import Notification


class INotificationSender(ABC):
    @abstractmethod
    async def send(self, notification: Notification) -> None:
        """Deliver one notification; raise on failure so the message is redelivered."""
        pass
