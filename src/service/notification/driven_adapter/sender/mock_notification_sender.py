"""Mock notification sender that records messages instead of delivering them."""

from typing import List

from src.platform.logging.loguru_io import Logger
from src.service.notification.app.interface.i_notification_sender import INotificationSender
from src.service.notification.domain.entity.notification_entity import Notification


class MockNotificationSender(INotificationSender):
    def __init__(self, debug: bool = False):
        self.debug = debug
        self.sent: List[Notification] = []  # Store sent notifications for testing

    @Logger.io
    async def send(self, notification: Notification) -> None:
        self.sent.append(notification)

        if self.debug:
            print('\n' + '=' * 50)
            print(f'📧 MOCK {notification.channel} SENT')
            print('=' * 50)
            print(f'Reservation: {notification.reservation_id}')
            print(f'Subject: {notification.subject}')
            print('-' * 50)
            print(notification.body)
            print('=' * 50 + '\n')

    def sent_for(self, reservation_id) -> List[Notification]:
        return [n for n in self.sent if n.reservation_id == reservation_id]
