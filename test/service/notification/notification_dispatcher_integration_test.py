"""
Integration tests for NotificationDispatcher

Test Coverage:
1. Terminal events produce one notification and one audit record
2. Redelivery of the same event sends nothing
3. A failed or cancelled send leaves the event retryable
4. Non-terminal events are rejected
"""

from unittest.mock import AsyncMock
from uuid import uuid4

import anyio
import pytest

from src.platform.exception.exceptions import ValidationError
from src.service.notification.app.command.notification_dispatcher import NotificationDispatcher
from src.service.notification.driven_adapter.repo.notification_record_repo import (
    NotificationRecordRepo,
)
from src.service.notification.driven_adapter.sender.mock_notification_sender import (
    MockNotificationSender,
)
from src.service.shared_kernel.domain.enum.event_type import EventType
from src.service.shared_kernel.domain.enum.reason_code import ReasonCode
from src.service.shared_kernel.domain.event_envelope import (
    EventEnvelope,
    PaymentDeadlineExpiredPayload,
    ReservationCancelledPayload,
    ReservationConfirmedPayload,
)


@pytest.fixture
def sender() -> MockNotificationSender:
    return MockNotificationSender()


@pytest.fixture
def dispatcher(database, ledger, sender) -> NotificationDispatcher:
    return NotificationDispatcher(database=database, ledger=ledger, sender=sender)


def _confirmed(reservation_id) -> EventEnvelope:
    return EventEnvelope.build(
        payload=ReservationConfirmedPayload(reservation_id=reservation_id),
        idempotency_key=f'reservation.confirmed:{reservation_id}',
    )


async def _records(database, reservation_id):
    async with database.session() as session:
        return await NotificationRecordRepo(session=session).list_for_reservation(
            reservation_id=reservation_id
        )


class TestNotificationDispatcher:
    @pytest.mark.asyncio
    async def test_confirmation_is_sent_and_recorded(self, dispatcher, sender, database):
        reservation_id = uuid4()

        notification = await dispatcher.dispatch(_confirmed(reservation_id))

        assert notification.sent_at is not None
        assert 'confirmed' in notification.subject
        [sent] = sender.sent_for(reservation_id)
        assert sent.id == notification.id
        [record] = await _records(database, reservation_id)
        assert record.id == notification.id
        assert record.event_type is EventType.RESERVATION_CONFIRMED

    @pytest.mark.asyncio
    async def test_cancellation_explains_the_reason(self, dispatcher):
        reservation_id = uuid4()

        notification = await dispatcher.dispatch(
            EventEnvelope.build(
                payload=ReservationCancelledPayload(
                    reservation_id=reservation_id, reason_code=ReasonCode.DECLINED
                ),
                idempotency_key=f'reservation.cancelled:{reservation_id}',
            )
        )

        assert 'cancelled' in notification.subject
        assert 'declined' in notification.body

    @pytest.mark.asyncio
    async def test_redelivery_sends_nothing(self, dispatcher, sender, database):
        reservation_id = uuid4()
        envelope = _confirmed(reservation_id)

        await dispatcher.dispatch(envelope)
        assert await dispatcher.dispatch(envelope) is None

        assert len(sender.sent) == 1
        assert len(await _records(database, reservation_id)) == 1

    @pytest.mark.asyncio
    async def test_failed_send_can_be_retried(self, database, ledger):
        flaky = AsyncMock()
        flaky.send.side_effect = [ConnectionError('smtp down'), None]
        dispatcher = NotificationDispatcher(database=database, ledger=ledger, sender=flaky)
        envelope = _confirmed(uuid4())

        with pytest.raises(ConnectionError):
            await dispatcher.dispatch(envelope)
        notification = await dispatcher.dispatch(envelope)

        assert notification is not None
        assert flaky.send.await_count == 2

    @pytest.mark.asyncio
    async def test_cancelled_send_is_redelivered_and_sent_once(self, database, ledger, sender):
        stalls = {'left': 1}

        async def stall_first_send(notification):
            if stalls['left']:
                stalls['left'] -= 1
                await anyio.sleep_forever()
            await sender.send(notification)

        stalling = AsyncMock()
        stalling.send.side_effect = stall_first_send
        dispatcher = NotificationDispatcher(database=database, ledger=ledger, sender=stalling)
        reservation_id = uuid4()
        envelope = _confirmed(reservation_id)

        with anyio.move_on_after(0.05) as scope:
            await dispatcher.dispatch(envelope)
        assert scope.cancelled_caught

        notification = await dispatcher.dispatch(envelope)

        assert notification is not None
        assert len(sender.sent_for(reservation_id)) == 1
        assert await dispatcher.dispatch(envelope) is None

    @pytest.mark.asyncio
    async def test_non_terminal_event_is_rejected(self, dispatcher, sender):
        reservation_id = uuid4()

        with pytest.raises(ValidationError):
            await dispatcher.dispatch(
                EventEnvelope.build(
                    payload=PaymentDeadlineExpiredPayload(reservation_id=reservation_id),
                    idempotency_key=f'payment-deadline:{reservation_id}',
                )
            )

        assert sender.sent == []
