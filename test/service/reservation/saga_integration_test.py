"""
Integration tests for the booking saga end to end

Real coordinator, payment service, notification dispatcher, ledger and outbox on
SQLite; in-memory bus and hold store; mock payment gateway.

Test Coverage:
1. Happy path: AWAITING_PAYMENT -> CONFIRMED, hold confirmed, one notification
2. Compensation: declined / gateway unavailable / timeout / hold expiry / user cancel
   (a cancel racing another writer answers with the committed state)
3. Duplicates and late events change nothing
4. Concurrent bookings of one seat have exactly one winner
5. Recovery: stale PENDING reaper, deadline restore
"""

import anyio
import pytest
from sqlalchemy import select
from uuid_utils.compat import uuid7

from src.platform.database.unit_of_work import SqlAlchemyUnitOfWork
from src.platform.exception.exceptions import ConflictError, NotFoundError, ValidationError
from src.platform.outbox.outbox_model import OutboxStatus
from src.service.payment.domain.entity.payment_entity import PaymentStatus
from src.service.payment.driven_adapter.gateway.mock_payment_gateway import GatewayBehavior
from src.service.reservation.domain.entity.reservation_entity import (
    Reservation,
    ReservationStatus,
)
from src.service.reservation.driven_adapter.model.reservation_model import ReservationModel
from src.service.shared_kernel.domain.enum.event_type import EventType
from src.service.shared_kernel.domain.enum.reason_code import ReasonCode
from src.service.shared_kernel.domain.event_envelope import (
    EventEnvelope,
    PaymentSucceededPayload,
    ReservationCreatedPayload,
)


async def _book(saga, seat_ref='12A', flight_ref='F123') -> Reservation:
    return await saga.coordinator.create(
        passenger_ref='P-1001', flight_ref=flight_ref, seat_ref=seat_ref
    )


async def _outbox_count(database, status: OutboxStatus) -> int:
    async with SqlAlchemyUnitOfWork(database) as uow:
        return await uow.outbox.count_by_status(status=status)


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_paid_reservation_is_confirmed(self, saga):
        async with saga.running():
            created = await _book(saga)

            assert created.status is ReservationStatus.AWAITING_PAYMENT
            assert saga.deadline_scheduler.is_scheduled(reservation_id=created.id)

            await saga.settle()

        reservation = await saga.reservation(created.id)
        assert reservation.status is ReservationStatus.CONFIRMED
        assert reservation.reason_code is None

        hold = await saga.inventory_holder.get(seat_key='F123:12A')
        assert hold.reservation_id == created.id
        assert hold.confirmed

        assert (await saga.payment_for(created.id)).status is PaymentStatus.SUCCEEDED
        assert not saga.deadline_scheduler.is_scheduled(reservation_id=created.id)
        assert len(saga.published(EventType.RESERVATION_CONFIRMED, created.id)) == 1
        [notification] = saga.sender.sent_for(created.id)
        assert notification.event_type is EventType.RESERVATION_CONFIRMED
        assert saga.event_bus.dead_letters == []

    @pytest.mark.asyncio
    async def test_timestamps_come_from_the_coordinator_clock(self, saga, fake_clock):
        booked_at = fake_clock.now

        async with saga.running():
            created = await _book(saga)
            fake_clock.advance(5)
            await saga.settle()

        assert created.created_at == created.updated_at == booked_at
        confirmed = await saga.reservation(created.id)
        assert confirmed.created_at == booked_at
        assert confirmed.updated_at == fake_clock.now

    @pytest.mark.asyncio
    async def test_events_share_the_correlation_id(self, saga):
        async with saga.running():
            created = await _book(saga)
            await saga.settle()

        chain = [
            saga.published(event_type, created.id)[0]
            for event_type in (
                EventType.RESERVATION_CREATED,
                EventType.PAYMENT_SUCCEEDED,
                EventType.RESERVATION_CONFIRMED,
            )
        ]
        assert {envelope.correlation_id for envelope in chain} == {str(created.id)}
        assert chain[1].causation_id == str(chain[0].event_id)
        assert chain[2].causation_id == str(chain[1].event_id)


class TestCompensation:
    @pytest.mark.asyncio
    async def test_declined_payment_cancels_and_frees_the_seat(self, saga):
        saga.gateway.script(GatewayBehavior.DECLINE)

        async with saga.running():
            declined = await _book(saga)
            await saga.settle()

            rebooked = await _book(saga)
            await saga.settle()

        reservation = await saga.reservation(declined.id)
        assert reservation.status is ReservationStatus.CANCELLED
        assert reservation.reason_code is ReasonCode.DECLINED
        assert (await saga.reservation(rebooked.id)).status is ReservationStatus.CONFIRMED
        assert saga.sender.sent_for(declined.id)[0].event_type is EventType.RESERVATION_CANCELLED

    @pytest.mark.asyncio
    async def test_unreachable_gateway_cancels_with_gateway_unavailable(self, saga):
        saga.gateway.default_behavior = GatewayBehavior.ERROR

        async with saga.running():
            created = await _book(saga)
            await saga.settle()

        reservation = await saga.reservation(created.id)
        assert reservation.status is ReservationStatus.CANCELLED
        assert reservation.reason_code is ReasonCode.GATEWAY_UNAVAILABLE
        assert (await saga.payment_for(created.id)).status is PaymentStatus.GATEWAY_ERROR
        assert await saga.inventory_holder.get(seat_key='F123:12A') is None

    @pytest.mark.asyncio
    async def test_payment_deadline_cancels_exactly_once(self, saga_without_payment, fake_clock):
        saga = saga_without_payment

        async with saga.running():
            created = await _book(saga)
            await saga.settle()
            fake_clock.advance(31)

            assert await saga.deadline_scheduler.fire_due() == [created.id]
            await saga.settle()

            # A second trigger for the same deadline is a ledger duplicate
            await saga.event_bus.publish(saga.published(EventType.PAYMENT_DEADLINE_EXPIRED)[0])
            await saga.settle()

        reservation = await saga.reservation(created.id)
        assert reservation.status is ReservationStatus.CANCELLED
        assert reservation.reason_code is ReasonCode.TIMEOUT
        assert len(saga.published(EventType.RESERVATION_CANCELLED, created.id)) == 1
        assert len(saga.sender.sent_for(created.id)) == 1
        assert await saga.inventory_holder.get(seat_key='F123:12A') is None

    @pytest.mark.asyncio
    async def test_late_payment_success_after_timeout_is_ignored(
        self, saga_without_payment, fake_clock
    ):
        saga = saga_without_payment

        async with saga.running():
            created = await _book(saga)
            await saga.settle()
            fake_clock.advance(31)
            await saga.deadline_scheduler.fire_due()
            await saga.settle()

            payment_id = uuid7()
            await saga.event_bus.publish(
                EventEnvelope.build(
                    payload=PaymentSucceededPayload(
                        reservation_id=created.id, payment_id=payment_id, amount=15000
                    ),
                    idempotency_key=f'payment-outcome:{payment_id}',
                )
            )
            await saga.settle()

        reservation = await saga.reservation(created.id)
        assert reservation.status is ReservationStatus.CANCELLED
        assert reservation.reason_code is ReasonCode.TIMEOUT
        assert saga.published(EventType.RESERVATION_CONFIRMED) == []

    @pytest.mark.asyncio
    async def test_expired_hold_cancels_with_seat_conflict(self, saga_without_payment, fake_clock):
        saga = saga_without_payment

        async with saga.running():
            created = await _book(saga)
            await saga.settle()
            fake_clock.advance(61)

            expired = await saga.sweeper.sweep_once()
            await saga.settle()

        assert [hold.reservation_id for hold in expired] == [created.id]
        reservation = await saga.reservation(created.id)
        assert reservation.status is ReservationStatus.CANCELLED
        assert reservation.reason_code is ReasonCode.SEAT_CONFLICT
        assert not saga.deadline_scheduler.is_scheduled(reservation_id=created.id)

    @pytest.mark.asyncio
    async def test_payment_after_hold_loss_is_refunded(self, saga, fake_clock):
        saga.gateway.script(GatewayBehavior.HANG)  # first attempt stalls past the hold TTL

        async def _advance_past_hold_ttl() -> None:
            while saga.gateway.calls == 0:
                await anyio.sleep(0.005)
            fake_clock.advance(61)

        async with saga.running():
            created = await _book(saga)
            async with anyio.create_task_group() as tg:
                tg.start_soon(_advance_past_hold_ttl)
                await saga.settle()

        reservation = await saga.reservation(created.id)
        assert reservation.status is ReservationStatus.CANCELLED
        assert reservation.reason_code is ReasonCode.SEAT_CONFLICT
        assert (await saga.payment_for(created.id)).status is PaymentStatus.REFUNDED
        assert len(saga.gateway.refunds) == 1

    @pytest.mark.asyncio
    async def test_user_cancel(self, saga_without_payment):
        saga = saga_without_payment

        async with saga.running():
            created = await _book(saga)
            await saga.settle()

            cancelled = await saga.coordinator.cancel(reservation_id=created.id)
            again = await saga.coordinator.cancel(reservation_id=created.id)
            await saga.settle()

        assert cancelled.status is ReservationStatus.CANCELLED
        assert cancelled.reason_code is ReasonCode.USER_REQUESTED
        assert (again.status, again.version) == (cancelled.status, cancelled.version)
        assert len(saga.published(EventType.RESERVATION_CANCELLED, created.id)) == 1
        assert await saga.inventory_holder.get(seat_key='F123:12A') is None

    @pytest.mark.asyncio
    async def test_cancel_losing_to_a_payment_commit_returns_the_confirmed_reservation(
        self, saga_without_payment, monkeypatch
    ):
        saga = saga_without_payment
        commit_cancel = saga.coordinator._cancel
        raced: list[bool] = []

        async with saga.running():
            created = await _book(saga)
            await saga.settle()
            paid = EventEnvelope.build(
                payload=PaymentSucceededPayload(
                    reservation_id=created.id, payment_id=uuid7(), amount=15000
                ),
                idempotency_key=f'payment-outcome:{created.id}',
            )

            async def payment_commits_first(reservation, **kwargs):
                if not raced:
                    raced.append(True)
                    await saga.coordinator.on_payment_result(paid)
                return await commit_cancel(reservation, **kwargs)

            monkeypatch.setattr(saga.coordinator, '_cancel', payment_commits_first)
            result = await saga.coordinator.cancel(reservation_id=created.id)
            await saga.settle()

        assert raced == [True]
        assert result.status is ReservationStatus.CONFIRMED
        assert (await saga.reservation(created.id)).status is ReservationStatus.CONFIRMED
        assert saga.published(EventType.RESERVATION_CANCELLED) == []
        assert (await saga.inventory_holder.get(seat_key='F123:12A')).confirmed

    @pytest.mark.asyncio
    async def test_concurrent_cancels_both_answer_with_the_cancellation(
        self, saga_without_payment
    ):
        saga = saga_without_payment
        results: list[Reservation] = []

        async with saga.running():
            created = await _book(saga)
            await saga.settle()

            async def cancel() -> None:
                results.append(await saga.coordinator.cancel(reservation_id=created.id))

            async with anyio.create_task_group() as tg:
                tg.start_soon(cancel)
                tg.start_soon(cancel)
            await saga.settle()

        assert [r.status for r in results] == [ReservationStatus.CANCELLED] * 2
        assert results[0].version == results[1].version
        assert len(saga.published(EventType.RESERVATION_CANCELLED, created.id)) == 1

    @pytest.mark.asyncio
    async def test_cancel_of_confirmed_reservation_returns_it_unchanged(self, saga):
        async with saga.running():
            created = await _book(saga)
            await saga.settle()

            result = await saga.coordinator.cancel(reservation_id=created.id)

        assert result.status is ReservationStatus.CONFIRMED
        assert saga.published(EventType.RESERVATION_CANCELLED) == []

    @pytest.mark.asyncio
    async def test_cancel_of_unknown_reservation_is_not_found(self, saga):
        with pytest.raises(NotFoundError):
            await saga.coordinator.cancel(reservation_id=uuid7())


class TestDuplicates:
    @pytest.mark.asyncio
    async def test_redelivered_payment_success_is_applied_once(self, saga):
        async with saga.running():
            created = await _book(saga)
            await saga.settle()

            [succeeded] = saga.published(EventType.PAYMENT_SUCCEEDED, created.id)
            await saga.event_bus.publish(succeeded)
            await saga.event_bus.publish(succeeded)
            await saga.settle()

        assert (await saga.reservation(created.id)).status is ReservationStatus.CONFIRMED
        assert len(saga.published(EventType.RESERVATION_CONFIRMED, created.id)) == 1
        assert len(saga.sender.sent_for(created.id)) == 1

    @pytest.mark.asyncio
    async def test_redelivered_reservation_created_charges_once(self, saga):
        async with saga.running():
            created = await _book(saga)
            await saga.settle()

            await saga.event_bus.publish(saga.published(EventType.RESERVATION_CREATED)[0])
            await saga.settle()

        assert saga.gateway.calls == 1
        assert len(saga.published(EventType.PAYMENT_SUCCEEDED, created.id)) == 1


class TestSeatContention:
    @pytest.mark.asyncio
    async def test_concurrent_bookings_of_one_seat_have_one_winner(self, saga):
        winners, conflicts = [], []

        async def attempt() -> None:
            try:
                winners.append(await _book(saga))
            except ConflictError:
                conflicts.append(True)

        async with saga.running():
            async with anyio.create_task_group() as tg:
                tg.start_soon(attempt)
                tg.start_soon(attempt)
            await saga.settle()

        assert len(winners) == 1
        assert len(conflicts) == 1
        assert (await saga.reservation(winners[0].id)).status is ReservationStatus.CONFIRMED
        assert len(saga.published(EventType.RESERVATION_CREATED)) == 1
        assert saga.gateway.calls == 1

    @pytest.mark.asyncio
    async def test_loser_is_failed_with_seat_conflict(self, saga_without_payment):
        saga = saga_without_payment

        async with saga.running():
            winner = await _book(saga)
            with pytest.raises(ConflictError):
                await _book(saga)
            await saga.settle()

        async with saga.database.session() as session:
            rows = (await session.execute(select(ReservationModel))).scalars().all()
        [loser] = [row for row in rows if row.id != winner.id]
        assert loser.status == ReservationStatus.FAILED.value
        assert loser.reason_code == ReasonCode.SEAT_CONFLICT.value
        assert [e.reservation_id for e in saga.published(EventType.RESERVATION_CREATED)] == [
            winner.id
        ]
        assert await _outbox_count(saga.database, OutboxStatus.STAGED) == 0
        assert (await saga.inventory_holder.get(seat_key='F123:12A')).reservation_id == winner.id

    @pytest.mark.asyncio
    async def test_other_seats_are_independent(self, saga):
        async with saga.running():
            first = await _book(saga, seat_ref='12A')
            second = await _book(saga, seat_ref='12B')
            await saga.settle()

        for reservation_id in (first.id, second.id):
            assert (await saga.reservation(reservation_id)).status is ReservationStatus.CONFIRMED


class TestValidation:
    @pytest.mark.asyncio
    async def test_malformed_reference_writes_nothing(self, saga):
        with pytest.raises(ValidationError):
            await _book(saga, seat_ref='12 A')

        for status in OutboxStatus:
            assert await _outbox_count(saga.database, status) == 0
        assert await saga.inventory_holder.get(seat_key='F123:12 A') is None

    @pytest.mark.asyncio
    async def test_unknown_reservation_is_not_found(self, saga):
        with pytest.raises(NotFoundError):
            await saga.reservation(uuid7())


class TestRecovery:
    @pytest.mark.asyncio
    async def test_stale_pending_reservation_is_failed(self, saga, fake_clock):
        stuck = Reservation.open(
            passenger_ref='P-1001', flight_ref='F123', seat_ref='12A', now=fake_clock()
        )
        async with SqlAlchemyUnitOfWork(saga.database) as uow:
            await uow.reservation_repo.add(reservation=stuck)
            await uow.outbox.stage(
                envelope=EventEnvelope.build(
                    payload=ReservationCreatedPayload(
                        reservation_id=stuck.id,
                        passenger_ref=stuck.passenger_ref,
                        flight_ref=stuck.flight_ref,
                        seat_ref=stuck.seat_ref,
                    ),
                    idempotency_key=f'reservation.created:{stuck.id}',
                )
            )
            await uow.commit()
        await saga.inventory_holder.acquire(seat_key=stuck.seat_key, reservation_id=stuck.id)

        assert await saga.coordinator.reap_stale_pending() == []  # still inside the grace period

        fake_clock.advance(120)
        reaped = await saga.coordinator.reap_stale_pending()

        assert reaped == [stuck.id]
        reservation = await saga.reservation(stuck.id)
        assert reservation.status is ReservationStatus.FAILED
        assert reservation.reason_code is None
        assert await _outbox_count(saga.database, OutboxStatus.STAGED) == 0
        assert await saga.inventory_holder.get(seat_key=stuck.seat_key) is None

    @pytest.mark.asyncio
    async def test_user_cancel_of_pending_reservation_conflicts(self, saga):
        stuck = Reservation.open(passenger_ref='P-1001', flight_ref='F123', seat_ref='12A')
        async with SqlAlchemyUnitOfWork(saga.database) as uow:
            await uow.reservation_repo.add(reservation=stuck)
            await uow.commit()

        with pytest.raises(ConflictError):
            await saga.coordinator.cancel(reservation_id=stuck.id)

        assert (await saga.reservation(stuck.id)).status is ReservationStatus.PENDING

    @pytest.mark.asyncio
    async def test_restore_deadlines_rearms_awaiting_reservations(self, saga_without_payment):
        saga = saga_without_payment
        async with saga.running():
            created = await _book(saga)
            await saga.settle()
        saga.deadline_scheduler.cancel(reservation_id=created.id)  # as after a restart

        restored = await saga.coordinator.restore_deadlines()

        assert restored == 1
        assert saga.deadline_scheduler.is_scheduled(reservation_id=created.id)
