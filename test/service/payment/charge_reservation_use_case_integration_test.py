"""
Integration tests for ChargeReservationUseCase and RefundPaymentUseCase

Real SQLite database and ledger, mock gateway behind the real adapter/breaker.

Test Coverage:
1. Success / decline produce the matching outcome event in the outbox
2. Transient failures are retried; exhausted retries fail with GATEWAY_UNAVAILABLE
3. Duplicate reservation.created charges once
4. Refund only for a succeeded payment, once
"""

from uuid import uuid4

import pytest

from src.platform.database.unit_of_work import SqlAlchemyUnitOfWork
from src.platform.exception.exceptions import ValidationError
from src.platform.outbox.outbox_repo import OutboxRepo
from src.service.payment.domain.entity.payment_entity import PaymentStatus
from src.service.payment.driven_adapter.gateway.mock_payment_gateway import GatewayBehavior
from src.service.shared_kernel.domain.enum.event_type import EventType
from src.service.shared_kernel.domain.enum.reason_code import ReasonCode
from src.service.shared_kernel.domain.event_envelope import (
    EventEnvelope,
    ReservationCancelledPayload,
    ReservationConfirmedPayload,
    ReservationCreatedPayload,
)


def _created() -> EventEnvelope:
    reservation_id = uuid4()
    return EventEnvelope.build(
        payload=ReservationCreatedPayload(
            reservation_id=reservation_id, passenger_ref='P-1001', flight_ref='F123', seat_ref='12A'
        ),
        idempotency_key=f'reservation.created:{reservation_id}',
    )


def _cancelled(reservation_id, reason_code=ReasonCode.SEAT_CONFLICT) -> EventEnvelope:
    return EventEnvelope.build(
        payload=ReservationCancelledPayload(reservation_id=reservation_id, reason_code=reason_code),
        idempotency_key=f'reservation.cancelled:{reservation_id}',
    )


async def _outbox(database) -> list[EventEnvelope]:
    async with database.session() as session:
        return [envelope for _, envelope in await OutboxRepo(session=session).fetch_ready(limit=100)]


class TestChargeReservation:
    @pytest.mark.asyncio
    async def test_success_emits_payment_succeeded(self, saga):
        created = _created()

        payment = await saga.charge_use_case.execute(created)

        assert payment.status is PaymentStatus.SUCCEEDED
        assert payment.amount == 15000
        assert payment.attempt_count == 1
        [outcome] = await _outbox(saga.database)
        assert outcome.event_type is EventType.PAYMENT_SUCCEEDED
        assert outcome.payload.payment_id == payment.id
        assert outcome.causation_id == str(created.event_id)
        assert saga.gateway.charges[0].idempotency_key == f'charge:{payment.id}'

    @pytest.mark.asyncio
    async def test_decline_is_final_and_not_retried(self, saga):
        saga.gateway.script(GatewayBehavior.DECLINE)

        payment = await saga.charge_use_case.execute(_created())

        assert payment.status is PaymentStatus.DECLINED
        assert saga.gateway.calls == 1
        [outcome] = await _outbox(saga.database)
        assert outcome.event_type is EventType.PAYMENT_FAILED
        assert outcome.payload.reason_code is ReasonCode.DECLINED

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, saga):
        saga.gateway.script(GatewayBehavior.ERROR, GatewayBehavior.HANG, GatewayBehavior.SUCCEED)

        payment = await saga.charge_use_case.execute(_created())

        assert payment.status is PaymentStatus.SUCCEEDED
        assert payment.attempt_count == 3
        assert saga.gateway.calls == 3

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail_with_gateway_unavailable(self, saga):
        saga.gateway.default_behavior = GatewayBehavior.ERROR

        payment = await saga.charge_use_case.execute(_created())

        # max_retries=3 -> 4 attempts, below the breaker threshold of 5
        assert payment.status is PaymentStatus.GATEWAY_ERROR
        assert payment.attempt_count == 4
        [outcome] = await _outbox(saga.database)
        assert outcome.payload.reason_code is ReasonCode.GATEWAY_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_open_breaker_counts_as_a_failed_attempt(self, saga):
        saga.gateway.default_behavior = GatewayBehavior.ERROR
        await saga.charge_use_case.execute(_created())  # 4 failures
        await saga.charge_use_case.execute(_created())  # 5th opens, the rest fail fast

        assert saga.gateway.calls == 5

    @pytest.mark.asyncio
    async def test_duplicate_delivery_charges_once(self, saga):
        created = _created()

        first = await saga.charge_use_case.execute(created)
        second = await saga.charge_use_case.execute(created)

        assert first.status is PaymentStatus.SUCCEEDED
        assert second is None
        assert saga.gateway.calls == 1
        assert len(await _outbox(saga.database)) == 1

    @pytest.mark.asyncio
    async def test_wrong_event_type_is_rejected(self, saga):
        envelope = EventEnvelope.build(
            payload=ReservationConfirmedPayload(reservation_id=uuid4()),
            idempotency_key='reservation.confirmed:x',
        )

        with pytest.raises(ValidationError):
            await saga.charge_use_case.execute(envelope)


class TestRefundPayment:
    @pytest.mark.asyncio
    async def test_refunds_a_succeeded_payment_once(self, saga):
        created = _created()
        payment = await saga.charge_use_case.execute(created)
        cancelled = _cancelled(created.reservation_id)

        refunded = await saga.refund_use_case.execute(cancelled)
        again = await saga.refund_use_case.execute(cancelled)

        assert refunded.status is PaymentStatus.REFUNDED
        assert again is None
        assert len(saga.gateway.refunds) == 1
        assert saga.gateway.refunds[0].payment_id == payment.id
        async with SqlAlchemyUnitOfWork(saga.database) as uow:
            stored = await uow.payment_repo.get_by_reservation(reservation_id=created.reservation_id)
        assert stored.status is PaymentStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_nothing_to_refund_for_a_declined_payment(self, saga):
        saga.gateway.script(GatewayBehavior.DECLINE)
        created = _created()
        await saga.charge_use_case.execute(created)

        result = await saga.refund_use_case.execute(_cancelled(created.reservation_id, ReasonCode.DECLINED))

        assert result.status is PaymentStatus.DECLINED
        assert saga.gateway.refunds == []

    @pytest.mark.asyncio
    async def test_nothing_to_refund_without_a_payment(self, saga):
        assert await saga.refund_use_case.execute(_cancelled(uuid4())) is None
        assert saga.gateway.refunds == []
