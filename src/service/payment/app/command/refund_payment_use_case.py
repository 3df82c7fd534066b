"""
Refund Payment Use Case - reaction to reservation.cancelled

A reservation can be cancelled after its payment already succeeded (seat lost at
confirmation time). The money goes back through the same guarded adapter; a
transient gateway failure propagates so the bus redelivers the cancellation.
"""

from typing import Optional

from src.platform.database.db_setting import Database
from src.platform.database.unit_of_work import SqlAlchemyUnitOfWork
from src.platform.exception.exceptions import ValidationError
from src.platform.idempotency.idempotency_ledger import IdempotencyLedger, LedgerDecision
from src.platform.logging.loguru_io import Logger
from src.service.payment.app.command.charge_reservation_use_case import PAYMENT_CONSUMER
from src.service.payment.domain.entity.payment_entity import Payment, PaymentStatus
from src.service.payment.domain.value_object.payment_request import PaymentRequest
from src.service.payment.driven_adapter.gateway.payment_gateway_adapter import (
    PaymentGatewayAdapter,
)
from src.service.shared_kernel.domain.event_envelope import (
    EventEnvelope,
    ReservationCancelledPayload,
)


class RefundPaymentUseCase:
    def __init__(
        self,
        *,
        database: Database,
        ledger: IdempotencyLedger,
        gateway_adapter: PaymentGatewayAdapter,
    ) -> None:
        self.database = database
        self.ledger = ledger
        self.gateway_adapter = gateway_adapter

    @Logger.io
    async def execute(self, envelope: EventEnvelope) -> Optional[Payment]:
        payload = envelope.payload
        if not isinstance(payload, ReservationCancelledPayload):
            raise ValidationError(f'Cannot refund for {envelope.event_type}')

        async with self.ledger.claim(
            consumer=PAYMENT_CONSUMER, idempotency_key=envelope.idempotency_key
        ) as decision:
            if decision is LedgerDecision.DUPLICATE:
                return None

            return await self._refund(envelope, payload)

    async def _refund(
        self, envelope: EventEnvelope, payload: ReservationCancelledPayload
    ) -> Optional[Payment]:
        async with SqlAlchemyUnitOfWork(self.database) as uow:
            payment = await uow.payment_repo.get_by_reservation(
                reservation_id=payload.reservation_id
            )

        if payment is None or payment.status is not PaymentStatus.SUCCEEDED:
            await self.ledger.complete(
                consumer=PAYMENT_CONSUMER,
                idempotency_key=envelope.idempotency_key,
                result='NOTHING_TO_REFUND',
            )
            return payment

        await self.gateway_adapter.refund(
            request=PaymentRequest(
                payment_id=payment.id,
                reservation_id=payment.reservation_id,
                amount=payment.amount,
                currency=payment.currency,
                idempotency_key=f'charge:{payment.id}',
            ),
            gateway_reference=payment.gateway_reference,
        )

        refunded = payment.refund()
        async with SqlAlchemyUnitOfWork(self.database) as uow:
            await uow.payment_repo.update(payment=refunded)
            await self.ledger.mark_applied(
                session=uow.session,
                consumer=PAYMENT_CONSUMER,
                idempotency_key=envelope.idempotency_key,
                result=refunded.status.value,
            )
            await uow.commit()

        Logger.base.info(
            f'💸 [PAYMENT] Refunded payment {payment.id} for cancelled reservation '
            f'{payload.reservation_id} ({payload.reason_code})'
        )
        return refunded
