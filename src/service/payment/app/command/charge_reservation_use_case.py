"""
Charge Reservation Use Case - reaction to reservation.created

Flow:
1. Ledger claim on the envelope's idempotency key (duplicates stop here)
2. Create the INITIATED payment row once per reservation
3. Charge through the adapter, retrying transient failures with capped
   exponential backoff; a decline is final and never retried
4. In one transaction: final payment status + payment.succeeded/payment.failed
   outbox record + ledger APPLIED
"""

from typing import Awaitable, Callable, Optional, Tuple

import anyio
from opentelemetry import trace

from src.platform.database.db_setting import Database
from src.platform.database.unit_of_work import SqlAlchemyUnitOfWork
from src.platform.exception.exceptions import TransientError, ValidationError
from src.platform.idempotency.idempotency_ledger import IdempotencyLedger, LedgerDecision
from src.platform.logging.loguru_io import Logger
from src.service.payment.app.interface.i_fare_provider import IFareProvider
from src.service.payment.domain.entity.payment_entity import Payment
from src.service.payment.domain.value_object.payment_request import (
    PaymentOutcome,
    PaymentRequest,
    PaymentResult,
)
from src.service.payment.driven_adapter.gateway.payment_gateway_adapter import (
    PaymentGatewayAdapter,
)
from src.service.shared_kernel.domain.enum.reason_code import ReasonCode
from src.service.shared_kernel.domain.event_envelope import (
    EventEnvelope,
    PaymentFailedPayload,
    PaymentSucceededPayload,
    ReservationCreatedPayload,
)


PAYMENT_CONSUMER = 'payment-service'


class ChargeReservationUseCase:
    def __init__(
        self,
        *,
        database: Database,
        ledger: IdempotencyLedger,
        gateway_adapter: PaymentGatewayAdapter,
        fare_provider: IFareProvider,
        max_retries: int,
        backoff_base_seconds: float,
        backoff_max_seconds: float,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
    ) -> None:
        self.database = database
        self.ledger = ledger
        self.gateway_adapter = gateway_adapter
        self.fare_provider = fare_provider
        self.max_retries = max_retries
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.sleep = sleep
        self.tracer = trace.get_tracer(__name__)

    @Logger.io
    async def execute(self, envelope: EventEnvelope) -> Optional[Payment]:
        payload = envelope.payload
        if not isinstance(payload, ReservationCreatedPayload):
            raise ValidationError(f'Cannot charge for {envelope.event_type}')

        async with self.ledger.claim(
            consumer=PAYMENT_CONSUMER, idempotency_key=envelope.idempotency_key
        ) as decision:
            if decision is LedgerDecision.DUPLICATE:
                return None

            with self.tracer.start_as_current_span(
                'payment.charge_reservation',
                attributes={'reservation.id': str(payload.reservation_id)},
            ):
                return await self._charge(envelope, payload)

    async def _charge(self, envelope: EventEnvelope, payload: ReservationCreatedPayload) -> Payment:
        payment = await self._load_or_create_payment(payload)
        if payment.is_final:
            # Finished by an earlier delivery whose ledger record was purged
            await self.ledger.complete(
                consumer=PAYMENT_CONSUMER,
                idempotency_key=envelope.idempotency_key,
                result=payment.status.value,
            )
            return payment

        request = PaymentRequest(
            payment_id=payment.id,
            reservation_id=payment.reservation_id,
            amount=payment.amount,
            currency=payment.currency,
            idempotency_key=f'charge:{payment.id}',
        )
        payment, result = await self._charge_with_retries(payment, request)

        if result is None:
            payment = payment.fail_with_gateway_error()
            outcome_payload = PaymentFailedPayload(
                reservation_id=payment.reservation_id,
                payment_id=payment.id,
                amount=payment.amount,
                reason_code=ReasonCode.GATEWAY_UNAVAILABLE,
            )
        elif result.outcome is PaymentOutcome.SUCCEEDED:
            payment = payment.succeed(gateway_reference=result.gateway_reference)
            outcome_payload = PaymentSucceededPayload(
                reservation_id=payment.reservation_id,
                payment_id=payment.id,
                amount=payment.amount,
            )
        else:
            payment = payment.decline()
            outcome_payload = PaymentFailedPayload(
                reservation_id=payment.reservation_id,
                payment_id=payment.id,
                amount=payment.amount,
                reason_code=ReasonCode.DECLINED,
            )

        outcome = EventEnvelope.build(
            payload=outcome_payload,
            idempotency_key=f'payment-outcome:{payment.id}',
            causation=envelope,
        )
        async with SqlAlchemyUnitOfWork(self.database) as uow:
            await uow.payment_repo.update(payment=payment)
            await uow.outbox.add(envelope=outcome)
            await self.ledger.mark_applied(
                session=uow.session,
                consumer=PAYMENT_CONSUMER,
                idempotency_key=envelope.idempotency_key,
                result=payment.status.value,
            )
            await uow.commit()

        Logger.base.info(
            f'💳 [PAYMENT] Reservation {payment.reservation_id}: {payment.status} '
            f'after {payment.attempt_count} attempt(s)'
        )
        return payment

    async def _load_or_create_payment(self, payload: ReservationCreatedPayload) -> Payment:
        async with SqlAlchemyUnitOfWork(self.database) as uow:
            payment = await uow.payment_repo.get_by_reservation(
                reservation_id=payload.reservation_id
            )
            if payment is not None:
                return payment

            fare = await self.fare_provider.fare_for(
                flight_ref=payload.flight_ref, seat_ref=payload.seat_ref
            )
            payment = Payment.initiate(
                reservation_id=payload.reservation_id, amount=fare.amount, currency=fare.currency
            )
            await uow.payment_repo.add(payment=payment)
            await uow.commit()
            return payment

    def _backoff(self, attempt: int) -> float:
        return min(self.backoff_base_seconds * (2 ** (attempt - 1)), self.backoff_max_seconds)

    async def _charge_with_retries(
        self, payment: Payment, request: PaymentRequest
    ) -> Tuple[Payment, Optional[PaymentResult]]:
        """Returns the gateway's answer, or None once every attempt failed transiently."""
        max_attempts = self.max_retries + 1
        for attempt in range(1, max_attempts + 1):
            payment = payment.record_attempt()
            try:
                return payment, await self.gateway_adapter.charge(request)
            except TransientError as e:
                if attempt == max_attempts:
                    Logger.base.error(
                        f'💳 [PAYMENT] Giving up on payment {payment.id} after {attempt} attempts: {e}'
                    )
                    break
                delay = self._backoff(attempt)
                Logger.base.warning(
                    f'💳 [PAYMENT] Attempt {attempt}/{max_attempts} for payment {payment.id} '
                    f'failed ({e}); retrying in {delay:.2f}s'
                )
                await self.sleep(delay)
        return payment, None

