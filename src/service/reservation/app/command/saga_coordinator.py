"""
Saga Coordinator - owns the reservation state machine

    PENDING -> SEAT_HELD -> AWAITING_PAYMENT -> CONFIRMED | CANCELLED
    PENDING -> FAILED (seat conflict, or a crash between the two create transactions)

Create flow:
1. Validate references (nothing is written on a bad request)
2. Tx 1: reservation PENDING + reservation.created outbox record, STAGED
3. Acquire the seat hold
4. Tx 2: AWAITING_PAYMENT + payment deadline, staged record becomes READY
   (on a conflict instead: FAILED/SEAT_CONFLICT and the staged record is dropped,
   so the payment service never hears about it)

Every bus-driven transition runs under the idempotency ledger and commits the
new state, its outbox event and the ledger record in one transaction. Updates
are guarded by the row version; a StaleVersionError goes back to the bus and is
redelivered against the fresh row.
"""

from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, List, Optional
from uuid import UUID

import anyio
from opentelemetry import trace

from src.platform.database.db_setting import Database
from src.platform.database.unit_of_work import SqlAlchemyUnitOfWork
from src.platform.exception.exceptions import (
    ConflictError,
    LedgerBusyError,
    NotFoundError,
    StaleVersionError,
    ValidationError,
)
from src.platform.idempotency.idempotency_ledger import IdempotencyLedger, LedgerDecision
from src.platform.logging.loguru_io import Logger
from src.platform.metrics.saga_metrics import metrics
from src.service.inventory.app.command.inventory_holder import InventoryHolder
from src.service.reservation.app.command.deadline_scheduler import DeadlineScheduler
from src.service.reservation.app.interface.i_reference_validator import IReferenceValidator
from src.service.reservation.domain.entity.reservation_entity import (
    Reservation,
    ReservationStatus,
)
from src.service.shared_kernel.domain.enum.reason_code import ReasonCode
from src.service.shared_kernel.domain.event_envelope import (
    EventEnvelope,
    PaymentDeadlineExpiredPayload,
    PaymentFailedPayload,
    PaymentSucceededPayload,
    ReservationCancelledPayload,
    ReservationConfirmedPayload,
    ReservationCreatedPayload,
    SeatHoldExpiredPayload,
)


SAGA_CONSUMER = 'saga-coordinator'

# A user cancel that meets a concurrent writer re-reads and tries again this often
CANCEL_ATTEMPTS = 5
CANCEL_RETRY_SECONDS = 0.05

SagaAction = Callable[[Reservation, str, Optional[EventEnvelope]], Awaitable[Reservation]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SagaCoordinator:
    def __init__(
        self,
        *,
        database: Database,
        ledger: IdempotencyLedger,
        inventory_holder: InventoryHolder,
        reference_validator: IReferenceValidator,
        deadline_scheduler: DeadlineScheduler,
        payment_deadline_seconds: float,
        stale_pending_grace_seconds: float,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.database = database
        self.ledger = ledger
        self.inventory_holder = inventory_holder
        self.reference_validator = reference_validator
        self.deadline_scheduler = deadline_scheduler
        self.payment_deadline = timedelta(seconds=payment_deadline_seconds)
        self.stale_pending_grace = timedelta(seconds=stale_pending_grace_seconds)
        self.clock = clock
        self.tracer = trace.get_tracer(__name__)

    # ---------------------------------------------------------------- create

    @Logger.io
    async def create(self, *, passenger_ref: str, flight_ref: str, seat_ref: str) -> Reservation:
        reservation = Reservation.open(
            passenger_ref=passenger_ref,
            flight_ref=flight_ref,
            seat_ref=seat_ref,
            now=self.clock(),
        )
        await self.reference_validator.validate(
            passenger_ref=reservation.passenger_ref,
            flight_ref=reservation.flight_ref,
            seat_ref=reservation.seat_ref,
        )

        with Logger.correlation(str(reservation.id)), self.tracer.start_as_current_span(
            'saga.create',
            attributes={'reservation.id': str(reservation.id), 'seat.key': reservation.seat_key},
        ):
            created = EventEnvelope.build(
                payload=ReservationCreatedPayload(
                    reservation_id=reservation.id,
                    passenger_ref=reservation.passenger_ref,
                    flight_ref=reservation.flight_ref,
                    seat_ref=reservation.seat_ref,
                ),
                idempotency_key=f'reservation.created:{reservation.id}',
            )
            async with SqlAlchemyUnitOfWork(self.database) as uow:
                await uow.reservation_repo.add(reservation=reservation)
                await uow.outbox.stage(envelope=created)
                await uow.commit()

            try:
                await self.inventory_holder.acquire(
                    seat_key=reservation.seat_key, reservation_id=reservation.id
                )
            except ConflictError:
                await self._fail(
                    reservation,
                    reason_code=ReasonCode.SEAT_CONFLICT,
                    staged_key=created.idempotency_key,
                )
                raise
            except Exception:
                # The store may have applied the acquire before failing
                await self._release_hold(reservation)
                await self._fail(reservation, reason_code=None, staged_key=created.idempotency_key)
                raise

            now = self.clock()
            awaiting = reservation.hold_seat(now=now).await_payment(
                deadline_at=now + self.payment_deadline, now=now
            )
            try:
                async with SqlAlchemyUnitOfWork(self.database) as uow:
                    await uow.reservation_repo.update(
                        reservation=awaiting, expected_version=reservation.version
                    )
                    await uow.outbox.release_staged(idempotency_key=created.idempotency_key)
                    await uow.commit()
            except Exception:
                await self._release_hold(reservation)
                raise

        self.deadline_scheduler.schedule(
            reservation_id=awaiting.id, deadline_at=awaiting.payment_deadline_at
        )
        Logger.base.info(
            f'🎫 [SAGA] Reservation {awaiting.id} holds {awaiting.seat_key}, awaiting payment'
        )
        return awaiting

    async def _fail(
        self, reservation: Reservation, *, reason_code: Optional[ReasonCode], staged_key: str
    ) -> Reservation:
        failed = reservation.fail(reason_code=reason_code, now=self.clock())
        async with SqlAlchemyUnitOfWork(self.database) as uow:
            await uow.reservation_repo.update(
                reservation=failed, expected_version=reservation.version
            )
            await uow.outbox.discard_staged(idempotency_key=staged_key)
            await uow.commit()
        metrics.record_terminal(status=failed.status.value, reason_code=reason_code)
        Logger.base.warning(f'🎫 [SAGA] Reservation {failed.id} FAILED ({reason_code})')
        return failed

    # ------------------------------------------------------- bus reactions

    @Logger.io
    async def on_payment_result(self, envelope: EventEnvelope) -> Optional[Reservation]:
        payload = envelope.payload
        if isinstance(payload, PaymentSucceededPayload):
            action = self._confirm
        elif isinstance(payload, PaymentFailedPayload):

            async def action(reservation, idempotency_key, causation):
                return await self._cancel(
                    reservation,
                    reason_code=payload.reason_code,
                    idempotency_key=idempotency_key,
                    causation=causation,
                )

        else:
            raise ValidationError(f'{envelope.event_type} is not a payment result')
        return await self._apply_once(
            reservation_id=payload.reservation_id,
            idempotency_key=envelope.idempotency_key,
            causation=envelope,
            action=action,
        )

    @Logger.io
    async def on_timeout(self, envelope: EventEnvelope) -> Optional[Reservation]:
        if not isinstance(envelope.payload, PaymentDeadlineExpiredPayload):
            raise ValidationError(f'{envelope.event_type} is not a payment deadline')
        return await self._cancel_if_awaiting(envelope, reason_code=ReasonCode.TIMEOUT)

    @Logger.io
    async def on_hold_expired(self, envelope: EventEnvelope) -> Optional[Reservation]:
        if not isinstance(envelope.payload, SeatHoldExpiredPayload):
            raise ValidationError(f'{envelope.event_type} is not a seat hold expiry')
        return await self._cancel_if_awaiting(envelope, reason_code=ReasonCode.SEAT_CONFLICT)

    async def _cancel_if_awaiting(
        self, envelope: EventEnvelope, *, reason_code: ReasonCode
    ) -> Optional[Reservation]:
        async def action(reservation, idempotency_key, causation):
            if reservation.status is not ReservationStatus.AWAITING_PAYMENT:
                await self.ledger.complete(
                    consumer=SAGA_CONSUMER,
                    idempotency_key=idempotency_key,
                    result=reservation.status.value,
                )
                return reservation
            return await self._cancel(
                reservation,
                reason_code=reason_code,
                idempotency_key=idempotency_key,
                causation=causation,
            )

        return await self._apply_once(
            reservation_id=envelope.reservation_id,
            idempotency_key=envelope.idempotency_key,
            causation=envelope,
            action=action,
        )

    # ---------------------------------------------------- caller surface

    @Logger.io
    async def cancel(self, *, reservation_id: UUID) -> Reservation:
        """
        Cancel on behalf of the passenger and answer with the reservation as it now
        stands. Losing a race to a payment outcome, or to an identical cancel still in
        flight, re-reads the row instead of failing: the caller sees whatever state
        the other writer committed.
        """

        async def action(reservation, idempotency_key, causation):
            return await self._cancel(
                reservation,
                reason_code=ReasonCode.USER_REQUESTED,
                idempotency_key=idempotency_key,
                causation=causation,
            )

        attempt = 0
        while True:
            attempt += 1
            try:
                reservation = await self._apply_once(
                    reservation_id=reservation_id,
                    idempotency_key=f'user-cancel:{reservation_id}',
                    causation=None,
                    action=action,
                )
            except (StaleVersionError, LedgerBusyError) as e:
                Logger.base.info(
                    f'🎫 [SAGA] Cancel of {reservation_id} met a concurrent writer '
                    f'({type(e).__name__}), re-reading'
                )
                reservation = await self._load(reservation_id)
                if reservation is not None and not reservation.is_terminal:
                    if attempt >= CANCEL_ATTEMPTS:
                        raise
                    await anyio.sleep(CANCEL_RETRY_SECONDS)
                    continue
            if reservation is None:
                raise NotFoundError(f'Reservation {reservation_id} not found')
            return reservation

    async def get(self, *, reservation_id: UUID) -> Reservation:
        reservation = await self._load(reservation_id)
        if reservation is None:
            raise NotFoundError(f'Reservation {reservation_id} not found')
        return reservation

    # ------------------------------------------------------------ internals

    async def _load(self, reservation_id: UUID) -> Optional[Reservation]:
        async with SqlAlchemyUnitOfWork(self.database) as uow:
            return await uow.reservation_repo.get(reservation_id=reservation_id)

    async def _apply_once(
        self,
        *,
        reservation_id: UUID,
        idempotency_key: str,
        causation: Optional[EventEnvelope],
        action: SagaAction,
    ) -> Optional[Reservation]:
        async with self.ledger.claim(
            consumer=SAGA_CONSUMER, idempotency_key=idempotency_key
        ) as decision:
            if decision is LedgerDecision.DUPLICATE:
                return await self._load(reservation_id)

            with self.tracer.start_as_current_span(
                'saga.apply',
                attributes={'reservation.id': str(reservation_id), 'idempotency.key': idempotency_key},
            ):
                reservation = await self._load(reservation_id)
                if reservation is None:
                    raise NotFoundError(f'Reservation {reservation_id} not found')
                if reservation.is_terminal:
                    await self.ledger.complete(
                        consumer=SAGA_CONSUMER,
                        idempotency_key=idempotency_key,
                        result=reservation.status.value,
                    )
                    return reservation
                return await action(reservation, idempotency_key, causation)

    async def _confirm(
        self,
        reservation: Reservation,
        idempotency_key: str,
        causation: Optional[EventEnvelope],
    ) -> Reservation:
        try:
            await self.inventory_holder.confirm(
                seat_key=reservation.seat_key, reservation_id=reservation.id
            )
        except ConflictError as e:
            Logger.base.warning(
                f'🎫 [SAGA] Paid reservation {reservation.id} lost its hold ({e.message}), cancelling'
            )
            return await self._cancel(
                reservation,
                reason_code=ReasonCode.SEAT_CONFLICT,
                idempotency_key=idempotency_key,
                causation=causation,
            )

        confirmed = reservation.confirm(now=self.clock())
        event = EventEnvelope.build(
            payload=ReservationConfirmedPayload(reservation_id=reservation.id),
            idempotency_key=f'reservation.confirmed:{reservation.id}',
            causation=causation,
        )
        await self._commit_terminal(
            reservation, confirmed, event=event, idempotency_key=idempotency_key
        )
        return confirmed

    async def _cancel(
        self,
        reservation: Reservation,
        *,
        reason_code: ReasonCode,
        idempotency_key: str,
        causation: Optional[EventEnvelope],
    ) -> Reservation:
        cancelled = reservation.cancel(reason_code=reason_code, now=self.clock())
        event = EventEnvelope.build(
            payload=ReservationCancelledPayload(
                reservation_id=reservation.id, reason_code=reason_code
            ),
            idempotency_key=f'reservation.cancelled:{reservation.id}',
            causation=causation,
        )
        await self._commit_terminal(
            reservation, cancelled, event=event, idempotency_key=idempotency_key
        )
        # Only after the commit: a stale update must never drop a hold a concurrent confirm kept
        await self._release_hold(reservation)
        return cancelled

    async def _commit_terminal(
        self,
        current: Reservation,
        updated: Reservation,
        *,
        event: EventEnvelope,
        idempotency_key: str,
    ) -> None:
        async with SqlAlchemyUnitOfWork(self.database) as uow:
            await uow.reservation_repo.update(reservation=updated, expected_version=current.version)
            await uow.outbox.add(envelope=event)
            await self.ledger.mark_applied(
                session=uow.session,
                consumer=SAGA_CONSUMER,
                idempotency_key=idempotency_key,
                result=updated.status.value,
            )
            await uow.commit()

        self.deadline_scheduler.cancel(reservation_id=updated.id)
        metrics.record_terminal(status=updated.status.value, reason_code=updated.reason_code)
        Logger.base.info(
            f'🎫 [SAGA] Reservation {updated.id}: {current.status} -> {updated.status}'
            + (f' ({updated.reason_code})' if updated.reason_code else '')
        )

    async def _release_hold(self, reservation: Reservation) -> None:
        try:
            await self.inventory_holder.release(
                seat_key=reservation.seat_key, reservation_id=reservation.id
            )
        except Exception as e:
            # An unreleased hold still expires after its TTL and the sweeper removes it
            Logger.base.warning(
                f'⚠️ [SAGA] Could not release hold {reservation.seat_key} '
                f'for {reservation.id}: {e}'
            )

    # ---------------------------------------------------------- maintenance

    async def restore_deadlines(self) -> int:
        """Re-arm payment deadlines after a restart."""
        async with SqlAlchemyUnitOfWork(self.database) as uow:
            awaiting = await uow.reservation_repo.list_awaiting_payment()
        for reservation in awaiting:
            self.deadline_scheduler.schedule(
                reservation_id=reservation.id, deadline_at=reservation.payment_deadline_at
            )
        if awaiting:
            Logger.base.info(f'⏰ [SAGA] Restored {len(awaiting)} payment deadline(s)')
        return len(awaiting)

    async def reap_stale_pending(self) -> List[UUID]:
        """Fail reservations left PENDING by a crash between the two create transactions."""
        async with SqlAlchemyUnitOfWork(self.database) as uow:
            stale = await uow.reservation_repo.list_pending_created_before(
                before=self.clock() - self.stale_pending_grace
            )

        reaped = []
        for reservation in stale:
            try:
                await self._fail(
                    reservation,
                    reason_code=None,
                    staged_key=f'reservation.created:{reservation.id}',
                )
            except StaleVersionError:
                continue  # creation finished meanwhile
            await self._release_hold(reservation)
            reaped.append(reservation.id)
        return reaped
