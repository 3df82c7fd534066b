"""
Idempotency Ledger - durable (consumer, idempotency key) -> outcome record

Protocol for a consumer handling an envelope:

    async with ledger.claim(consumer=..., idempotency_key=...) as decision:
        if decision is LedgerDecision.DUPLICATE:
            return                              # applied already
        async with uow:
            ...state change + outbox record...
            await ledger.mark_applied(session=uow.session, ...)
            await uow.commit()                  # all three commit atomically

If the block exits with any exception, cancellation included, the reservation is
released so the redelivery can try again at once.

A reservation is an IN_PROGRESS row with a lease. While the lease is live, other
deliveries of the same key get LedgerBusyError (retryable), never DUPLICATE: the
holder may still fail. A crashed worker's lease runs out and the next delivery
takes it over, so a message is never stuck. APPLIED rows are kept for the TTL
(longer than the bus's maximum redelivery window) and then purged. Any storage
error fails closed with LedgerUnavailableError.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from enum import StrEnum
from typing import AsyncIterator, Callable, Optional

import anyio
from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.platform.database.db_setting import Database
from src.platform.exception.exceptions import LedgerBusyError, LedgerUnavailableError
from src.platform.idempotency.idempotency_model import IdempotencyRecordModel, LedgerStatus
from src.platform.logging.loguru_io import Logger
from src.platform.metrics.saga_metrics import metrics


class LedgerDecision(StrEnum):
    FRESH = 'FRESH'
    DUPLICATE = 'DUPLICATE'


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class IdempotencyLedger:
    def __init__(
        self,
        *,
        database: Database,
        ttl_seconds: float,
        lease_seconds: float,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.database = database
        self.ttl = timedelta(seconds=ttl_seconds)
        self.lease = timedelta(seconds=lease_seconds)
        self.clock = clock

    @asynccontextmanager
    async def claim(self, *, consumer: str, idempotency_key: str) -> AsyncIterator[LedgerDecision]:
        """check_and_reserve() for the span of a block; an unfinished block gives the key back."""
        decision = await self.check_and_reserve(consumer=consumer, idempotency_key=idempotency_key)
        try:
            yield decision
        except BaseException:
            if decision is LedgerDecision.FRESH:
                # Must run even when the handler is being cancelled
                with anyio.CancelScope(shield=True):
                    await self.release(consumer=consumer, idempotency_key=idempotency_key)
            raise

    async def check_and_reserve(self, *, consumer: str, idempotency_key: str) -> LedgerDecision:
        now = self.clock()
        busy_for: Optional[float] = None
        try:
            async with self.database.transaction() as session:
                record = await session.get(IdempotencyRecordModel, (consumer, idempotency_key))

                if record is None:
                    session.add(
                        IdempotencyRecordModel(
                            consumer=consumer,
                            idempotency_key=idempotency_key,
                            status=LedgerStatus.IN_PROGRESS.value,
                            lease_expires_at=now + self.lease,
                            expires_at=now + self.ttl,
                            created_at=now,
                            updated_at=now,
                        )
                    )
                    await session.flush()
                    return LedgerDecision.FRESH

                if self._can_take_over(record, now=now):
                    # Compare-and-set on the row we read; a concurrent takeover loses
                    result = await session.execute(
                        update(IdempotencyRecordModel)
                        .where(
                            IdempotencyRecordModel.consumer == consumer,
                            IdempotencyRecordModel.idempotency_key == idempotency_key,
                            IdempotencyRecordModel.status == record.status,
                            IdempotencyRecordModel.updated_at == record.updated_at,
                        )
                        .values(
                            status=LedgerStatus.IN_PROGRESS.value,
                            result=None,
                            lease_expires_at=now + self.lease,
                            expires_at=now + self.ttl,
                            updated_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 1:
                        Logger.base.warning(
                            f'♻️ [LEDGER] {consumer} took over {idempotency_key} '
                            f'(previous status {record.status})'
                        )
                        return LedgerDecision.FRESH
                    busy_for = self.lease.total_seconds()
                elif record.status == LedgerStatus.IN_PROGRESS.value:
                    busy_for = self._lease_remaining(record, now=now)
        except IntegrityError:
            # Lost the insert race to another worker
            busy_for = self.lease.total_seconds()
        except SQLAlchemyError as e:
            raise LedgerUnavailableError(f'Idempotency ledger unavailable: {e}') from e
        except OSError as e:
            raise LedgerUnavailableError(f'Idempotency ledger unavailable: {e}') from e

        if busy_for is not None:
            Logger.base.info(
                f'⏳ [LEDGER] {consumer} {idempotency_key} is in progress elsewhere; '
                f'retry in {busy_for:.1f}s'
            )
            raise LedgerBusyError(
                f'{consumer}/{idempotency_key} is being handled by another delivery',
                retry_after=busy_for,
            )

        metrics.record_duplicate(consumer=consumer)
        Logger.base.info(f'🔂 [LEDGER] {consumer} skipping duplicate {idempotency_key}')
        return LedgerDecision.DUPLICATE

    def _lease_remaining(self, record: IdempotencyRecordModel, *, now: datetime) -> float:
        if record.lease_expires_at is None:
            return self.lease.total_seconds()
        return max(0.0, (record.lease_expires_at - now).total_seconds())

    def _can_take_over(self, record: IdempotencyRecordModel, *, now: datetime) -> bool:
        if record.expires_at <= now:
            return True
        return (
            record.status == LedgerStatus.IN_PROGRESS.value
            and record.lease_expires_at is not None
            and record.lease_expires_at <= now
        )

    async def mark_applied(
        self,
        *,
        session: AsyncSession,
        consumer: str,
        idempotency_key: str,
        result: Optional[str] = None,
    ) -> None:
        """Record the outcome on the caller's session; it commits with the caller's write."""
        now = self.clock()
        record = await session.get(IdempotencyRecordModel, (consumer, idempotency_key))
        if record is None:
            session.add(
                IdempotencyRecordModel(
                    consumer=consumer,
                    idempotency_key=idempotency_key,
                    status=LedgerStatus.APPLIED.value,
                    result=result,
                    lease_expires_at=None,
                    expires_at=now + self.ttl,
                    created_at=now,
                    updated_at=now,
                )
            )
        else:
            record.status = LedgerStatus.APPLIED.value
            record.result = result
            record.lease_expires_at = None
            record.expires_at = now + self.ttl
            record.updated_at = now
        await session.flush()

    async def complete(
        self, *, consumer: str, idempotency_key: str, result: Optional[str] = None
    ) -> None:
        """mark_applied in a transaction of its own, for handlers with nothing else to write."""
        try:
            async with self.database.transaction() as session:
                await self.mark_applied(
                    session=session,
                    consumer=consumer,
                    idempotency_key=idempotency_key,
                    result=result,
                )
        except SQLAlchemyError as e:
            raise LedgerUnavailableError(f'Idempotency ledger unavailable: {e}') from e

    async def release(self, *, consumer: str, idempotency_key: str) -> None:
        """Drop an IN_PROGRESS reservation so the next delivery can proceed at once."""
        try:
            async with self.database.transaction() as session:
                await session.execute(
                    delete(IdempotencyRecordModel).where(
                        IdempotencyRecordModel.consumer == consumer,
                        IdempotencyRecordModel.idempotency_key == idempotency_key,
                        IdempotencyRecordModel.status == LedgerStatus.IN_PROGRESS.value,
                    )
                )
        except SQLAlchemyError as e:
            # The lease still expires on its own
            Logger.base.warning(
                f'⚠️ [LEDGER] Could not release {consumer}/{idempotency_key}: {e}; '
                f'waiting for lease expiry'
            )

    async def get_result(self, *, consumer: str, idempotency_key: str) -> Optional[str]:
        async with self.database.session() as session:
            record = await session.get(IdempotencyRecordModel, (consumer, idempotency_key))
            if record is None or record.status != LedgerStatus.APPLIED.value:
                return None
            return record.result

    async def purge_expired(self) -> int:
        async with self.database.transaction() as session:
            result = await session.execute(
                delete(IdempotencyRecordModel).where(
                    IdempotencyRecordModel.expires_at <= self.clock()
                )
            )
        if result.rowcount:
            Logger.base.info(f'🧹 [LEDGER] Purged {result.rowcount} expired record(s)')
        return result.rowcount
