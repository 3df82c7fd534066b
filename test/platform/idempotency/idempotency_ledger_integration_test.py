"""
Integration tests for IdempotencyLedger (SQLite)

Test Coverage:
1. FRESH then DUPLICATE once the first delivery is applied
2. Keys are scoped per consumer
3. Released reservations can be taken again at once
4. A live lease is busy (retryable), an expired one is taken over
5. claim() gives the key back when its block fails or is cancelled
6. APPLIED records survive until their TTL, then are purged
7. Storage errors fail closed
"""

import asyncio
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from src.platform.exception.exceptions import (
    LedgerBusyError,
    LedgerUnavailableError,
    TransientError,
)
from src.platform.idempotency.idempotency_ledger import IdempotencyLedger, LedgerDecision


async def _reserve(ledger, consumer='c', key='k') -> LedgerDecision:
    return await ledger.check_and_reserve(consumer=consumer, idempotency_key=key)


class TestLedgerReservation:
    @pytest.mark.asyncio
    async def test_applied_key_is_a_duplicate(self, ledger):
        first = await _reserve(ledger)
        await ledger.complete(consumer='c', idempotency_key='k')
        second = await _reserve(ledger)

        assert first is LedgerDecision.FRESH
        assert second is LedgerDecision.DUPLICATE

    @pytest.mark.asyncio
    async def test_keys_are_scoped_per_consumer(self, ledger):
        assert await _reserve(ledger, consumer='a') is LedgerDecision.FRESH
        assert await _reserve(ledger, consumer='b') is LedgerDecision.FRESH

    @pytest.mark.asyncio
    async def test_release_lets_the_next_delivery_through(self, ledger):
        await _reserve(ledger)

        await ledger.release(consumer='c', idempotency_key='k')

        assert await _reserve(ledger) is LedgerDecision.FRESH

    @pytest.mark.asyncio
    async def test_release_never_drops_an_applied_record(self, ledger):
        await _reserve(ledger)
        await ledger.complete(consumer='c', idempotency_key='k', result='DONE')

        await ledger.release(consumer='c', idempotency_key='k')

        assert await ledger.get_result(consumer='c', idempotency_key='k') == 'DONE'
        assert await _reserve(ledger) is LedgerDecision.DUPLICATE


class TestLedgerLeases:
    @pytest.mark.asyncio
    async def test_live_lease_is_busy_not_duplicate(self, ledger, fake_clock):
        await _reserve(ledger)
        fake_clock.advance(20)

        with pytest.raises(LedgerBusyError) as exc_info:
            await _reserve(ledger)

        assert isinstance(exc_info.value, TransientError)
        assert exc_info.value.retry_after == pytest.approx(10)

    @pytest.mark.asyncio
    async def test_expired_lease_is_taken_over(self, ledger, fake_clock):
        await _reserve(ledger)
        fake_clock.advance(31)

        assert await _reserve(ledger) is LedgerDecision.FRESH
        # The takeover holds a new lease
        with pytest.raises(LedgerBusyError):
            await _reserve(ledger)

    @pytest.mark.asyncio
    async def test_applied_record_has_no_lease_to_expire(self, ledger, fake_clock):
        await _reserve(ledger)
        await ledger.complete(consumer='c', idempotency_key='k')
        fake_clock.advance(600)

        assert await _reserve(ledger) is LedgerDecision.DUPLICATE


class TestLedgerClaim:
    @pytest.mark.asyncio
    async def test_failed_block_gives_the_key_back(self, ledger):
        with pytest.raises(RuntimeError):
            async with ledger.claim(consumer='c', idempotency_key='k') as decision:
                assert decision is LedgerDecision.FRESH
                raise RuntimeError('handler failed')

        assert await _reserve(ledger) is LedgerDecision.FRESH

    @pytest.mark.asyncio
    async def test_cancelled_block_gives_the_key_back(self, ledger):
        with pytest.raises(asyncio.CancelledError):
            async with ledger.claim(consumer='c', idempotency_key='k'):
                raise asyncio.CancelledError()

        assert await _reserve(ledger) is LedgerDecision.FRESH

    @pytest.mark.asyncio
    async def test_failure_after_apply_keeps_the_record(self, ledger):
        with pytest.raises(RuntimeError):
            async with ledger.claim(consumer='c', idempotency_key='k'):
                await ledger.complete(consumer='c', idempotency_key='k', result='DONE')
                raise RuntimeError('crashed after commit')

        assert await _reserve(ledger) is LedgerDecision.DUPLICATE

    @pytest.mark.asyncio
    async def test_duplicate_claim_leaves_the_applied_record_alone(self, ledger):
        await _reserve(ledger)
        await ledger.complete(consumer='c', idempotency_key='k', result='DONE')

        with pytest.raises(RuntimeError):
            async with ledger.claim(consumer='c', idempotency_key='k') as decision:
                assert decision is LedgerDecision.DUPLICATE
                raise RuntimeError('boom')

        assert await ledger.get_result(consumer='c', idempotency_key='k') == 'DONE'


class TestLedgerRetention:
    @pytest.mark.asyncio
    async def test_mark_applied_commits_with_the_callers_transaction(self, database, ledger):
        await ledger.check_and_reserve(consumer='c', idempotency_key='k')

        async with database.transaction() as session:
            await ledger.mark_applied(session=session, consumer='c', idempotency_key='k', result='X')

        assert await ledger.get_result(consumer='c', idempotency_key='k') == 'X'

    @pytest.mark.asyncio
    async def test_mark_applied_rolls_back_with_the_callers_transaction(self, database, ledger):
        await ledger.check_and_reserve(consumer='c', idempotency_key='k')

        with pytest.raises(RuntimeError):
            async with database.transaction() as session:
                await ledger.mark_applied(
                    session=session, consumer='c', idempotency_key='k', result='X'
                )
                raise RuntimeError('state change failed')

        assert await ledger.get_result(consumer='c', idempotency_key='k') is None

    @pytest.mark.asyncio
    async def test_purge_removes_only_expired_records(self, ledger, fake_clock):
        await ledger.check_and_reserve(consumer='c', idempotency_key='old')
        await ledger.complete(consumer='c', idempotency_key='old')
        fake_clock.advance(1800)
        await ledger.check_and_reserve(consumer='c', idempotency_key='new')
        await ledger.complete(consumer='c', idempotency_key='new')
        fake_clock.advance(1801)

        purged = await ledger.purge_expired()

        assert purged == 1
        assert await _reserve(ledger, key='old') is LedgerDecision.FRESH
        assert await _reserve(ledger, key='new') is LedgerDecision.DUPLICATE


class TestLedgerFailsClosed:
    @pytest.mark.asyncio
    async def test_storage_error_raises_ledger_unavailable(self, fake_clock):
        database = MagicMock()
        database.transaction.side_effect = OperationalError('BEGIN', {}, Exception('db down'))
        ledger = IdempotencyLedger(
            database=database, ttl_seconds=60, lease_seconds=30, clock=fake_clock
        )

        with pytest.raises(LedgerUnavailableError):
            await ledger.check_and_reserve(consumer='c', idempotency_key='k')
