"""
Outbox Repository

Writes always run on the caller's session so the outbox record commits in the
same transaction as the state change it announces.
"""

from datetime import datetime, timezone
from typing import List

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.platform.message_queue.envelope_codec import decode_envelope, encode_envelope
from src.platform.outbox.outbox_model import OutboxRecordModel, OutboxStatus
from src.service.shared_kernel.domain.event_envelope import EventEnvelope


class OutboxRepo:
    def __init__(self, *, session: AsyncSession) -> None:
        self.session = session

    async def add(self, *, envelope: EventEnvelope) -> None:
        await self._insert(envelope=envelope, status=OutboxStatus.READY)

    async def stage(self, *, envelope: EventEnvelope) -> None:
        """Write a record the relay must not publish until release_staged()."""
        await self._insert(envelope=envelope, status=OutboxStatus.STAGED)

    async def _insert(self, *, envelope: EventEnvelope, status: OutboxStatus) -> None:
        self.session.add(
            OutboxRecordModel(
                event_id=envelope.event_id,
                event_type=envelope.event_type.value,
                partition_key=envelope.partition_key,
                idempotency_key=envelope.idempotency_key,
                body=encode_envelope(envelope),
                status=status.value,
                created_at=datetime.now(timezone.utc),
            )
        )
        await self.session.flush()

    async def release_staged(self, *, idempotency_key: str) -> int:
        result = await self.session.execute(
            update(OutboxRecordModel)
            .where(
                OutboxRecordModel.idempotency_key == idempotency_key,
                OutboxRecordModel.status == OutboxStatus.STAGED.value,
            )
            .values(status=OutboxStatus.READY.value)
        )
        return result.rowcount

    async def discard_staged(self, *, idempotency_key: str) -> int:
        result = await self.session.execute(
            delete(OutboxRecordModel).where(
                OutboxRecordModel.idempotency_key == idempotency_key,
                OutboxRecordModel.status == OutboxStatus.STAGED.value,
            )
        )
        return result.rowcount

    async def fetch_ready(self, *, limit: int) -> List[tuple[int, EventEnvelope]]:
        result = await self.session.execute(
            select(OutboxRecordModel.sequence, OutboxRecordModel.body)
            .where(OutboxRecordModel.status == OutboxStatus.READY.value)
            .order_by(OutboxRecordModel.sequence)
            .limit(limit)
        )
        return [(sequence, decode_envelope(body)) for sequence, body in result.all()]

    async def mark_published(self, *, sequences: List[int]) -> None:
        await self.session.execute(
            update(OutboxRecordModel)
            .where(OutboxRecordModel.sequence.in_(sequences))
            .values(status=OutboxStatus.PUBLISHED.value, published_at=datetime.now(timezone.utc))
        )

    async def purge_published(self, *, before: datetime) -> int:
        result = await self.session.execute(
            delete(OutboxRecordModel).where(
                OutboxRecordModel.status == OutboxStatus.PUBLISHED.value,
                OutboxRecordModel.published_at < before,
            )
        )
        return result.rowcount

    async def count_by_status(self, *, status: OutboxStatus) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(OutboxRecordModel)
            .where(OutboxRecordModel.status == status.value)
        )
        return result.scalar_one()
