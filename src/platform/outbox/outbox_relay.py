"""
Outbox Relay - moves READY outbox records onto the event bus

Guarantees:
- Records are published in sequence order
- A record is marked PUBLISHED only after the bus acknowledged it
- The first failed publish ends the batch, so a later record never overtakes an
  earlier one; the relay backs off (capped exponential) and retries from there
- A crash between publish and mark means the record is published again on the
  next pass; consumers deduplicate through the idempotency ledger
"""

from datetime import datetime, timedelta, timezone
from typing import List

import anyio

from src.platform.database.db_setting import Database
from src.platform.logging.loguru_io import Logger
from src.platform.message_queue.i_event_bus import IEventBus
from src.platform.metrics.saga_metrics import metrics
from src.platform.outbox.outbox_repo import OutboxRepo


class OutboxRelay:
    def __init__(
        self,
        *,
        database: Database,
        event_bus: IEventBus,
        batch_size: int = 100,
        poll_interval_seconds: float = 0.2,
        backoff_max_seconds: float = 10.0,
        published_retention_seconds: float = 86400,
    ) -> None:
        self.database = database
        self.event_bus = event_bus
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.published_retention_seconds = published_retention_seconds

    async def relay_once(self) -> int:
        """Publish one batch. Returns how many records were published."""
        async with self.database.session() as session:
            records = await OutboxRepo(session=session).fetch_ready(limit=self.batch_size)

        published: List[int] = []
        try:
            for sequence, envelope in records:
                await self.event_bus.publish(envelope)
                published.append(sequence)
                metrics.record_outbox_published(
                    event_type=envelope.event_type.value, occurred_at=envelope.occurred_at
                )
        finally:
            if published:
                async with self.database.transaction() as session:
                    await OutboxRepo(session=session).mark_published(sequences=published)
        return len(published)

    async def purge_published(self) -> int:
        before = datetime.now(timezone.utc) - timedelta(seconds=self.published_retention_seconds)
        async with self.database.transaction() as session:
            purged = await OutboxRepo(session=session).purge_published(before=before)
        if purged:
            Logger.base.info(f'🧹 [OUTBOX] Purged {purged} published record(s)')
        return purged

    async def run(self) -> None:
        Logger.base.info('📤 [OUTBOX] Relay started')
        failures = 0
        while True:
            try:
                published = await self.relay_once()
            except Exception as e:
                failures += 1
                delay = min(self.poll_interval_seconds * (2**failures), self.backoff_max_seconds)
                Logger.base.warning(
                    f'⚠️ [OUTBOX] Relay pass failed ({type(e).__name__}: {e}); '
                    f'retrying in {delay:.2f}s'
                )
                await anyio.sleep(delay)
                continue

            failures = 0
            if published < self.batch_size:
                await anyio.sleep(self.poll_interval_seconds)
