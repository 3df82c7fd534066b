"""
Saga Maintenance - periodic housekeeping for the reservation service

- stale PENDING reservations -> FAILED
- idempotency records past their TTL -> purged
- published outbox records past retention -> purged

Each step runs on its own; one failing does not skip the others.
"""

import anyio

from src.platform.idempotency.idempotency_ledger import IdempotencyLedger
from src.platform.logging.loguru_io import Logger
from src.platform.outbox.outbox_relay import OutboxRelay
from src.service.reservation.app.command.saga_coordinator import SagaCoordinator


class SagaMaintenance:
    def __init__(
        self,
        *,
        saga_coordinator: SagaCoordinator,
        ledger: IdempotencyLedger,
        outbox_relay: OutboxRelay,
        interval_seconds: float,
    ) -> None:
        self.saga_coordinator = saga_coordinator
        self.ledger = ledger
        self.outbox_relay = outbox_relay
        self.interval_seconds = interval_seconds

    async def run_once(self) -> dict[str, int]:
        steps = {
            'reaped': self.saga_coordinator.reap_stale_pending,
            'ledger_purged': self.ledger.purge_expired,
            'outbox_purged': self.outbox_relay.purge_published,
        }
        report = {}
        for name, step in steps.items():
            try:
                result = await step()
            except Exception as e:
                Logger.base.exception(f'❌ [MAINTENANCE] {name} failed: {e}')
                continue
            report[name] = len(result) if isinstance(result, list) else result
        if report.get('reaped'):
            Logger.base.warning(f'🧹 [MAINTENANCE] Failed {report["reaped"]} stale reservation(s)')
        return report

    async def run(self) -> None:
        Logger.base.info(f'🧹 [MAINTENANCE] Started (every {self.interval_seconds}s)')
        while True:
            await anyio.sleep(self.interval_seconds)
            await self.run_once()
