from typing import Optional

import anyio

from src.platform.logging.loguru_io import Logger
from src.service.gateway.app.interface.i_service_registry import IServiceRegistry
from src.service.gateway.domain.entity.routing_table import RoutingTable


class RoutingTableRefresher:
    """Renews instance leases from the registry on a fixed interval."""

    def __init__(
        self,
        *,
        registry: IServiceRegistry,
        routing_table: RoutingTable,
        interval_seconds: float,
    ) -> None:
        self.registry = registry
        self.routing_table = routing_table
        self.interval_seconds = interval_seconds

    async def refresh_once(self) -> Optional[int]:
        """Returns the number of live instances, or None if the registry could not be read."""
        try:
            registrations = await self.registry.fetch_registrations()
        except Exception as e:
            # An unreadable registry is not a missed renewal for any instance
            Logger.base.warning(f'🧭 [ROUTING] Registry refresh failed: {e}')
            return None
        self.routing_table.apply_renewal(registrations)
        return sum(len(instances) for instances in self.routing_table.snapshot().values())

    async def run(self) -> None:
        Logger.base.info(f'🧭 [ROUTING] Lease renewal every {self.interval_seconds}s')
        while True:
            await anyio.sleep(self.interval_seconds)
            await self.refresh_once()
