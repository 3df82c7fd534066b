from abc import ABC, abstractmethod
from typing import Awaitable, Callable

import attrs

from src.service.shared_kernel.domain.enum.event_type import EventType
from src.service.shared_kernel.domain.event_envelope import EventEnvelope


EventHandler = Callable[[EventEnvelope], Awaitable[None]]


@attrs.frozen
class DeadLetter:
    group_id: str
    envelope: EventEnvelope
    error: str
    attempts: int


class IEventBus(ABC):
    """
    Partitioned, at-least-once event bus.

    Envelopes sharing a partition key are delivered to each consumer group in
    publish order; a handler that raises gets the same envelope again (with
    backoff) before anything later on that partition.
    """

    @abstractmethod
    async def publish(self, envelope: EventEnvelope) -> None:
        """Return only once the bus has durably accepted the envelope."""
        pass

    @abstractmethod
    def register_consumer_group(
        self,
        *,
        group_id: str,
        event_types: frozenset[EventType],
        handler: EventHandler,
        partitions: int,
    ) -> None:
        pass

    @abstractmethod
    async def run(self) -> None:
        """Consume for every registered group until cancelled."""
        pass
