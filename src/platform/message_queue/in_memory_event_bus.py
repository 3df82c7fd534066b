"""
In-Memory Event Bus - single-process IEventBus on anyio memory object streams

Used for tests and single-node dev. Each consumer group gets one unbounded stream
per partition and one worker task per stream, so envelopes with the same
partition key are handled strictly in publish order while different partitions
proceed concurrently.
"""

import math
from typing import List

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
import attrs

from src.platform.logging.loguru_io import Logger
from src.platform.message_queue.i_event_bus import DeadLetter, EventHandler, IEventBus
from src.platform.message_queue.partition_strategy import partition_for
from src.platform.message_queue.partition_worker import PartitionWorker
from src.service.shared_kernel.domain.enum.event_type import EventType
from src.service.shared_kernel.domain.event_envelope import EventEnvelope


@attrs.define
class _ConsumerGroup:
    group_id: str
    event_types: frozenset[EventType]
    handler: EventHandler
    send_streams: List[MemoryObjectSendStream[EventEnvelope]]
    receive_streams: List[MemoryObjectReceiveStream[EventEnvelope]]


class InMemoryEventBus(IEventBus):
    def __init__(
        self,
        *,
        max_delivery_attempts: int = 5,
        redelivery_backoff_seconds: float = 0.05,
        redelivery_backoff_max_seconds: float = 1.0,
    ) -> None:
        self.max_delivery_attempts = max_delivery_attempts
        self.redelivery_backoff_seconds = redelivery_backoff_seconds
        self.redelivery_backoff_max_seconds = redelivery_backoff_max_seconds
        self._groups: dict[str, _ConsumerGroup] = {}
        self._in_flight = 0
        self._running = False
        self.published: list[EventEnvelope] = []
        self.dead_letters: list[DeadLetter] = []

    def register_consumer_group(
        self,
        *,
        group_id: str,
        event_types: frozenset[EventType],
        handler: EventHandler,
        partitions: int,
    ) -> None:
        if self._running:
            raise RuntimeError('Consumer groups must be registered before the bus starts')
        if group_id in self._groups:
            raise ValueError(f'Consumer group {group_id!r} already registered')

        send_streams, receive_streams = [], []
        for _ in range(partitions):
            send, receive = anyio.create_memory_object_stream(math.inf)
            send_streams.append(send)
            receive_streams.append(receive)
        self._groups[group_id] = _ConsumerGroup(
            group_id=group_id,
            event_types=event_types,
            handler=handler,
            send_streams=send_streams,
            receive_streams=receive_streams,
        )

    async def publish(self, envelope: EventEnvelope) -> None:
        self.published.append(envelope)
        for group in self._groups.values():
            if envelope.event_type not in group.event_types:
                continue
            partition = partition_for(envelope.partition_key, len(group.send_streams))
            self._in_flight += 1
            group.send_streams[partition].send_nowait(envelope)

    async def run(self) -> None:
        self._running = True
        Logger.base.info(f'🚌 [BUS] In-memory bus running {len(self._groups)} consumer group(s)')
        try:
            async with anyio.create_task_group() as tg:
                for group in self._groups.values():
                    for partition, receive in enumerate(group.receive_streams):
                        tg.start_soon(self._consume_partition, group, partition, receive)
        finally:
            self._running = False

    async def _consume_partition(
        self,
        group: _ConsumerGroup,
        partition: int,
        receive: MemoryObjectReceiveStream[EventEnvelope],
    ) -> None:
        worker = PartitionWorker(
            group_id=group.group_id,
            partition=partition,
            handler=group.handler,
            on_dead_letter=self._dead_letter,
            max_attempts=self.max_delivery_attempts,
            backoff_seconds=self.redelivery_backoff_seconds,
            backoff_max_seconds=self.redelivery_backoff_max_seconds,
        )
        async for envelope in receive:
            try:
                await worker.process(envelope)
            finally:
                self._in_flight -= 1

    async def _dead_letter(self, letter: DeadLetter) -> None:
        self.dead_letters.append(letter)

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def wait_until_idle(self, *, timeout: float = 5.0) -> None:
        """Block until every published envelope has been handled or dead-lettered."""
        with anyio.fail_after(timeout):
            while self._in_flight:
                await anyio.sleep(0.005)
