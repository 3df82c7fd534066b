"""
Kafka Event Bus - multi-process IEventBus on confluent_kafka

Topology:
- One saga topic; the record key is the envelope's partition key, so Kafka keeps
  one reservation's events on one partition and in order
- One Kafka consumer group per registered group; every group reads the whole
  topic and ignores event types it did not subscribe to
- Each assigned Kafka partition is drained by its own lane (a PartitionWorker fed
  by a bounded stream); offsets are committed only after the handler finished
  (or the envelope was dead-lettered)
- Dead letters are produced to the DLQ topic with the failure reason attached

Rebalances: a revoked or lost partition has its lane cancelled and its buffered
messages dropped before the new owner starts; nothing past the last committed
offset is lost, the new owner reads it again and the ledger absorbs the overlap.

Backpressure: a lane whose buffer fills up pauses its partition in the consumer,
and resumes it once half of the buffer has drained. Other partitions keep flowing.

A DLQ that cannot be reached stalls only the partition whose message is being
dead-lettered; the produce is retried with capped backoff until it lands.

librdkafka calls block, so poll() and flush() run in worker threads via anyio.
Rebalance callbacks fire inside poll() and hop back onto the event loop.
"""

from typing import Dict, Iterable, List, Optional

import anyio
from anyio.abc import TaskGroup
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
import attrs
from confluent_kafka import (
    Consumer,
    KafkaError,
    KafkaException,
    Message,
    Producer,
    TopicPartition,
)
import orjson

from src.platform.exception.exceptions import TransientError, ValidationError
from src.platform.logging.loguru_io import Logger
from src.platform.message_queue.envelope_codec import (
    decode_envelope,
    encode_envelope,
    envelope_to_dict,
)
from src.platform.message_queue.i_event_bus import DeadLetter, EventHandler, IEventBus
from src.platform.message_queue.partition_worker import PartitionWorker
from src.platform.observability.tracing import extract_trace_context, inject_trace_context
from src.service.shared_kernel.domain.enum.event_type import EventType
from src.service.shared_kernel.domain.event_envelope import EventEnvelope


@attrs.define
class _KafkaGroup:
    group_id: str
    event_types: frozenset[EventType]
    handler: EventHandler


class KafkaEventBus(IEventBus):
    POLL_TIMEOUT_SECONDS: float = 0.5
    FLUSH_TIMEOUT_SECONDS: float = 10.0

    def __init__(
        self,
        *,
        bootstrap_servers: str,
        topic: str,
        dlq_topic: str,
        instance_id: str,
        auto_offset_reset: str = 'earliest',
        max_buffered_per_partition: int = 100,
        max_delivery_attempts: int = 5,
        redelivery_backoff_seconds: float = 0.2,
        redelivery_backoff_max_seconds: float = 5.0,
    ) -> None:
        self.bootstrap_servers = bootstrap_servers
        self.topic = topic
        self.dlq_topic = dlq_topic
        self.instance_id = instance_id
        self.auto_offset_reset = auto_offset_reset
        self.max_buffered_per_partition = max_buffered_per_partition
        self.max_delivery_attempts = max_delivery_attempts
        self.redelivery_backoff_seconds = redelivery_backoff_seconds
        self.redelivery_backoff_max_seconds = redelivery_backoff_max_seconds
        self._groups: List[_KafkaGroup] = []
        self._producer: Optional[Producer] = None

    @property
    def producer(self) -> Producer:
        if self._producer is None:
            self._producer = Producer(
                {
                    'bootstrap.servers': self.bootstrap_servers,
                    'acks': 'all',  # Wait for all replicas to acknowledge
                    'enable.idempotence': True,  # No broker-side duplicates on retry
                    'linger.ms': 5,
                }
            )
        return self._producer

    def register_consumer_group(
        self,
        *,
        group_id: str,
        event_types: frozenset[EventType],
        handler: EventHandler,
        partitions: int,
    ) -> None:
        # Kafka owns the partition count; the topic must be created with enough of them
        self._groups.append(_KafkaGroup(group_id=group_id, event_types=event_types, handler=handler))

    # ========== Producing ==========

    async def publish(self, envelope: EventEnvelope) -> None:
        await self._produce(
            self.topic,
            key=envelope.partition_key,
            value=encode_envelope(envelope),
        )

    async def _produce(self, topic: str, *, key: str, value: bytes) -> None:
        errors: List[KafkaError] = []

        def _on_delivery(err: Optional[KafkaError], msg: Message) -> None:
            if err is not None:
                errors.append(err)

        try:
            self.producer.produce(
                topic,
                key=key.encode(),
                value=value,
                headers=inject_trace_context(),
                on_delivery=_on_delivery,
            )
        except (BufferError, KafkaException) as e:
            raise TransientError(f'Kafka produce to {topic} failed: {e}') from e

        remaining = await anyio.to_thread.run_sync(self.producer.flush, self.FLUSH_TIMEOUT_SECONDS)
        if errors:
            raise TransientError(f'Kafka delivery to {topic} failed: {errors[0]}')
        if remaining:
            raise TransientError(f'Kafka delivery to {topic} timed out ({remaining} pending)')

    async def _dead_letter(self, letter: DeadLetter) -> None:
        body = orjson.dumps(
            {
                'groupId': letter.group_id,
                'error': letter.error,
                'attempts': letter.attempts,
                'envelope': envelope_to_dict(letter.envelope),
            }
        )
        await self._produce_dead_letter(key=letter.envelope.partition_key, value=body)

    async def _produce_dead_letter(self, *, key: str, value: bytes) -> None:
        """Retry until the DLQ accepts; the source offset stays uncommitted meanwhile."""
        attempt = 0
        while True:
            attempt += 1
            try:
                await self._produce(self.dlq_topic, key=key, value=value)
                return
            except TransientError as e:
                delay = min(
                    self.redelivery_backoff_seconds * (2 ** (attempt - 1)),
                    self.redelivery_backoff_max_seconds,
                )
                Logger.base.error(
                    f'💀 [BUS] Dead letter for {key} not accepted by {self.dlq_topic} '
                    f'(attempt {attempt}): {e}; retrying in {delay:.2f}s'
                )
                await anyio.sleep(delay)

    # ========== Consuming ==========

    async def run(self) -> None:
        Logger.base.info(f'🚌 [BUS] Kafka bus consuming {self.topic} for {len(self._groups)} group(s)')
        async with anyio.create_task_group() as tg:
            for group in self._groups:
                tg.start_soon(self._run_group, group)

    def _create_consumer(self, group: _KafkaGroup) -> Consumer:
        return Consumer(
            {
                'bootstrap.servers': self.bootstrap_servers,
                'group.id': group.group_id,
                'client.id': f'{group.group_id}-{self.instance_id}',
                'auto.offset.reset': self.auto_offset_reset,
                'enable.auto.commit': False,  # Commit only after the handler finished
                'fetch.wait.max.ms': 50,
                'session.timeout.ms': 45000,
                'heartbeat.interval.ms': 15000,
            }
        )

    async def _run_group(self, group: _KafkaGroup) -> None:
        async with anyio.create_task_group() as tg:
            group_consumer = _GroupConsumer(
                bus=self, group=group, consumer=self._create_consumer(group), task_group=tg
            )
            await group_consumer.run()


@attrs.define
class _Lane:
    partition: int
    send: MemoryObjectSendStream[Message]
    scope: anyio.CancelScope = attrs.field(factory=anyio.CancelScope)
    paused: bool = False

    @property
    def buffered(self) -> int:
        return self.send.statistics().current_buffer_used


class _GroupConsumer:
    """One consumer group's Kafka consumer and the lanes draining its assigned partitions."""

    def __init__(
        self,
        *,
        bus: KafkaEventBus,
        group: _KafkaGroup,
        consumer: Consumer,
        task_group: TaskGroup,
    ) -> None:
        self.bus = bus
        self.group = group
        self.consumer = consumer
        self.task_group = task_group
        self.lanes: Dict[int, _Lane] = {}
        self._closing = False

    async def run(self) -> None:
        group_id = self.group.group_id
        self.consumer.subscribe(
            [self.bus.topic],
            on_assign=self._on_assign,
            on_revoke=self._on_revoke,
            on_lost=self._on_revoke,
        )
        Logger.base.info(f'📥 [BUS] {group_id} subscribed to {self.bus.topic}')
        try:
            while True:
                self.resume_drained()
                msg = await anyio.to_thread.run_sync(
                    self.consumer.poll, self.bus.POLL_TIMEOUT_SECONDS
                )
                if msg is None:
                    continue
                if msg.error():
                    if msg.error().code() != KafkaError._PARTITION_EOF:
                        Logger.base.error(f'❌ [BUS] {group_id} poll error: {msg.error()}')
                    continue
                await self.dispatch(msg)
        finally:
            self._closing = True
            self.revoke(list(self.lanes))
            self.consumer.close()
            Logger.base.info(f'🛑 [BUS] {group_id} consumer closed')

    # ---------------------------------------------------------- rebalances

    def _on_assign(self, consumer: Consumer, partitions: List[TopicPartition]) -> None:
        Logger.base.info(
            f'📥 [BUS] {self.group.group_id} assigned partitions '
            f'{sorted(p.partition for p in partitions)}'
        )

    def _on_revoke(self, consumer: Consumer, partitions: List[TopicPartition]) -> None:
        if self._closing:
            return
        # Called from the poll() worker thread
        anyio.from_thread.run_sync(self.revoke, [p.partition for p in partitions])

    def revoke(self, partitions: Iterable[int]) -> None:
        stopped = []
        for partition in partitions:
            lane = self.lanes.pop(partition, None)
            if lane is None:
                continue
            lane.scope.cancel()
            lane.send.close()
            stopped.append(partition)
        if stopped:
            Logger.base.warning(
                f'🔀 [BUS] {self.group.group_id} gave up partitions {sorted(stopped)}; '
                f'uncommitted messages go to the new owner'
            )

    # ---------------------------------------------------------- dispatching

    async def dispatch(self, msg: Message) -> None:
        partition = msg.partition()
        lane = self.lanes.get(partition)
        if lane is None:
            lane = self._open_lane(partition)

        if lane.buffered >= self.bus.max_buffered_per_partition:
            # Fetched before the pause took effect; wait for the lane to make room
            await lane.send.send(msg)
        else:
            lane.send.send_nowait(msg)

        if not lane.paused and lane.buffered >= self.bus.max_buffered_per_partition:
            self.consumer.pause([TopicPartition(self.bus.topic, partition)])
            lane.paused = True
            Logger.base.info(
                f'⏸️ [BUS] {self.group.group_id} paused {self.bus.topic}[{partition}] '
                f'with {lane.buffered} message(s) buffered'
            )

    def resume_drained(self) -> None:
        low_watermark = self.bus.max_buffered_per_partition // 2
        drained = [
            lane for lane in self.lanes.values() if lane.paused and lane.buffered <= low_watermark
        ]
        if not drained:
            return
        self.consumer.resume([TopicPartition(self.bus.topic, lane.partition) for lane in drained])
        for lane in drained:
            lane.paused = False
        Logger.base.info(
            f'▶️ [BUS] {self.group.group_id} resumed partitions '
            f'{sorted(lane.partition for lane in drained)}'
        )

    def _open_lane(self, partition: int) -> _Lane:
        send, receive = anyio.create_memory_object_stream(
            self.bus.max_buffered_per_partition
        )
        lane = _Lane(partition=partition, send=send)
        self.lanes[partition] = lane
        self.task_group.start_soon(self._drain, lane, receive)
        return lane

    async def _drain(self, lane: _Lane, receive: MemoryObjectReceiveStream[Message]) -> None:
        worker = PartitionWorker(
            group_id=self.group.group_id,
            partition=lane.partition,
            handler=self.group.handler,
            on_dead_letter=self.bus._dead_letter,
            max_attempts=self.bus.max_delivery_attempts,
            backoff_seconds=self.bus.redelivery_backoff_seconds,
            backoff_max_seconds=self.bus.redelivery_backoff_max_seconds,
        )
        with lane.scope:
            async with receive:
                async for msg in receive:
                    await self._handle(worker, msg)
                    self._commit(msg)

    async def _handle(self, worker: PartitionWorker, msg: Message) -> None:
        try:
            envelope = decode_envelope(msg.value())
        except ValidationError as e:
            Logger.base.error(
                f'💀 [{self.group.group_id}] Undecodable message at '
                f'{msg.topic()}[{msg.partition()}]@{msg.offset()}: {e}'
            )
            await self.bus._produce_dead_letter(
                key=f'undecodable-{msg.partition()}', value=msg.value()
            )
            return
        if envelope.event_type in self.group.event_types:
            headers = {k: v.decode() for k, v in (msg.headers() or []) if v is not None}
            await worker.process(envelope, context=extract_trace_context(headers=headers))

    def _commit(self, msg: Message) -> None:
        try:
            self.consumer.commit(message=msg, asynchronous=True)
        except KafkaException as e:
            # Typically the partition moved to another member; it re-reads from the last commit
            Logger.base.warning(
                f'⚠️ [BUS] {self.group.group_id} could not commit '
                f'{msg.topic()}[{msg.partition()}]@{msg.offset()}: {e}'
            )
