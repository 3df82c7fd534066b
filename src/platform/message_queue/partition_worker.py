"""
Partition Worker - in-order, retry-in-place delivery for one partition of one group

A failing envelope is retried with capped exponential backoff before the next
envelope on the same partition is touched, so per-reservation ordering survives
handler errors. Envelopes that can never succeed (malformed, unknown reservation,
business conflict) go straight to the dead-letter sink; everything else goes
there once max_attempts is exhausted.

A key leased by another delivery (LedgerBusyError) is waited out without using
up an attempt: that delivery may still fail and hand the key back.
"""

import time
from typing import Awaitable, Callable, Optional

import anyio
from opentelemetry import trace
from opentelemetry.context import Context

from src.platform.exception.exceptions import (
    ConflictError,
    LedgerBusyError,
    NotFoundError,
    StaleVersionError,
    ValidationError,
)
from src.platform.logging.loguru_io import Logger
from src.platform.message_queue.i_event_bus import DeadLetter, EventHandler
from src.platform.metrics.saga_metrics import metrics
from src.service.shared_kernel.domain.event_envelope import EventEnvelope


def is_retryable(error: Exception) -> bool:
    if isinstance(error, StaleVersionError):
        return True
    return not isinstance(error, (ValidationError, NotFoundError, ConflictError))


class PartitionWorker:
    def __init__(
        self,
        *,
        group_id: str,
        partition: int,
        handler: EventHandler,
        on_dead_letter: Callable[[DeadLetter], Awaitable[None]],
        max_attempts: int,
        backoff_seconds: float,
        backoff_max_seconds: float,
    ) -> None:
        self.group_id = group_id
        self.partition = partition
        self.handler = handler
        self.on_dead_letter = on_dead_letter
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.tracer = trace.get_tracer(__name__)

    def _backoff(self, attempt: int) -> float:
        return min(self.backoff_seconds * (2 ** (attempt - 1)), self.backoff_max_seconds)

    async def process(self, envelope: EventEnvelope, *, context: Optional[Context] = None) -> None:
        with Logger.correlation(envelope.correlation_id):
            await self._process(envelope, context=context)

    async def _process(self, envelope: EventEnvelope, *, context: Optional[Context]) -> None:
        event_type = envelope.event_type.value
        start = time.perf_counter()
        attempt = 0
        while True:
            attempt += 1
            try:
                with self.tracer.start_as_current_span(
                    f'{self.group_id}.handle',
                    context=context,
                    attributes={
                        'messaging.consumer.group.name': self.group_id,
                        'messaging.destination.partition.id': self.partition,
                        'saga.event_type': event_type,
                        'saga.idempotency_key': envelope.idempotency_key,
                        'saga.delivery_attempt': attempt,
                    },
                ):
                    await self.handler(envelope)
            except LedgerBusyError as e:
                attempt -= 1
                delay = min(max(e.retry_after, self.backoff_seconds), self.backoff_max_seconds)
                Logger.base.info(
                    f'⏳ [{self.group_id}] {event_type} {envelope.idempotency_key} is leased by '
                    f'another delivery; checking again in {delay:.2f}s'
                )
                await anyio.sleep(delay)
            except Exception as e:
                if not is_retryable(e) or attempt >= self.max_attempts:
                    await self._dead_letter(envelope, error=e, attempts=attempt)
                    metrics.record_bus_message(
                        group=self.group_id,
                        event_type=event_type,
                        result='dead_letter',
                        duration=time.perf_counter() - start,
                    )
                    return

                delay = self._backoff(attempt)
                Logger.base.warning(
                    f'🔁 [{self.group_id}] {event_type} {envelope.idempotency_key} failed '
                    f'(attempt {attempt}/{self.max_attempts}): {type(e).__name__}: {e}; '
                    f'redelivering in {delay:.2f}s'
                )
                metrics.record_redelivery(group=self.group_id, event_type=event_type)
                await anyio.sleep(delay)
            else:
                metrics.record_bus_message(
                    group=self.group_id,
                    event_type=event_type,
                    result='ok',
                    duration=time.perf_counter() - start,
                )
                return

    async def _dead_letter(self, envelope: EventEnvelope, *, error: Exception, attempts: int) -> None:
        Logger.base.error(
            f'💀 [{self.group_id}] Dead-lettering {envelope.event_type} '
            f'{envelope.idempotency_key} after {attempts} attempt(s): {type(error).__name__}: {error}'
        )
        await self.on_dead_letter(
            DeadLetter(
                group_id=self.group_id,
                envelope=envelope,
                error=f'{type(error).__name__}: {error}',
                attempts=attempts,
            )
        )
