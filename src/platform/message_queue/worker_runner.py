"""
Standalone consumer worker process

Shared startup/shutdown for the payment and notification workers: tracing,
DI, tables, Kafka topics, then the bus until SIGINT/SIGTERM.
"""

import signal
from typing import Awaitable, Callable, Optional

import anyio

from src.platform.config import di
from src.platform.config.core_setting import settings
from src.platform.config.di import container
from src.platform.logging.loguru_io import Logger
from src.platform.message_queue.i_event_bus import IEventBus
from src.platform.message_queue.kafka_topic_initializer import KafkaTopicInitializer
from src.platform.observability.tracing import TracingConfig


async def _cancel_on_signal(scope: anyio.CancelScope, service_name: str) -> None:
    with anyio.open_signal_receiver(signal.SIGINT, signal.SIGTERM) as signals:
        async for signum in signals:
            Logger.base.info(f'🛑 [{service_name}] Received {signal.Signals(signum).name}')
            scope.cancel()
            return


async def run_consumer_worker(
    *,
    service_name: str,
    register: Callable[[IEventBus], None],
    on_shutdown: Optional[Callable[[], Awaitable[None]]] = None,
) -> None:
    Logger.base.info(f'🚀 [{service_name}] Starting...')

    tracing = TracingConfig(service_name=service_name)
    tracing.setup()

    di.setup()
    database = container.database()
    await database.create_tables()
    tracing.instrument_sqlalchemy(engine=database.engine)

    if settings.EVENT_BUS_BACKEND == 'kafka':
        KafkaTopicInitializer().ensure_topics_exist()
        Logger.base.info(f'📝 [{service_name}] Kafka topics ensured')

    event_bus = container.event_bus()
    register(event_bus)

    try:
        async with anyio.create_task_group() as tg:
            tg.start_soon(_cancel_on_signal, tg.cancel_scope, service_name)
            tg.start_soon(event_bus.run)
            Logger.base.info(f'✅ [{service_name}] Consuming')
    finally:
        with anyio.CancelScope(shield=True):
            if on_shutdown is not None:
                await on_shutdown()
            await database.dispose()
        tracing.shutdown()
        di.cleanup()
        Logger.base.info(f'👋 [{service_name}] Shutdown complete')
