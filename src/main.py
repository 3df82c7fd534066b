"""
Reservation Service FastAPI Application

HTTP surface of the saga plus its background loops: event bus consumers,
outbox relay, payment deadline scheduler, hold expiry sweeper and maintenance.
With EMBEDDED_WORKERS the payment and notification consumer groups run here
too, which makes the in-memory bus a complete single-process deployment.

Usage:
    uvicorn src.main:app --port 8100
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import anyio
from fastapi import FastAPI
from fastapi.responses import RedirectResponse

from src.platform.app_factory import create_app
from src.platform.config import di
from src.platform.config.core_setting import settings
from src.platform.config.di import container
from src.platform.config.wire_modules import RESERVATION_WIRE_MODULES
from src.platform.logging.loguru_io import Logger
from src.platform.message_queue.kafka_topic_initializer import KafkaTopicInitializer
from src.platform.observability.tracing import TracingConfig
from src.platform.state.kvrocks_client import kvrocks_client
from src.service.reservation.driving_adapter.http_controller.reservation_controller import (
    router as reservation_router,
)


SERVICE_NAME = 'reservation-service'


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifespan: startup and shutdown."""
    Logger.base.info('🚀 [Reservation Service] Starting up...')

    tracing = TracingConfig(service_name=SERVICE_NAME)
    tracing.setup()
    Logger.base.info('📊 [Reservation Service] OpenTelemetry tracing configured')

    di.setup()
    container.wire(modules=RESERVATION_WIRE_MODULES)
    Logger.base.info('🔌 [Reservation Service] Dependency injection wired')

    database = container.database()
    await database.create_tables()
    tracing.instrument_sqlalchemy(engine=database.engine)
    Logger.base.info('🗄️  [Reservation Service] Database ready + instrumented')

    if settings.SEAT_HOLD_BACKEND == 'kvrocks':
        tracing.instrument_redis()
        await kvrocks_client.initialize()

    if settings.EVENT_BUS_BACKEND == 'kafka':
        KafkaTopicInitializer().ensure_topics_exist()
        Logger.base.info('📝 [Reservation Service] Kafka topics ensured')

    event_bus = container.event_bus()
    container.saga_mq_consumer().register(
        event_bus=event_bus, partitions=settings.SAGA_CONSUMER_PARTITIONS
    )
    if settings.EMBEDDED_WORKERS:
        container.payment_mq_consumer().register(
            event_bus=event_bus, partitions=settings.PAYMENT_CONSUMER_PARTITIONS
        )
        container.notification_mq_consumer().register(
            event_bus=event_bus, partitions=settings.NOTIFICATION_CONSUMER_PARTITIONS
        )
        Logger.base.info('👷 [Reservation Service] Payment + notification workers embedded')

    await container.saga_coordinator().restore_deadlines()

    async with anyio.create_task_group() as tg:
        tg.start_soon(event_bus.run)
        tg.start_soon(container.outbox_relay().run)
        tg.start_soon(container.deadline_scheduler().run)
        tg.start_soon(container.hold_expiry_sweeper().run)
        tg.start_soon(container.saga_maintenance().run)
        Logger.base.info('✅ [Reservation Service] Ready to serve requests')

        yield

        Logger.base.info('🛑 [Reservation Service] Shutting down...')
        tg.cancel_scope.cancel()

    if settings.EMBEDDED_WORKERS and settings.PAYMENT_GATEWAY_URL:
        await container.payment_gateway().aclose()

    await database.dispose()
    Logger.base.info('🗄️  [Reservation Service] Database disposed')

    if settings.SEAT_HOLD_BACKEND == 'kvrocks':
        await kvrocks_client.disconnect()

    tracing.shutdown()
    container.unwire()
    di.cleanup()
    Logger.base.info('👋 [Reservation Service] Shutdown complete')


app = create_app(
    lifespan=lifespan,
    routers=[(reservation_router, '/api/reservation', ['reservation'])],
    description='Booking saga: reservation, payment and notification',
    service_name=SERVICE_NAME,
)


@app.get('/')
async def root() -> RedirectResponse:
    """Root endpoint - redirect to docs."""
    return RedirectResponse(url='/docs')
