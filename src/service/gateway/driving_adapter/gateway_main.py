"""
Gateway FastAPI Application - admission control in front of the services

Usage:
    uvicorn src.service.gateway.driving_adapter.gateway_main:app --port 8000
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import anyio
from fastapi import FastAPI

from src.platform.app_factory import create_app
from src.platform.config import di
from src.platform.config.di import container
from src.platform.config.wire_modules import GATEWAY_WIRE_MODULES
from src.platform.logging.loguru_io import Logger
from src.platform.observability.tracing import TracingConfig
from src.service.gateway.driving_adapter.http_controller.proxy_controller import (
    router as proxy_router,
)


SERVICE_NAME = 'gateway'


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    Logger.base.info('🚀 [Gateway] Starting up...')

    tracing = TracingConfig(service_name=SERVICE_NAME)
    tracing.setup()

    di.setup()
    container.wire(modules=GATEWAY_WIRE_MODULES)

    refresher = container.routing_table_refresher()
    await refresher.refresh_once()
    Logger.base.info(f'🧭 [Gateway] Routes: {dict(container.routing_table().snapshot())}')

    async with anyio.create_task_group() as tg:
        tg.start_soon(refresher.run)
        Logger.base.info('✅ [Gateway] Ready to admit requests')

        yield

        Logger.base.info('🛑 [Gateway] Shutting down...')
        tg.cancel_scope.cancel()

    await container.gateway_http_client().aclose()
    tracing.shutdown()
    container.unwire()
    di.cleanup()
    Logger.base.info('👋 [Gateway] Shutdown complete')


app = create_app(
    lifespan=lifespan,
    routers=[(proxy_router, '', ['gateway'])],
    description='Admission control: authentication, rate limiting, routing, circuit breaking',
    service_name=SERVICE_NAME,
)
