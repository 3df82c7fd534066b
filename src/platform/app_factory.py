"""
FastAPI app assembly shared by the reservation service, the gateway and tests.

Every app gets tracing, CORS, the error taxonomy handlers, `/health`, `/metrics`
and correlation-id propagation: an inbound X-Correlation-Id is bound to every log
line of that request and echoed on the response.
"""

from collections.abc import Awaitable, Callable, Sequence
from contextlib import AbstractAsyncContextManager
from typing import Any

from fastapi import APIRouter, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from src.platform.config.core_setting import settings
from src.platform.exception.exception_handlers import register_exception_handlers
from src.platform.logging.loguru_io import Logger
from src.platform.observability.tracing import TracingConfig


CORRELATION_HEADER = 'X-Correlation-Id'

RouterMount = tuple[APIRouter, str, list[str]]  # (router, prefix, tags)


def create_app(
    *,
    lifespan: Callable[[FastAPI], AbstractAsyncContextManager[Any]],
    routers: Sequence[RouterMount],
    title_suffix: str = '',
    description: str = 'Booking saga',
    service_name: str = 'reservation-service',
) -> FastAPI:
    app = FastAPI(
        title=f'{settings.PROJECT_NAME}{title_suffix}',
        description=description,
        version=settings.VERSION,
        lifespan=lifespan,
    )

    # Instrumentation has to wrap the app before routes are mounted
    TracingConfig(service_name=service_name).instrument_fastapi(app=app)

    app.add_middleware(
        CORSMiddleware,  # type: ignore
        allow_origins=settings.BACKEND_CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=['*'],
        allow_headers=['*'],
        expose_headers=[CORRELATION_HEADER, 'Retry-After'],
    )

    @app.middleware('http')
    async def bind_correlation_id(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER)
        with Logger.correlation(correlation_id):
            response = await call_next(request)
        if correlation_id:
            response.headers[CORRELATION_HEADER] = correlation_id
        return response

    register_exception_handlers(app)

    # Before the routers so the gateway's catch-all route cannot shadow them
    _mount_operational_endpoints(app, service_name=service_name)
    for router, prefix, tags in routers:
        app.include_router(router, prefix=prefix, tags=tags)

    return app


def _mount_operational_endpoints(app: FastAPI, *, service_name: str) -> None:
    @app.get('/health', include_in_schema=False)
    async def health() -> dict[str, str]:
        return {'status': 'healthy', 'service': service_name}

    @app.get('/metrics', include_in_schema=False)
    async def metrics() -> PlainTextResponse:
        return PlainTextResponse(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
