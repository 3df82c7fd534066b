"""
Proxy Controller - forwards admitted requests to the resolved upstream

Upstream 5xx answers and any error raised while proxying count as breaker
failures; anything else is a healthy upstream, including 4xx.
A request cancelled mid-flight reports no verdict and only frees its slot.
"""

from typing import Optional

import anyio
from dependency_injector.wiring import Provide, inject
from fastapi import APIRouter, Depends, Request, Response
import httpx
from opentelemetry import trace

from src.platform.config.di import Container
from src.platform.exception.exceptions import ServiceUnavailableError
from src.platform.logging.loguru_io import Logger
from src.platform.observability.tracing import inject_trace_context
from src.service.gateway.app.command.admission_controller import AdmissionController


router = APIRouter()
tracer = trace.get_tracer(__name__)

HOP_BY_HOP_HEADERS = frozenset(
    {
        'connection',
        'keep-alive',
        'proxy-authenticate',
        'proxy-authorization',
        'te',
        'trailer',
        'transfer-encoding',
        'upgrade',
        'host',
        'content-length',
        'content-encoding',
    }
)


def _forwardable(headers) -> dict[str, str]:
    return {k: v for k, v in headers.items() if k.lower() not in HOP_BY_HOP_HEADERS}


@router.api_route(
    '/{path:path}',
    methods=['GET', 'POST', 'PUT', 'PATCH', 'DELETE'],
    include_in_schema=False,
)
@inject
async def proxy(
    path: str,
    request: Request,
    admission_controller: AdmissionController = Depends(Provide[Container.admission_controller]),
    http_client: httpx.AsyncClient = Depends(Provide[Container.gateway_http_client]),
) -> Response:
    admission = admission_controller.admit(
        authorization=request.headers.get('authorization'), path=request.url.path
    )

    with tracer.start_as_current_span('gateway.proxy') as span:
        span.set_attribute('route', admission.route_prefix)
        span.set_attribute('upstream', admission.upstream)

        headers = _forwardable(request.headers)
        headers['x-client-id'] = admission.identity.subject
        inject_trace_context(headers=headers)
        # None releases the breaker slot without a verdict on the upstream
        ok: Optional[bool] = None
        try:
            body = await request.body()
            ok = False
            upstream = await http_client.request(
                request.method,
                admission.upstream.rstrip('/') + request.url.path,
                params=request.query_params,
                content=body,
                headers=headers,
            )
            ok = upstream.status_code < 500
        except httpx.HTTPError as e:
            Logger.base.warning(f'🚦 [GATEWAY] {admission.upstream} unreachable: {e}')
            raise ServiceUnavailableError(f'Upstream for {admission.route_prefix} unavailable')
        except anyio.get_cancelled_exc_class():
            ok = None
            raise
        finally:
            admission_controller.record_outcome(admission, ok=ok)

        return Response(
            content=upstream.content,
            status_code=upstream.status_code,
            headers=_forwardable(upstream.headers),
        )
