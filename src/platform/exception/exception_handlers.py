"""
Map the error taxonomy onto HTTP responses.

Every response body is `{"detail": ...}`. Back-off errors (rate limited,
circuit open) carry Retry-After so gateway clients know when to come back.
"""

from typing import Any, Callable, Coroutine

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.responses import Response

from src.platform.exception.exceptions import CustomBaseError
from src.platform.logging.loguru_io import Logger


ExceptionHandler = Callable[[Request, Exception], Coroutine[Any, Any, Response]]


def _route(request: Request) -> str:
    return f'{request.method} {request.url.path}'


async def taxonomy_error_handler(request: Request, exc: Exception) -> JSONResponse:
    error = exc if isinstance(exc, CustomBaseError) else CustomBaseError(str(exc))
    if error.status_code >= 500:
        Logger.base.warning(f'⚠️ [HTTP] {_route(request)} -> {error.status_code}: {error.message}')
    return JSONResponse(
        status_code=error.status_code,
        content={'detail': error.message},
        headers=error.headers or None,
    )


async def value_error_handler(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={'detail': str(exc)})


async def request_validation_handler(request: Request, exc: Exception) -> JSONResponse:
    # pydantic puts the raw exception in ctx, which is not JSON serializable
    errors = exc.errors() if isinstance(exc, RequestValidationError) else []
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={'detail': jsonable_encoder(errors, custom_encoder={Exception: str})},
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    Logger.base.opt(exception=exc).error(f'💥 [HTTP] {_route(request)} crashed: {exc!r}')
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={'detail': 'Internal server error'},
    )


EXCEPTION_HANDLERS: dict[type[Exception], ExceptionHandler] = {
    CustomBaseError: taxonomy_error_handler,
    ValueError: value_error_handler,
    RequestValidationError: request_validation_handler,
    Exception: unhandled_error_handler,
}


def register_exception_handlers(app: FastAPI) -> None:
    for exception_class, handler in EXCEPTION_HANDLERS.items():
        app.add_exception_handler(exception_class, handler)
