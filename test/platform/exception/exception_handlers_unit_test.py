"""
Unit tests for the FastAPI exception handlers

Each error in the taxonomy must reach the caller with its status code, a
{"detail": ...} body and, for back-off errors, a Retry-After header.
"""

from fastapi import FastAPI
import httpx
import pytest

from src.platform.exception.exception_handlers import register_exception_handlers
from src.platform.exception.exceptions import (
    AuthenticationError,
    CircuitOpenError,
    ConflictError,
    NotFoundError,
    RateLimitedError,
    SagaTimeoutError,
    ServiceUnavailableError,
    StaleVersionError,
    TransientError,
    ValidationError,
)


pytestmark = pytest.mark.unit


_ERRORS = {
    'validation': ValidationError('bad seat ref'),
    'auth': AuthenticationError('Not authenticated'),
    'not-found': NotFoundError('no such reservation'),
    'timeout': SagaTimeoutError('payment deadline passed'),
    'conflict': ConflictError('seat taken'),
    'stale': StaleVersionError('row moved'),
    'rate-limited': RateLimitedError('slow down', retry_after=2.4),
    'transient': TransientError('gateway down'),
    'circuit-open': CircuitOpenError('circuit open', retry_after=12.0),
    'unavailable': ServiceUnavailableError('no upstream'),
    'value': ValueError('negative amount'),
    'boom': RuntimeError('unexpected'),
}


@pytest.fixture
def client() -> httpx.AsyncClient:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get('/raise/{name}')
    async def raise_error(name: str) -> None:
        raise _ERRORS[name]

    @app.get('/seats')
    async def list_seats(row: int) -> list[str]:
        return []

    return httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app, raise_app_exceptions=False),
        base_url='http://test',
    )


class TestExceptionHandlers:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        'name,status_code',
        [
            ('validation', 400),
            ('auth', 401),
            ('not-found', 404),
            ('timeout', 408),
            ('conflict', 409),
            ('stale', 409),
            ('rate-limited', 429),
            ('transient', 503),
            ('circuit-open', 503),
            ('unavailable', 503),
            ('value', 400),
        ],
    )
    async def test_status_codes(self, client, name, status_code):
        async with client:
            response = await client.get(f'/raise/{name}')

        assert response.status_code == status_code
        assert response.json() == {'detail': str(_ERRORS[name])}

    @pytest.mark.asyncio
    @pytest.mark.parametrize('name,retry_after', [('rate-limited', '2'), ('circuit-open', '12')])
    async def test_back_off_errors_carry_retry_after(self, client, name, retry_after):
        async with client:
            response = await client.get(f'/raise/{name}')

        assert response.headers['retry-after'] == retry_after

    @pytest.mark.asyncio
    async def test_unexpected_error_is_hidden(self, client):
        async with client:
            response = await client.get('/raise/boom')

        assert response.status_code == 500
        assert response.json() == {'detail': 'Internal server error'}

    @pytest.mark.asyncio
    async def test_request_validation_is_400(self, client):
        async with client:
            response = await client.get('/seats', params={'row': 'twelve'})

        assert response.status_code == 400
        assert response.json()['detail'][0]['loc'] == ['query', 'row']
