"""
Integration tests for the reservation HTTP API

The DI container's saga coordinator is overridden with the harness coordinator,
so requests run the real create/cancel flow on the test database.
"""

from contextlib import asynccontextmanager
from uuid import uuid4

from dependency_injector import providers
import httpx
import pytest
import pytest_asyncio

from src.platform.app_factory import create_app
from src.platform.config.di import container
from src.platform.config.wire_modules import RESERVATION_WIRE_MODULES
from src.service.reservation.driving_adapter.http_controller.reservation_controller import (
    router as reservation_router,
)


BOOKING = {'passengerRef': 'P-1001', 'flightRef': 'F123', 'seatRef': '12A'}


@asynccontextmanager
async def _no_lifespan(app):
    yield


@pytest_asyncio.fixture
async def client(saga_without_payment):
    container.saga_coordinator.override(providers.Object(saga_without_payment.coordinator))
    container.wire(modules=RESERVATION_WIRE_MODULES)
    app = create_app(
        lifespan=_no_lifespan,
        routers=[(reservation_router, '/api/reservation', ['reservation'])],
        title_suffix=' (Test)',
    )
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app, raise_app_exceptions=False),
        base_url='http://test',
    ) as client:
        yield client
    container.unwire()
    container.saga_coordinator.reset_override()


class TestCreateReservation:
    @pytest.mark.asyncio
    async def test_accepted_with_camel_case_body(self, client):
        response = await client.post('/api/reservation', json=BOOKING)

        assert response.status_code == 202
        body = response.json()
        assert set(body) == {'reservationId', 'status', 'reasonCode'}
        assert body['status'] == 'AWAITING_PAYMENT'
        assert body['reasonCode'] is None

    @pytest.mark.asyncio
    async def test_taken_seat_is_409(self, client):
        await client.post('/api/reservation', json=BOOKING)

        response = await client.post('/api/reservation', json={**BOOKING, 'passengerRef': 'P-2002'})

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_missing_field_is_400(self, client):
        response = await client.post(
            '/api/reservation', json={'passengerRef': 'P-1001', 'flightRef': 'F123'}
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_malformed_seat_is_400(self, client):
        response = await client.post('/api/reservation', json={**BOOKING, 'seatRef': '12 A'})

        assert response.status_code == 400
        assert 'seatRef' in response.json()['detail']


class TestReadAndCancel:
    @pytest.mark.asyncio
    async def test_get_returns_current_status(self, client):
        created = (await client.post('/api/reservation', json=BOOKING)).json()

        response = await client.get(f'/api/reservation/{created["reservationId"]}')

        assert response.status_code == 200
        assert response.json() == created

    @pytest.mark.asyncio
    async def test_unknown_reservation_is_404(self, client):
        response = await client.get(f'/api/reservation/{uuid4()}')

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_cancel(self, client):
        created = (await client.post('/api/reservation', json=BOOKING)).json()

        response = await client.post(f'/api/reservation/{created["reservationId"]}/cancel')

        assert response.status_code == 200
        assert response.json()['status'] == 'CANCELLED'
        assert response.json()['reasonCode'] == 'USER_REQUESTED'

        # The seat is free again
        rebooked = await client.post('/api/reservation', json=BOOKING)
        assert rebooked.status_code == 202

    @pytest.mark.asyncio
    async def test_cancel_unknown_is_404(self, client):
        response = await client.post(f'/api/reservation/{uuid4()}/cancel')

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get('/health')

        assert response.json()['status'] == 'healthy'

    @pytest.mark.asyncio
    async def test_correlation_id_is_echoed(self, client):
        response = await client.get('/health', headers={'X-Correlation-Id': 'trace-me-1'})

        assert response.headers['x-correlation-id'] == 'trace-me-1'
