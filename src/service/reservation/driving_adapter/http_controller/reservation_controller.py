from uuid import UUID

from dependency_injector.wiring import Provide, inject
from fastapi import APIRouter, Depends, status
from opentelemetry import trace

from src.platform.config.di import Container
from src.platform.logging.loguru_io import Logger
from src.service.reservation.app.command.saga_coordinator import SagaCoordinator
from src.service.reservation.domain.entity.reservation_entity import Reservation
from src.service.reservation.driving_adapter.http_controller.schema.reservation_schema import (
    ReservationCreateRequest,
    ReservationStatusResponse,
)


router = APIRouter()
tracer = trace.get_tracer(__name__)


def _to_response(reservation: Reservation) -> ReservationStatusResponse:
    return ReservationStatusResponse(
        reservation_id=reservation.id,
        status=reservation.status.value,
        reason_code=reservation.reason_code.value if reservation.reason_code else None,
    )


@router.post(
    '',
    status_code=status.HTTP_202_ACCEPTED,
    response_model=ReservationStatusResponse,
    response_model_by_alias=True,
)
@Logger.io
@inject
async def create_reservation(
    request: ReservationCreateRequest,
    coordinator: SagaCoordinator = Depends(Provide[Container.saga_coordinator]),
) -> ReservationStatusResponse:
    """Hold the seat and start the saga; poll GET /{id} for the outcome."""
    with tracer.start_as_current_span('controller.create_reservation') as span:
        span.set_attribute('flight_ref', request.flight_ref)
        span.set_attribute('seat_ref', request.seat_ref)

        reservation = await coordinator.create(
            passenger_ref=request.passenger_ref,
            flight_ref=request.flight_ref,
            seat_ref=request.seat_ref,
        )
        span.set_attribute('reservation.id', str(reservation.id))
        return _to_response(reservation)


@router.get(
    '/{reservation_id}',
    response_model=ReservationStatusResponse,
    response_model_by_alias=True,
)
@inject
async def get_reservation(
    reservation_id: UUID,
    coordinator: SagaCoordinator = Depends(Provide[Container.saga_coordinator]),
) -> ReservationStatusResponse:
    return _to_response(await coordinator.get(reservation_id=reservation_id))


@router.post(
    '/{reservation_id}/cancel',
    response_model=ReservationStatusResponse,
    response_model_by_alias=True,
)
@Logger.io
@inject
async def cancel_reservation(
    reservation_id: UUID,
    coordinator: SagaCoordinator = Depends(Provide[Container.saga_coordinator]),
) -> ReservationStatusResponse:
    # A reservation already terminal is returned unchanged
    return _to_response(await coordinator.cancel(reservation_id=reservation_id))
