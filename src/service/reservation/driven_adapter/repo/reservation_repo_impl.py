from datetime import datetime
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.platform.exception.exceptions import StaleVersionError
from src.platform.logging.loguru_io import Logger
from src.service.reservation.app.interface.i_reservation_repo import IReservationRepo
from src.service.reservation.domain.entity.reservation_entity import (
    Reservation,
    ReservationStatus,
)
from src.service.reservation.driven_adapter.model.reservation_model import ReservationModel
from src.service.shared_kernel.domain.enum.reason_code import ReasonCode


class ReservationRepoImpl(IReservationRepo):
    def __init__(self, *, session: AsyncSession) -> None:
        self.session = session

    @staticmethod
    def _to_entity(row: ReservationModel) -> Reservation:
        return Reservation(
            id=row.id,
            passenger_ref=row.passenger_ref,
            flight_ref=row.flight_ref,
            seat_ref=row.seat_ref,
            status=ReservationStatus(row.status),
            version=row.version,
            reason_code=ReasonCode(row.reason_code) if row.reason_code else None,
            payment_deadline_at=row.payment_deadline_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @Logger.io
    async def add(self, *, reservation: Reservation) -> None:
        self.session.add(
            ReservationModel(
                id=reservation.id,
                passenger_ref=reservation.passenger_ref,
                flight_ref=reservation.flight_ref,
                seat_ref=reservation.seat_ref,
                status=reservation.status.value,
                version=reservation.version,
                reason_code=reservation.reason_code.value if reservation.reason_code else None,
                payment_deadline_at=reservation.payment_deadline_at,
                created_at=reservation.created_at,
                updated_at=reservation.updated_at,
            )
        )
        await self.session.flush()

    @Logger.io
    async def update(self, *, reservation: Reservation, expected_version: int) -> None:
        result = await self.session.execute(
            update(ReservationModel)
            .where(
                ReservationModel.id == reservation.id,
                ReservationModel.version == expected_version,
            )
            .values(
                status=reservation.status.value,
                version=reservation.version,
                reason_code=reservation.reason_code.value if reservation.reason_code else None,
                payment_deadline_at=reservation.payment_deadline_at,
                updated_at=reservation.updated_at,
            )
        )
        if result.rowcount != 1:
            raise StaleVersionError(
                f'Reservation {reservation.id} changed concurrently (expected v{expected_version})'
            )

    async def get(self, *, reservation_id: UUID) -> Optional[Reservation]:
        row = await self.session.get(ReservationModel, reservation_id)
        return self._to_entity(row) if row else None

    async def list_awaiting_payment(self) -> List[Reservation]:
        result = await self.session.execute(
            select(ReservationModel).where(
                ReservationModel.status == ReservationStatus.AWAITING_PAYMENT.value
            )
        )
        return [self._to_entity(row) for row in result.scalars().all()]

    async def list_pending_created_before(self, *, before: datetime) -> List[Reservation]:
        result = await self.session.execute(
            select(ReservationModel).where(
                ReservationModel.status == ReservationStatus.PENDING.value,
                ReservationModel.created_at < before,
            )
        )
        return [self._to_entity(row) for row in result.scalars().all()]
