from typing import Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.platform.exception.exceptions import NotFoundError
from src.platform.logging.loguru_io import Logger
from src.service.payment.app.interface.i_payment_repo import IPaymentRepo
from src.service.payment.domain.entity.payment_entity import Payment, PaymentStatus
from src.service.payment.driven_adapter.model.payment_model import PaymentModel


class PaymentRepoImpl(IPaymentRepo):
    def __init__(self, *, session: AsyncSession) -> None:
        self.session = session

    @staticmethod
    def _to_entity(row: PaymentModel) -> Payment:
        return Payment(
            id=row.id,
            reservation_id=row.reservation_id,
            amount=row.amount,
            currency=row.currency,
            status=PaymentStatus(row.status),
            attempt_count=row.attempt_count,
            gateway_reference=row.gateway_reference,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @Logger.io
    async def add(self, *, payment: Payment) -> None:
        self.session.add(
            PaymentModel(
                id=payment.id,
                reservation_id=payment.reservation_id,
                amount=payment.amount,
                currency=payment.currency,
                status=payment.status.value,
                attempt_count=payment.attempt_count,
                gateway_reference=payment.gateway_reference,
                created_at=payment.created_at,
                updated_at=payment.updated_at,
            )
        )
        await self.session.flush()

    @Logger.io
    async def update(self, *, payment: Payment) -> None:
        result = await self.session.execute(
            update(PaymentModel)
            .where(PaymentModel.id == payment.id)
            .values(
                status=payment.status.value,
                attempt_count=payment.attempt_count,
                gateway_reference=payment.gateway_reference,
                updated_at=payment.updated_at,
            )
        )
        if result.rowcount != 1:
            raise NotFoundError(f'Payment {payment.id} not found')

    async def get_by_reservation(self, *, reservation_id: UUID) -> Optional[Payment]:
        result = await self.session.execute(
            select(PaymentModel).where(PaymentModel.reservation_id == reservation_id)
        )
        row = result.scalar_one_or_none()
        return self._to_entity(row) if row else None
