from datetime import datetime, timezone
from enum import StrEnum
from typing import Optional
from uuid import UUID

import attrs
from uuid_utils.compat import uuid7

from src.platform.exception.exceptions import ConflictError, ValidationError


class PaymentStatus(StrEnum):
    INITIATED = 'INITIATED'
    SUCCEEDED = 'SUCCEEDED'
    DECLINED = 'DECLINED'
    GATEWAY_ERROR = 'GATEWAY_ERROR'
    REFUNDED = 'REFUNDED'


FINAL_PAYMENT_STATUSES = frozenset(
    {
        PaymentStatus.SUCCEEDED,
        PaymentStatus.DECLINED,
        PaymentStatus.GATEWAY_ERROR,
        PaymentStatus.REFUNDED,
    }
)


@attrs.define
class Payment:
    id: UUID
    reservation_id: UUID
    amount: int  # minor units
    currency: str
    status: PaymentStatus = PaymentStatus.INITIATED
    attempt_count: int = 0
    gateway_reference: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def initiate(cls, *, reservation_id: UUID, amount: int, currency: str) -> 'Payment':
        if amount <= 0:
            raise ValidationError('Payment amount must be positive')
        now = datetime.now(timezone.utc)
        return cls(
            id=uuid7(),
            reservation_id=reservation_id,
            amount=amount,
            currency=currency,
            created_at=now,
            updated_at=now,
        )

    @property
    def is_final(self) -> bool:
        return self.status in FINAL_PAYMENT_STATUSES

    def record_attempt(self) -> 'Payment':
        return attrs.evolve(
            self, attempt_count=self.attempt_count + 1, updated_at=datetime.now(timezone.utc)
        )

    def succeed(self, *, gateway_reference: Optional[str]) -> 'Payment':
        return self._finish(PaymentStatus.SUCCEEDED, gateway_reference=gateway_reference)

    def decline(self) -> 'Payment':
        return self._finish(PaymentStatus.DECLINED)

    def fail_with_gateway_error(self) -> 'Payment':
        return self._finish(PaymentStatus.GATEWAY_ERROR)

    def refund(self) -> 'Payment':
        if self.status is not PaymentStatus.SUCCEEDED:
            raise ConflictError(f'Only succeeded payments can be refunded (status {self.status})')
        return attrs.evolve(
            self, status=PaymentStatus.REFUNDED, updated_at=datetime.now(timezone.utc)
        )

    def _finish(self, status: PaymentStatus, **changes) -> 'Payment':
        if self.status is not PaymentStatus.INITIATED:
            raise ConflictError(f'Payment {self.id} already {self.status}')
        return attrs.evolve(self, status=status, updated_at=datetime.now(timezone.utc), **changes)
