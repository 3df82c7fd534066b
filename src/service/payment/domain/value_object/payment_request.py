from enum import StrEnum
from typing import Optional
from uuid import UUID

import attrs


class PaymentOutcome(StrEnum):
    SUCCEEDED = 'SUCCEEDED'
    DECLINED = 'DECLINED'


@attrs.frozen
class PaymentRequest:
    payment_id: UUID
    reservation_id: UUID
    amount: int
    currency: str
    idempotency_key: str  # forwarded to the gateway so its own retries are safe


@attrs.frozen
class PaymentResult:
    """A gateway answer. A decline is a valid answer from a healthy gateway."""

    outcome: PaymentOutcome
    gateway_reference: Optional[str] = None
    decline_reason: Optional[str] = None
