"""
HTTP Payment Gateway - talks to an external card processor

    POST {base_url}/charges   Idempotency-Key: <key>
         200 {"status": "succeeded", "reference": "..."}
         200 {"status": "declined", "reason": "..."} | 402
    POST {base_url}/refunds   Idempotency-Key: refund:<key>

Non-2xx answers other than 402 raise, so the adapter counts them as gateway failures.
"""

from typing import Optional

import httpx

from src.platform.logging.loguru_io import Logger
from src.service.payment.app.interface.i_payment_gateway import IPaymentGateway
from src.service.payment.domain.value_object.payment_request import (
    PaymentOutcome,
    PaymentRequest,
    PaymentResult,
)


class HttpPaymentGateway(IPaymentGateway):
    def __init__(self, *, base_url: str, client: Optional[httpx.AsyncClient] = None) -> None:
        self.base_url = base_url.rstrip('/')
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url)
        return self._client

    @Logger.io
    async def charge(self, request: PaymentRequest) -> PaymentResult:
        response = await self.client.post(
            '/charges',
            json={
                'paymentId': str(request.payment_id),
                'reservationId': str(request.reservation_id),
                'amount': request.amount,
                'currency': request.currency,
            },
            headers={'Idempotency-Key': request.idempotency_key},
        )
        if response.status_code == httpx.codes.PAYMENT_REQUIRED:
            return PaymentResult(outcome=PaymentOutcome.DECLINED, decline_reason='payment_required')
        response.raise_for_status()

        body = response.json()
        if body.get('status') == 'succeeded':
            return PaymentResult(
                outcome=PaymentOutcome.SUCCEEDED, gateway_reference=body.get('reference')
            )
        return PaymentResult(outcome=PaymentOutcome.DECLINED, decline_reason=body.get('reason'))

    @Logger.io
    async def refund(self, *, request: PaymentRequest, gateway_reference: str | None) -> None:
        response = await self.client.post(
            '/refunds',
            json={
                'paymentId': str(request.payment_id),
                'reference': gateway_reference,
                'amount': request.amount,
                'currency': request.currency,
            },
            headers={'Idempotency-Key': f'refund:{request.idempotency_key}'},
        )
        response.raise_for_status()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
