"""Mock Payment Gateway for non-production configurations and tests."""

from collections import deque
from enum import StrEnum
from typing import Deque, List

import anyio
from uuid_utils.compat import uuid7

from src.platform.logging.loguru_io import Logger
from src.service.payment.app.interface.i_payment_gateway import IPaymentGateway
from src.service.payment.domain.value_object.payment_request import (
    PaymentOutcome,
    PaymentRequest,
    PaymentResult,
)


class GatewayBehavior(StrEnum):
    SUCCEED = 'succeed'
    DECLINE = 'decline'
    ERROR = 'error'
    HANG = 'hang'  # never answers; the adapter's timeout must fire


class MockGatewayError(Exception):
    pass


class MockPaymentGateway(IPaymentGateway):
    """
    Answers with scripted behaviors in order, then with default_behavior.

    Usage:
        gateway = MockPaymentGateway()
        gateway.script(GatewayBehavior.ERROR, GatewayBehavior.SUCCEED)
    """

    def __init__(self, default_behavior: GatewayBehavior = GatewayBehavior.SUCCEED):
        self.default_behavior = default_behavior
        self._script: Deque[GatewayBehavior] = deque()
        self.charges: List[PaymentRequest] = []  # every charge call, for assertions
        self.refunds: List[PaymentRequest] = []

    @property
    def calls(self) -> int:
        return len(self.charges)

    def script(self, *behaviors: GatewayBehavior) -> None:
        self._script.extend(behaviors)

    def _next_behavior(self) -> GatewayBehavior:
        return self._script.popleft() if self._script else self.default_behavior

    @Logger.io
    async def charge(self, request: PaymentRequest) -> PaymentResult:
        self.charges.append(request)
        behavior = self._next_behavior()

        if behavior is GatewayBehavior.HANG:
            await anyio.sleep_forever()
        if behavior is GatewayBehavior.ERROR:
            raise MockGatewayError('mock gateway unavailable')
        if behavior is GatewayBehavior.DECLINE:
            return PaymentResult(outcome=PaymentOutcome.DECLINED, decline_reason='card_declined')
        return PaymentResult(outcome=PaymentOutcome.SUCCEEDED, gateway_reference=f'mock-{uuid7()}')

    @Logger.io
    async def refund(self, *, request: PaymentRequest, gateway_reference: str | None) -> None:
        self.refunds.append(request)
