"""
Payment Gateway Adapter - the only path to the external gateway

Wraps every call with:
- a circuit breaker (fast-fail while OPEN, never touching the gateway)
- a concurrency cap (anyio.CapacityLimiter)
- a hard timeout (anyio.fail_after)

Timeouts, gateway exceptions and open-circuit rejections all surface as
TransientError. A decline is a successful call from the breaker's point of view.
"""

import anyio
from opentelemetry import trace

from src.platform.exception.exceptions import CircuitOpenError, TransientError
from src.platform.logging.loguru_io import Logger
from src.platform.metrics.saga_metrics import metrics
from src.platform.resilience.circuit_breaker import CircuitBreaker
from src.service.payment.app.interface.i_payment_gateway import IPaymentGateway
from src.service.payment.domain.value_object.payment_request import (
    PaymentOutcome,
    PaymentRequest,
    PaymentResult,
)


class PaymentGatewayAdapter:
    def __init__(
        self,
        *,
        gateway: IPaymentGateway,
        circuit_breaker: CircuitBreaker,
        timeout_seconds: float,
        max_concurrency: int,
    ) -> None:
        self.gateway = gateway
        self.circuit_breaker = circuit_breaker
        self.timeout_seconds = timeout_seconds
        self._limiter = anyio.CapacityLimiter(max_concurrency)
        self.tracer = trace.get_tracer(__name__)

    @Logger.io
    async def charge(self, request: PaymentRequest) -> PaymentResult:
        with self.tracer.start_as_current_span(
            'payment.gateway.charge',
            attributes={'payment.id': str(request.payment_id), 'payment.amount': request.amount},
        ):
            try:
                result = await self._guarded('charge', self.gateway.charge, request)
            except CircuitOpenError:
                metrics.record_payment_attempt(result='circuit_open')
                raise
            except TransientError:
                metrics.record_payment_attempt(result='error')
                raise
            metrics.record_payment_attempt(
                result='succeeded' if result.outcome is PaymentOutcome.SUCCEEDED else 'declined'
            )
            return result

    @Logger.io
    async def refund(self, *, request: PaymentRequest, gateway_reference: str | None) -> None:
        with self.tracer.start_as_current_span(
            'payment.gateway.refund', attributes={'payment.id': str(request.payment_id)}
        ):
            await self._guarded(
                'refund',
                lambda: self.gateway.refund(request=request, gateway_reference=gateway_reference),
            )

    async def _guarded(self, operation: str, func, *args):
        self.circuit_breaker.before_call()
        try:
            async with self._limiter:
                with anyio.fail_after(self.timeout_seconds):
                    result = await func(*args)
        except TimeoutError as e:
            self.circuit_breaker.record_failure()
            raise TransientError(
                f'Payment gateway {operation} timed out after {self.timeout_seconds}s'
            ) from e
        except Exception as e:
            self.circuit_breaker.record_failure()
            raise TransientError(f'Payment gateway {operation} failed: {type(e).__name__}: {e}') from e
        except BaseException:
            # Cancelled from outside: no verdict on the gateway, but the slot goes back
            self.circuit_breaker.release()
            raise
        self.circuit_breaker.record_success()
        return result
