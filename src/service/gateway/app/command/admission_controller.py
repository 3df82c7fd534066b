"""
Admission Controller - gatekeeper in front of every proxied request

Checks in order, each failing fast:
1. Credentials      -> AuthenticationError (401)
2. Rate limit       -> RateLimitedError (429, Retry-After)
3. Route            -> NotFoundError (404) / ServiceUnavailableError (503)
4. Route breaker    -> CircuitOpenError (503, Retry-After)

An admitted request holds a breaker slot; the proxy reports the upstream
outcome through record_outcome() exactly once, with ok=None when there is no
verdict to give.
"""

from typing import Optional

import attrs

from src.platform.exception.exceptions import CustomBaseError
from src.platform.logging.loguru_io import Logger
from src.platform.metrics.saga_metrics import metrics
from src.platform.resilience.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from src.platform.resilience.token_bucket_rate_limiter import TokenBucketRateLimiter
from src.service.gateway.app.interface.i_credential_verifier import ICredentialVerifier
from src.service.gateway.domain.entity.routing_table import RoutingTable
from src.service.gateway.domain.value_object.client_identity import ClientIdentity


@attrs.frozen
class Admission:
    identity: ClientIdentity
    route_prefix: str
    upstream: str
    breaker: CircuitBreaker


class AdmissionController:
    def __init__(
        self,
        *,
        credential_verifier: ICredentialVerifier,
        rate_limiter: TokenBucketRateLimiter,
        routing_table: RoutingTable,
        breaker_registry: CircuitBreakerRegistry,
    ) -> None:
        self.credential_verifier = credential_verifier
        self.rate_limiter = rate_limiter
        self.routing_table = routing_table
        self.breaker_registry = breaker_registry

    def admit(self, *, authorization: Optional[str], path: str) -> Admission:
        try:
            identity = self.credential_verifier.verify(authorization)
            self.rate_limiter.acquire(identity.subject)
            prefix, upstream = self.routing_table.resolve(path)
            breaker = self.breaker_registry.get(f'route:{prefix}')
            breaker.before_call()
        except CustomBaseError as e:
            metrics.record_admission(result=type(e).__name__)
            Logger.base.info(f'🚦 [ADMISSION] Rejected {path}: {e.status_code} {e.message}')
            raise

        metrics.record_admission(result='admitted')
        return Admission(identity=identity, route_prefix=prefix, upstream=upstream, breaker=breaker)

    def record_outcome(self, admission: Admission, *, ok: Optional[bool]) -> None:
        if ok is None:
            admission.breaker.release()
        elif ok:
            admission.breaker.record_success()
        else:
            admission.breaker.record_failure()
