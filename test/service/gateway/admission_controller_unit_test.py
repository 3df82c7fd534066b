"""
Unit tests for AdmissionController

Test Coverage:
1. Checks run in order: credentials, rate limit, route, breaker
2. A rejected credential never consumes a rate-limit token
3. Upstream failures reported through record_outcome open the route's breaker
"""

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from src.platform.exception.exceptions import (
    AuthenticationError,
    CircuitOpenError,
    NotFoundError,
    RateLimitedError,
    ServiceUnavailableError,
)
from src.platform.resilience.circuit_breaker import (
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from src.platform.resilience.token_bucket_rate_limiter import TokenBucketRateLimiter
from src.service.gateway.app.command.admission_controller import AdmissionController
from src.service.gateway.domain.entity.routing_table import RoutingTable
from src.service.gateway.driven_adapter.auth.jwt_credential_verifier import (
    JwtCredentialVerifier,
)


pytestmark = pytest.mark.unit

SECRET = 'test-secret-key-with-enough-length-for-hs256'
UPSTREAM = 'http://reservation-1:8100'


def _bearer(subject: str = 'client-42') -> str:
    token = jwt.encode(
        {'sub': subject, 'exp': datetime.now(timezone.utc) + timedelta(minutes=5)},
        SECRET,
        algorithm='HS256',
    )
    return f'Bearer {token}'


@pytest.fixture
def breaker_registry(fake_monotonic) -> CircuitBreakerRegistry:
    registry = CircuitBreakerRegistry()
    registry.initialize(
        config=CircuitBreakerConfig(failure_threshold=2, cooldown_seconds=30),
        clock=fake_monotonic,
    )
    return registry


@pytest.fixture
def controller(breaker_registry, fake_monotonic) -> AdmissionController:
    routing_table = RoutingTable(max_missed_renewals=3)
    routing_table.apply_renewal({'/api/reservation': [UPSTREAM], '/api/payment': []})
    return AdmissionController(
        credential_verifier=JwtCredentialVerifier(secret=SECRET, algorithm='HS256'),
        rate_limiter=TokenBucketRateLimiter(
            capacity=2, refill_per_second=1.0, clock=fake_monotonic
        ),
        routing_table=routing_table,
        breaker_registry=breaker_registry,
    )


class TestAdmit:
    def test_admits_a_valid_request(self, controller):
        admission = controller.admit(authorization=_bearer(), path='/api/reservation/123')

        assert admission.identity.subject == 'client-42'
        assert admission.route_prefix == '/api/reservation'
        assert admission.upstream == UPSTREAM
        assert admission.breaker.name == 'route:/api/reservation'

    def test_authentication_comes_before_rate_limiting(self, controller):
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                controller.admit(authorization=None, path='/api/reservation')

        # Rejected requests have no identity, so no bucket was charged
        controller.admit(authorization=_bearer(), path='/api/reservation')

    def test_rate_limit_per_client(self, controller):
        for _ in range(2):
            controller.admit(authorization=_bearer(), path='/api/reservation')

        with pytest.raises(RateLimitedError) as exc_info:
            controller.admit(authorization=_bearer(), path='/api/reservation')

        assert exc_info.value.headers == {'Retry-After': '1'}
        controller.admit(authorization=_bearer('client-7'), path='/api/reservation')

    def test_rate_limit_comes_before_routing(self, controller):
        for _ in range(2):
            with pytest.raises(NotFoundError):
                controller.admit(authorization=_bearer(), path='/nowhere')

        with pytest.raises(RateLimitedError):
            controller.admit(authorization=_bearer(), path='/nowhere')

    def test_route_without_instances_is_unavailable(self, controller):
        with pytest.raises(ServiceUnavailableError):
            controller.admit(authorization=_bearer(), path='/api/payment')


class TestRouteBreaker:
    def test_upstream_failures_open_the_breaker(self, controller, fake_monotonic):
        for _ in range(2):
            admission = controller.admit(authorization=_bearer(), path='/api/reservation')
            controller.record_outcome(admission, ok=False)
            fake_monotonic.advance(1)  # refill one token

        assert admission.breaker.state is CircuitState.OPEN
        with pytest.raises(CircuitOpenError) as exc_info:
            controller.admit(authorization=_bearer(), path='/api/reservation')
        assert exc_info.value.status_code == 503
        assert int(exc_info.value.headers['Retry-After']) > 0

    def test_successful_trial_closes_the_breaker(self, controller, fake_monotonic):
        for _ in range(2):
            admission = controller.admit(authorization=_bearer(), path='/api/reservation')
            controller.record_outcome(admission, ok=False)
        fake_monotonic.advance(30)

        trial = controller.admit(authorization=_bearer(), path='/api/reservation')
        assert trial.breaker.state is CircuitState.HALF_OPEN
        controller.record_outcome(trial, ok=True)

        assert trial.breaker.state is CircuitState.CLOSED

    def test_breakers_are_per_route(self, controller, breaker_registry):
        admission = controller.admit(authorization=_bearer(), path='/api/reservation')

        assert breaker_registry.get('route:/api/payment') is not admission.breaker
