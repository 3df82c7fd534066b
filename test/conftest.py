"""
Test Configuration and Fixtures

This module provides:
- Environment setup (in-memory bus and hold store, SQLite database) before any
  application module reads settings at import time
- A fresh SQLite database per test on tmp_path
- Fake clocks (wall clock for the saga, monotonic for breakers and limiters)
- SagaHarness: the real saga components wired around the in-memory bus

Architecture:
- Unit tests (`*_unit_test.py`, marked `unit`): mocks and fakes, no database
- Integration tests (`*_integration_test.py`): real SQLAlchemy stack on SQLite
"""

# =============================================================================
# CRITICAL: Environment setup MUST happen before any other imports
# Settings are read once at import time (src.platform.config.core_setting)
# =============================================================================
import os
from pathlib import Path


def _early_setup_test_environment() -> None:
    """Set test environment variables before any module imports."""
    test_log_dir = Path(__file__).parent / 'test_log'
    test_log_dir.mkdir(exist_ok=True)
    os.environ['TEST_LOG_DIR'] = str(test_log_dir)

    os.environ['EVENT_BUS_BACKEND'] = 'memory'
    os.environ['SEAT_HOLD_BACKEND'] = 'memory'
    os.environ['PAYMENT_GATEWAY_URL'] = ''
    os.environ.setdefault('DATABASE_URL', f'sqlite+aiosqlite:///{test_log_dir / "default.db"}')
    os.environ.setdefault('DEBUG', 'false')
    os.environ.setdefault('OTEL_SDK_DISABLED', 'true')


# Call immediately to set env vars before any imports
_early_setup_test_environment()

from collections.abc import AsyncGenerator, AsyncIterator  # noqa: E402
from contextlib import asynccontextmanager  # noqa: E402
from datetime import datetime, timedelta, timezone  # noqa: E402
from typing import Optional  # noqa: E402

import anyio  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from src.platform.database.db_setting import Database  # noqa: E402
from src.platform.database.unit_of_work import SqlAlchemyUnitOfWork  # noqa: E402
from src.platform.idempotency.idempotency_ledger import IdempotencyLedger  # noqa: E402
from src.platform.message_queue.in_memory_event_bus import InMemoryEventBus  # noqa: E402
from src.platform.outbox.outbox_relay import OutboxRelay  # noqa: E402
from src.platform.resilience.circuit_breaker import (  # noqa: E402
    CircuitBreaker,
    CircuitBreakerConfig,
)
from src.service.inventory.app.command.hold_expiry_sweeper import HoldExpirySweeper  # noqa: E402
from src.service.inventory.app.command.inventory_holder import InventoryHolder  # noqa: E402
from src.service.inventory.driven_adapter.state.in_memory_seat_hold_store import (  # noqa: E402
    InMemorySeatHoldStore,
)
from src.service.notification.app.command.notification_dispatcher import (  # noqa: E402
    NotificationDispatcher,
)
from src.service.notification.driven_adapter.sender.mock_notification_sender import (  # noqa: E402
    MockNotificationSender,
)
from src.service.notification.driving_adapter.mq_consumer.notification_mq_consumer import (  # noqa: E402
    NotificationMqConsumer,
)
from src.service.payment.app.command.charge_reservation_use_case import (  # noqa: E402
    ChargeReservationUseCase,
)
from src.service.payment.app.command.refund_payment_use_case import (  # noqa: E402
    RefundPaymentUseCase,
)
from src.service.payment.domain.entity.payment_entity import Payment  # noqa: E402
from src.service.payment.driven_adapter.fare.static_fare_provider import (  # noqa: E402
    StaticFareProvider,
)
from src.service.payment.driven_adapter.gateway.mock_payment_gateway import (  # noqa: E402
    MockPaymentGateway,
)
from src.service.payment.driven_adapter.gateway.payment_gateway_adapter import (  # noqa: E402
    PaymentGatewayAdapter,
)
from src.service.payment.driving_adapter.mq_consumer.payment_mq_consumer import (  # noqa: E402
    PaymentMqConsumer,
)
from src.service.reservation.app.command.deadline_scheduler import DeadlineScheduler  # noqa: E402
from src.service.reservation.app.command.saga_coordinator import SagaCoordinator  # noqa: E402
from src.service.reservation.domain.entity.reservation_entity import Reservation  # noqa: E402
from src.service.reservation.driven_adapter.validator.static_reference_validator import (  # noqa: E402
    StaticReferenceValidator,
)
from src.service.reservation.driving_adapter.mq_consumer.saga_mq_consumer import (  # noqa: E402
    SagaMqConsumer,
)
from src.service.shared_kernel.domain.enum.event_type import EventType  # noqa: E402
from src.service.shared_kernel.domain.event_envelope import EventEnvelope  # noqa: E402


# =============================================================================
# Clocks
# =============================================================================
class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeMonotonic:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_monotonic() -> FakeMonotonic:
    return FakeMonotonic()


# =============================================================================
# Database
# =============================================================================
@pytest_asyncio.fixture
async def database(tmp_path: Path) -> AsyncGenerator[Database, None]:
    db = Database(db_url=f'sqlite+aiosqlite:///{tmp_path / "test.db"}')
    await db.create_tables()
    yield db
    await db.dispose()


@pytest.fixture
def ledger(database: Database, fake_clock: FakeClock) -> IdempotencyLedger:
    return IdempotencyLedger(
        database=database, ttl_seconds=3600, lease_seconds=30, clock=fake_clock
    )


# =============================================================================
# Saga harness
# =============================================================================
async def _no_sleep(seconds: float) -> None:
    await anyio.sleep(0)


class SagaHarness:
    """
    The saga's real components around the in-memory bus and hold store.

    Usage:
        async with saga.running():
            reservation = await saga.coordinator.create(...)
            await saga.settle()
    """

    def __init__(
        self,
        *,
        database: Database,
        clock: FakeClock,
        monotonic: FakeMonotonic,
        with_payment: bool = True,
        with_notification: bool = True,
    ) -> None:
        self.database = database
        self.clock = clock
        self.monotonic = monotonic

        self.event_bus = InMemoryEventBus(
            max_delivery_attempts=3,
            redelivery_backoff_seconds=0.01,
            redelivery_backoff_max_seconds=0.05,
        )
        self.ledger = IdempotencyLedger(
            database=database, ttl_seconds=3600, lease_seconds=30, clock=clock
        )
        self.outbox_relay = OutboxRelay(database=database, event_bus=self.event_bus)

        self.seat_hold_store = InMemorySeatHoldStore()
        self.inventory_holder = InventoryHolder(
            store=self.seat_hold_store, hold_ttl_seconds=60, clock=clock
        )
        self.sweeper = HoldExpirySweeper(
            inventory_holder=self.inventory_holder, event_bus=self.event_bus, interval_seconds=1
        )

        self.deadline_scheduler = DeadlineScheduler(event_bus=self.event_bus, clock=clock)
        self.coordinator = SagaCoordinator(
            database=database,
            ledger=self.ledger,
            inventory_holder=self.inventory_holder,
            reference_validator=StaticReferenceValidator(),
            deadline_scheduler=self.deadline_scheduler,
            payment_deadline_seconds=30,
            stale_pending_grace_seconds=60,
            clock=clock,
        )
        SagaMqConsumer(saga_coordinator=self.coordinator).register(
            event_bus=self.event_bus, partitions=4
        )

        self.gateway = MockPaymentGateway()
        self.circuit_breaker = CircuitBreaker(
            name='payment-gateway',
            config=CircuitBreakerConfig(failure_threshold=5, cooldown_seconds=30),
            clock=monotonic,
        )
        self.gateway_adapter = PaymentGatewayAdapter(
            gateway=self.gateway,
            circuit_breaker=self.circuit_breaker,
            timeout_seconds=0.2,
            max_concurrency=4,
        )
        self.charge_use_case = ChargeReservationUseCase(
            database=database,
            ledger=self.ledger,
            gateway_adapter=self.gateway_adapter,
            fare_provider=StaticFareProvider(amount=15000, currency='EUR'),
            max_retries=3,
            backoff_base_seconds=0.5,
            backoff_max_seconds=8.0,
            sleep=_no_sleep,
        )
        self.refund_use_case = RefundPaymentUseCase(
            database=database, ledger=self.ledger, gateway_adapter=self.gateway_adapter
        )
        if with_payment:
            PaymentMqConsumer(
                charge_reservation_use_case=self.charge_use_case,
                refund_payment_use_case=self.refund_use_case,
            ).register(event_bus=self.event_bus, partitions=2)

        self.sender = MockNotificationSender()
        self.dispatcher = NotificationDispatcher(
            database=database, ledger=self.ledger, sender=self.sender
        )
        if with_notification:
            NotificationMqConsumer(notification_dispatcher=self.dispatcher).register(
                event_bus=self.event_bus, partitions=2
            )

    @asynccontextmanager
    async def running(self) -> AsyncIterator['SagaHarness']:
        async with anyio.create_task_group() as tg:
            tg.start_soon(self.event_bus.run)
            await anyio.sleep(0)
            yield self
            tg.cancel_scope.cancel()

    async def settle(self, *, max_rounds: int = 50) -> None:
        """Relay the outbox and drain the bus until nothing moves any more."""
        for _ in range(max_rounds):
            await self.event_bus.wait_until_idle()
            published = await self.outbox_relay.relay_once()
            if published == 0 and self.event_bus.in_flight == 0:
                return
        raise AssertionError('saga did not settle')

    async def reservation(self, reservation_id) -> Reservation:
        return await self.coordinator.get(reservation_id=reservation_id)

    async def payment_for(self, reservation_id) -> Optional[Payment]:
        async with SqlAlchemyUnitOfWork(self.database) as uow:
            return await uow.payment_repo.get_by_reservation(reservation_id=reservation_id)

    def published(self, event_type: EventType, reservation_id=None) -> list[EventEnvelope]:
        return [
            envelope
            for envelope in self.event_bus.published
            if envelope.event_type is event_type
            and (reservation_id is None or envelope.reservation_id == reservation_id)
        ]


@pytest.fixture
def saga(database: Database, fake_clock: FakeClock, fake_monotonic: FakeMonotonic) -> SagaHarness:
    return SagaHarness(database=database, clock=fake_clock, monotonic=fake_monotonic)


@pytest.fixture
def saga_without_payment(
    database: Database, fake_clock: FakeClock, fake_monotonic: FakeMonotonic
) -> SagaHarness:
    """No payment consumer: reservations stay AWAITING_PAYMENT until the test acts."""
    return SagaHarness(
        database=database, clock=fake_clock, monotonic=fake_monotonic, with_payment=False
    )
