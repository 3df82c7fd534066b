"""
https://python-dependency-injector.ets-labs.org/index.html
https://python-dependency-injector.ets-labs.org/examples/fastapi-sqlalchemy.html
"""

from dependency_injector import containers, providers
import httpx

from src.platform.config.core_setting import settings
from src.platform.database.db_setting import Database
from src.platform.idempotency.idempotency_ledger import IdempotencyLedger
from src.platform.message_queue.in_memory_event_bus import InMemoryEventBus
from src.platform.message_queue.kafka_event_bus import KafkaEventBus
from src.platform.outbox.outbox_relay import OutboxRelay
from src.platform.resilience.circuit_breaker import (
    CircuitBreakerConfig,
    circuit_breaker_registry,
)
from src.platform.resilience.token_bucket_rate_limiter import TokenBucketRateLimiter
from src.platform.state.kvrocks_client import kvrocks_client
from src.service.gateway.app.command.admission_controller import AdmissionController
from src.service.gateway.app.command.routing_table_refresher import RoutingTableRefresher
from src.service.gateway.domain.entity.routing_table import RoutingTable
from src.service.gateway.driven_adapter.auth.jwt_credential_verifier import (
    JwtCredentialVerifier,
)
from src.service.gateway.driven_adapter.registry.static_service_registry import (
    StaticServiceRegistry,
)
from src.service.inventory.app.command.hold_expiry_sweeper import HoldExpirySweeper
from src.service.inventory.app.command.inventory_holder import InventoryHolder
from src.service.inventory.driven_adapter.state.in_memory_seat_hold_store import (
    InMemorySeatHoldStore,
)
from src.service.inventory.driven_adapter.state.kvrocks_seat_hold_store import (
    KvrocksSeatHoldStore,
)
from src.service.notification.app.command.notification_dispatcher import NotificationDispatcher
from src.service.notification.driven_adapter.sender.mock_notification_sender import (
    MockNotificationSender,
)
from src.service.notification.driving_adapter.mq_consumer.notification_mq_consumer import (
    NotificationMqConsumer,
)
from src.service.payment.app.command.charge_reservation_use_case import (
    ChargeReservationUseCase,
)
from src.service.payment.app.command.refund_payment_use_case import RefundPaymentUseCase
from src.service.payment.driven_adapter.fare.static_fare_provider import StaticFareProvider
from src.service.payment.driven_adapter.gateway.http_payment_gateway import HttpPaymentGateway
from src.service.payment.driven_adapter.gateway.mock_payment_gateway import MockPaymentGateway
from src.service.payment.driven_adapter.gateway.payment_gateway_adapter import (
    PaymentGatewayAdapter,
)
from src.service.payment.driving_adapter.mq_consumer.payment_mq_consumer import (
    PaymentMqConsumer,
)
from src.service.reservation.app.command.deadline_scheduler import DeadlineScheduler
from src.service.reservation.app.command.saga_coordinator import SagaCoordinator
from src.service.reservation.app.command.saga_maintenance import SagaMaintenance
from src.service.reservation.driven_adapter.validator.static_reference_validator import (
    StaticReferenceValidator,
)
from src.service.reservation.driving_adapter.mq_consumer.saga_mq_consumer import SagaMqConsumer


PAYMENT_CIRCUIT = 'payment-gateway'


def _event_bus_backend() -> str:
    return settings.EVENT_BUS_BACKEND


def _seat_hold_backend() -> str:
    return settings.SEAT_HOLD_BACKEND


def _payment_gateway_backend() -> str:
    return 'http' if settings.PAYMENT_GATEWAY_URL else 'mock'


class Container(containers.DeclarativeContainer):
    # Database
    database = providers.Singleton(Database)

    # Event bus (memory for single-process runs and tests, kafka otherwise)
    event_bus = providers.Selector(
        providers.Callable(_event_bus_backend),
        memory=providers.Singleton(
            InMemoryEventBus,
            max_delivery_attempts=settings.BUS_MAX_DELIVERY_ATTEMPTS,
            redelivery_backoff_seconds=settings.BUS_REDELIVERY_BACKOFF_SECONDS,
            redelivery_backoff_max_seconds=settings.BUS_REDELIVERY_BACKOFF_MAX_SECONDS,
        ),
        kafka=providers.Singleton(
            KafkaEventBus,
            bootstrap_servers=settings.KAFKA_BOOTSTRAP_SERVERS,
            topic=settings.KAFKA_SAGA_TOPIC,
            dlq_topic=settings.KAFKA_DLQ_TOPIC,
            instance_id=settings.KAFKA_CONSUMER_INSTANCE_ID,
            auto_offset_reset=settings.KAFKA_CONSUMER_AUTO_OFFSET_RESET,
            max_buffered_per_partition=settings.KAFKA_MAX_BUFFERED_PER_PARTITION,
            max_delivery_attempts=settings.BUS_MAX_DELIVERY_ATTEMPTS,
            redelivery_backoff_seconds=settings.BUS_REDELIVERY_BACKOFF_SECONDS,
            redelivery_backoff_max_seconds=settings.BUS_REDELIVERY_BACKOFF_MAX_SECONDS,
        ),
    )

    # Idempotency ledger + outbox relay
    idempotency_ledger = providers.Singleton(
        IdempotencyLedger,
        database=database,
        ttl_seconds=settings.IDEMPOTENCY_TTL_SECONDS,
        lease_seconds=settings.IDEMPOTENCY_LEASE_SECONDS,
    )
    outbox_relay = providers.Singleton(
        OutboxRelay,
        database=database,
        event_bus=event_bus,
        batch_size=settings.OUTBOX_RELAY_BATCH_SIZE,
        poll_interval_seconds=settings.OUTBOX_RELAY_POLL_INTERVAL_SECONDS,
        backoff_max_seconds=settings.OUTBOX_RELAY_BACKOFF_MAX_SECONDS,
        published_retention_seconds=settings.OUTBOX_PUBLISHED_RETENTION_SECONDS,
    )

    # Inventory
    seat_hold_store = providers.Selector(
        providers.Callable(_seat_hold_backend),
        memory=providers.Singleton(InMemorySeatHoldStore),
        kvrocks=providers.Singleton(
            KvrocksSeatHoldStore,
            kvrocks_client=providers.Object(kvrocks_client),
            key_prefix=settings.KVROCKS_KEY_PREFIX,
        ),
    )
    inventory_holder = providers.Singleton(
        InventoryHolder,
        store=seat_hold_store,
        hold_ttl_seconds=settings.SEAT_HOLD_TTL_SECONDS,
    )
    hold_expiry_sweeper = providers.Singleton(
        HoldExpirySweeper,
        inventory_holder=inventory_holder,
        event_bus=event_bus,
        interval_seconds=settings.HOLD_SWEEP_INTERVAL_SECONDS,
    )

    # Reservation saga
    reference_validator = providers.Singleton(
        StaticReferenceValidator, known_flights=settings.KNOWN_FLIGHTS
    )
    deadline_scheduler = providers.Singleton(
        DeadlineScheduler,
        event_bus=event_bus,
        tick_seconds=settings.DEADLINE_TICK_SECONDS,
    )
    saga_coordinator = providers.Singleton(
        SagaCoordinator,
        database=database,
        ledger=idempotency_ledger,
        inventory_holder=inventory_holder,
        reference_validator=reference_validator,
        deadline_scheduler=deadline_scheduler,
        payment_deadline_seconds=settings.AWAITING_PAYMENT_DEADLINE_SECONDS,
        stale_pending_grace_seconds=settings.STALE_PENDING_GRACE_SECONDS,
    )
    saga_mq_consumer = providers.Singleton(SagaMqConsumer, saga_coordinator=saga_coordinator)
    saga_maintenance = providers.Singleton(
        SagaMaintenance,
        saga_coordinator=saga_coordinator,
        ledger=idempotency_ledger,
        outbox_relay=outbox_relay,
        interval_seconds=settings.MAINTENANCE_INTERVAL_SECONDS,
    )

    # Payment (breaker comes from the process-wide registry, see setup())
    payment_gateway = providers.Selector(
        providers.Callable(_payment_gateway_backend),
        mock=providers.Singleton(MockPaymentGateway),
        http=providers.Singleton(HttpPaymentGateway, base_url=settings.PAYMENT_GATEWAY_URL),
    )
    payment_circuit_breaker = providers.Callable(circuit_breaker_registry.get, PAYMENT_CIRCUIT)
    payment_gateway_adapter = providers.Singleton(
        PaymentGatewayAdapter,
        gateway=payment_gateway,
        circuit_breaker=payment_circuit_breaker,
        timeout_seconds=settings.PAYMENT_TIMEOUT_SECONDS,
        max_concurrency=settings.PAYMENT_MAX_CONCURRENCY,
    )
    fare_provider = providers.Singleton(
        StaticFareProvider, amount=settings.FARE_AMOUNT, currency=settings.FARE_CURRENCY
    )
    charge_reservation_use_case = providers.Singleton(
        ChargeReservationUseCase,
        database=database,
        ledger=idempotency_ledger,
        gateway_adapter=payment_gateway_adapter,
        fare_provider=fare_provider,
        max_retries=settings.PAYMENT_MAX_RETRIES,
        backoff_base_seconds=settings.PAYMENT_BACKOFF_BASE_SECONDS,
        backoff_max_seconds=settings.PAYMENT_BACKOFF_MAX_SECONDS,
    )
    refund_payment_use_case = providers.Singleton(
        RefundPaymentUseCase,
        database=database,
        ledger=idempotency_ledger,
        gateway_adapter=payment_gateway_adapter,
    )
    payment_mq_consumer = providers.Singleton(
        PaymentMqConsumer,
        charge_reservation_use_case=charge_reservation_use_case,
        refund_payment_use_case=refund_payment_use_case,
    )

    # Notification
    notification_sender = providers.Singleton(
        MockNotificationSender, debug=settings.NOTIFICATION_DEBUG_PRINT
    )
    notification_dispatcher = providers.Singleton(
        NotificationDispatcher,
        database=database,
        ledger=idempotency_ledger,
        sender=notification_sender,
    )
    notification_mq_consumer = providers.Singleton(
        NotificationMqConsumer, notification_dispatcher=notification_dispatcher
    )

    # Gateway admission
    credential_verifier = providers.Singleton(
        JwtCredentialVerifier,
        secret=settings.SECRET_KEY.get_secret_value(),
        algorithm=settings.ALGORITHM,
    )
    rate_limiter = providers.Singleton(
        TokenBucketRateLimiter,
        capacity=settings.RATE_LIMIT_BUCKET_SIZE,
        refill_per_second=settings.RATE_LIMIT_REFILL_PER_SECOND,
    )
    service_registry = providers.Singleton(StaticServiceRegistry, routes=settings.GATEWAY_ROUTES)
    routing_table = providers.Singleton(
        RoutingTable, max_missed_renewals=settings.REGISTRY_MAX_MISSED_RENEWALS
    )
    routing_table_refresher = providers.Singleton(
        RoutingTableRefresher,
        registry=service_registry,
        routing_table=routing_table,
        interval_seconds=settings.REGISTRY_LEASE_INTERVAL_SECONDS,
    )
    admission_controller = providers.Singleton(
        AdmissionController,
        credential_verifier=credential_verifier,
        rate_limiter=rate_limiter,
        routing_table=routing_table,
        breaker_registry=providers.Object(circuit_breaker_registry),
    )
    gateway_http_client = providers.Singleton(
        httpx.AsyncClient, timeout=settings.GATEWAY_FORWARD_TIMEOUT_SECONDS
    )


container = Container()


def setup() -> None:
    circuit_breaker_registry.initialize(
        config=CircuitBreakerConfig(
            failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
            error_rate_threshold=settings.CIRCUIT_ERROR_RATE_THRESHOLD,
            window_size=settings.CIRCUIT_WINDOW_SIZE,
            min_calls=settings.CIRCUIT_MIN_CALLS,
            cooldown_seconds=settings.CIRCUIT_COOLDOWN_SECONDS,
            half_open_max_calls=settings.CIRCUIT_HALF_OPEN_MAX_CALLS,
        )
    )


def cleanup() -> None:
    container.reset_singletons()
    circuit_breaker_registry.teardown()
