import os
from pathlib import Path
from typing import Dict, List

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


_PROJECT_ROOT = Path(__file__).resolve().parents[3]
_ENV_PATH = _PROJECT_ROOT / '.env'
_ENV_FILE = _ENV_PATH if _ENV_PATH.exists() else (_PROJECT_ROOT / '.env.example')


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(_ENV_FILE),
        env_ignore_empty=True,
        extra='ignore',
    )

    PROJECT_NAME: str = 'Booking Saga Platform'
    VERSION: str = '0.1.0'
    DEBUG: bool = True  # Set to False in production

    # Security (token validation only, issuance is external)
    SECRET_KEY: SecretStr = SecretStr('test_secret_key_change_in_production')
    ALGORITHM: str = 'HS256'

    # CORS
    BACKEND_CORS_ORIGINS: List[str] = []

    @field_validator('BACKEND_CORS_ORIGINS', mode='before')
    @classmethod
    def assemble_cors_origins(cls, v: str | List[str]) -> List[str]:
        if isinstance(v, str) and not v.startswith('['):
            return [i.strip() for i in v.split(',')]
        elif isinstance(v, list):
            return v
        return []

    # Database
    POSTGRES_SERVER: str = 'localhost'
    POSTGRES_USER: str = 'postgres'
    POSTGRES_PASSWORD: SecretStr = SecretStr('postgres')
    POSTGRES_DB: str = 'booking_saga'
    POSTGRES_PORT: int = 5432
    DATABASE_URL: str = ''  # Overrides POSTGRES_* when set (e.g. sqlite+aiosqlite:///...)
    DB_POOL_SIZE: int = 10
    DB_POOL_MAX_OVERFLOW: int = 5
    DB_ECHO: bool = False

    @property
    def DATABASE_URL_ASYNC(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        password = self.POSTGRES_PASSWORD.get_secret_value()
        return f'postgresql+asyncpg://{self.POSTGRES_USER}:{password}@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}'

    # Kvrocks Configuration (Redis protocol + Kvrocks storage)
    KVROCKS_HOST: str = 'localhost'
    KVROCKS_PORT: int = 6666
    KVROCKS_DB: int = 0
    KVROCKS_PASSWORD: str = ''
    KVROCKS_KEY_PREFIX: str = ''
    KVROCKS_POOL_MAX_CONNECTIONS: int = 100
    KVROCKS_POOL_SOCKET_TIMEOUT: int = 10
    KVROCKS_POOL_SOCKET_CONNECT_TIMEOUT: int = 10
    SEAT_HOLD_BACKEND: str = 'memory'  # memory | kvrocks

    # Kafka Configuration
    EVENT_BUS_BACKEND: str = 'memory'  # memory | kafka
    KAFKA_BOOTSTRAP_SERVERS: str = 'localhost:9092'
    KAFKA_SAGA_TOPIC: str = 'booking-saga-events'
    KAFKA_DLQ_TOPIC: str = 'booking-saga-events-dlq'
    KAFKA_CONSUMER_AUTO_OFFSET_RESET: str = 'earliest'
    KAFKA_CONSUMER_INSTANCE_ID: str = os.getenv(
        'KAFKA_CONSUMER_INSTANCE_ID', f'consumer-{os.getpid()}'
    )
    KAFKA_TOPIC_PARTITIONS: int = 8
    KAFKA_REPLICATION_FACTOR: int = 1
    KAFKA_MAX_BUFFERED_PER_PARTITION: int = 100  # pause a partition at this many unhandled

    # Event bus / consumer groups
    SAGA_CONSUMER_PARTITIONS: int = 8
    PAYMENT_CONSUMER_PARTITIONS: int = 4
    NOTIFICATION_CONSUMER_PARTITIONS: int = 2
    BUS_MAX_DELIVERY_ATTEMPTS: int = 5
    BUS_REDELIVERY_BACKOFF_SECONDS: float = 0.2
    BUS_REDELIVERY_BACKOFF_MAX_SECONDS: float = 5.0

    # Outbox relay
    OUTBOX_RELAY_BATCH_SIZE: int = 100
    OUTBOX_RELAY_POLL_INTERVAL_SECONDS: float = 0.2
    OUTBOX_RELAY_BACKOFF_MAX_SECONDS: float = 10.0
    OUTBOX_PUBLISHED_RETENTION_SECONDS: int = 24 * 3600

    # Saga
    AWAITING_PAYMENT_DEADLINE_SECONDS: float = 30.0
    STALE_PENDING_GRACE_SECONDS: float = 60.0
    DEADLINE_TICK_SECONDS: float = 0.5
    MAINTENANCE_INTERVAL_SECONDS: float = 30.0
    # Run the payment and notification consumer groups inside the reservation service
    EMBEDDED_WORKERS: bool = True
    KNOWN_FLIGHTS: List[str] = []  # Empty accepts any well-formed flight reference

    # Inventory
    SEAT_HOLD_TTL_SECONDS: float = 60.0
    HOLD_SWEEP_INTERVAL_SECONDS: float = 5.0

    # Idempotency ledger
    IDEMPOTENCY_TTL_SECONDS: int = 7 * 24 * 3600  # Must exceed the bus redelivery window
    IDEMPOTENCY_LEASE_SECONDS: float = 30.0

    # Payment
    PAYMENT_TIMEOUT_SECONDS: float = 5.0
    PAYMENT_MAX_RETRIES: int = 3
    PAYMENT_BACKOFF_BASE_SECONDS: float = 0.5
    PAYMENT_BACKOFF_MAX_SECONDS: float = 8.0
    PAYMENT_MAX_CONCURRENCY: int = 16
    PAYMENT_GATEWAY_URL: str = ''  # Empty -> mock gateway
    FARE_AMOUNT: int = 15000  # Minor units
    FARE_CURRENCY: str = 'EUR'

    # Circuit breaker
    CIRCUIT_FAILURE_THRESHOLD: int = 5
    CIRCUIT_ERROR_RATE_THRESHOLD: float = 0.5
    CIRCUIT_WINDOW_SIZE: int = 20
    CIRCUIT_MIN_CALLS: int = 10
    CIRCUIT_COOLDOWN_SECONDS: float = 30.0
    CIRCUIT_HALF_OPEN_MAX_CALLS: int = 1

    # Admission control
    RATE_LIMIT_BUCKET_SIZE: int = 20
    RATE_LIMIT_REFILL_PER_SECOND: float = 10.0
    REGISTRY_LEASE_INTERVAL_SECONDS: float = 10.0
    REGISTRY_MAX_MISSED_RENEWALS: int = 3
    GATEWAY_FORWARD_TIMEOUT_SECONDS: float = 10.0
    GATEWAY_ROUTES: Dict[str, List[str]] = {
        '/api/reservation': ['http://localhost:8100'],
    }

    # Notification
    NOTIFICATION_DEBUG_PRINT: bool = False


settings = Settings()  # type: ignore
