"""
Shared Kvrocks connection for the seat hold store.

Opened once in the service lifespan when SEAT_HOLD_BACKEND=kvrocks and closed on
shutdown. Holds live in Kvrocks so that every reservation replica sees the same
seat ownership and TTLs.
"""

from typing import Optional

from redis.asyncio import ConnectionPool, Redis

from src.platform.config.core_setting import settings
from src.platform.logging.loguru_io import Logger


def _kvrocks_url() -> str:
    auth = f':{settings.KVROCKS_PASSWORD}@' if settings.KVROCKS_PASSWORD else ''
    return f'redis://{auth}{settings.KVROCKS_HOST}:{settings.KVROCKS_PORT}/{settings.KVROCKS_DB}'


class KvrocksClient:
    def __init__(self) -> None:
        self._redis: Optional[Redis] = None

    async def initialize(self) -> Redis:
        if self._redis is not None:
            return self._redis

        pool = ConnectionPool.from_url(
            _kvrocks_url(),
            decode_responses=True,
            max_connections=settings.KVROCKS_POOL_MAX_CONNECTIONS,
            socket_timeout=settings.KVROCKS_POOL_SOCKET_TIMEOUT,
            socket_connect_timeout=settings.KVROCKS_POOL_SOCKET_CONNECT_TIMEOUT,
        )
        redis = Redis.from_pool(pool)
        # An unreachable hold store must stop startup, not the first booking
        await redis.ping()
        Logger.base.info(
            f'✅ [KVROCKS] Seat hold store at {settings.KVROCKS_HOST}:{settings.KVROCKS_PORT}'
        )
        self._redis = redis
        return redis

    def get_client(self) -> Redis:
        if self._redis is None:
            raise RuntimeError('Kvrocks is not connected; SEAT_HOLD_BACKEND=kvrocks needs startup')
        return self._redis

    async def disconnect(self) -> None:
        if self._redis is None:
            return
        await self._redis.aclose()
        self._redis = None
        Logger.base.info('📡 [KVROCKS] Connection pool closed')


kvrocks_client = KvrocksClient()
