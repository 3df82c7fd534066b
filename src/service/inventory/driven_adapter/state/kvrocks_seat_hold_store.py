"""
Kvrocks Seat Hold Store - multi-process ISeatHoldStore

Layout:
- {prefix}seat_hold:{seat_key}   HASH  reservation_id, expires_at_ms, version, confirmed
- {prefix}seat_hold_expiry       ZSET  seat_key scored by expires_at_ms (unconfirmed only)

Every operation is one Lua script, so check and write happen atomically on the
server. Expiry is passive (an expired hold never blocks an acquire) and the
sweeper cleans up through the expiry index.
"""

from datetime import datetime, timezone
from typing import List, Optional, Sequence
from uuid import UUID

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError, TimeoutError as RedisTimeoutError

from src.platform.exception.exceptions import ConflictError, TransientError
from src.platform.logging.loguru_io import Logger
from src.platform.state.kvrocks_client import KvrocksClient
from src.service.inventory.app.interface.i_seat_hold_store import ISeatHoldStore
from src.service.inventory.domain.entity.seat_hold_entity import SeatHold


# KEYS[1]=hold key, KEYS[2]=expiry index
# ARGV: seat_key, reservation_id, now_ms, expires_at_ms
ACQUIRE_SCRIPT = """
local current = redis.call('HMGET', KEYS[1], 'reservation_id', 'expires_at_ms', 'version', 'confirmed')
local version = tonumber(current[3]) or 0
if current[1] then
    local active = current[4] == '1' or tonumber(current[2]) > tonumber(ARGV[3])
    if active then
        if current[1] == ARGV[2] then
            return {current[1], current[2], current[3], current[4]}
        end
        return redis.error_reply('SEAT_CONFLICT')
    end
end
version = version + 1
redis.call('HSET', KEYS[1], 'reservation_id', ARGV[2], 'expires_at_ms', ARGV[4],
           'version', version, 'confirmed', '0')
redis.call('ZADD', KEYS[2], ARGV[4], ARGV[1])
return {ARGV[2], ARGV[4], tostring(version), '0'}
"""

# ARGV: seat_key, reservation_id
RELEASE_SCRIPT = """
if redis.call('HGET', KEYS[1], 'reservation_id') == ARGV[2] then
    redis.call('DEL', KEYS[1])
    redis.call('ZREM', KEYS[2], ARGV[1])
    return 1
end
return 0
"""

# ARGV: seat_key, reservation_id, now_ms
CONFIRM_SCRIPT = """
local current = redis.call('HMGET', KEYS[1], 'reservation_id', 'expires_at_ms', 'version', 'confirmed')
if not current[1] then
    return redis.error_reply('HOLD_NOT_FOUND')
end
if current[1] ~= ARGV[2] then
    return redis.error_reply('HOLD_OWNED_BY_OTHER')
end
if current[4] == '1' then
    return {current[1], current[2], current[3], current[4]}
end
if tonumber(current[2]) <= tonumber(ARGV[3]) then
    return redis.error_reply('HOLD_EXPIRED')
end
local version = tonumber(current[3]) + 1
redis.call('HSET', KEYS[1], 'confirmed', '1', 'version', version)
redis.call('ZREM', KEYS[2], ARGV[1])
return {current[1], current[2], tostring(version), '1'}
"""

# KEYS[1]=expiry index; ARGV: now_ms, limit, hold key prefix
SWEEP_SCRIPT = """
local seats = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, ARGV[2])
local expired = {}
for _, seat in ipairs(seats) do
    local key = ARGV[3] .. seat
    local current = redis.call('HMGET', key, 'reservation_id', 'expires_at_ms', 'version', 'confirmed')
    redis.call('ZREM', KEYS[1], seat)
    if current[1] and current[4] ~= '1' and tonumber(current[2]) <= tonumber(ARGV[1]) then
        redis.call('DEL', key)
        table.insert(expired, {seat, current[1], current[2], current[3]})
    end
end
return expired
"""

_CONFLICT_REPLIES = {
    'SEAT_CONFLICT': 'is held by another reservation',
    'HOLD_NOT_FOUND': 'has no hold',
    'HOLD_OWNED_BY_OTHER': 'is held by another reservation',
    'HOLD_EXPIRED': 'hold expired',
}


def _to_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def _from_ms(value: str) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


class KvrocksSeatHoldStore(ISeatHoldStore):
    def __init__(self, *, kvrocks_client: KvrocksClient, key_prefix: str = '') -> None:
        self.kvrocks_client = kvrocks_client
        self.hold_prefix = f'{key_prefix}seat_hold:'
        self.expiry_key = f'{key_prefix}seat_hold_expiry'

    def _hold_key(self, seat_key: str) -> str:
        return f'{self.hold_prefix}{seat_key}'

    async def _eval(self, script: str, keys: List[str], args: List[str | int], *, seat_key: str):
        client = self.kvrocks_client.get_client()
        try:
            return await client.eval(script, len(keys), *keys, *args)
        except ResponseError as e:
            reason = _CONFLICT_REPLIES.get(str(e).strip())
            if reason is None:
                raise
            raise ConflictError(f'Seat {seat_key} {reason}') from e
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise TransientError(f'Seat hold store unavailable: {e}') from e

    @staticmethod
    def _to_hold(seat_key: str, reply: Sequence[str]) -> SeatHold:
        reservation_id, expires_at_ms, version, confirmed = reply
        return SeatHold(
            seat_key=seat_key,
            reservation_id=UUID(reservation_id),
            expires_at=_from_ms(expires_at_ms),
            version=int(version),
            confirmed=confirmed == '1',
        )

    async def try_acquire(
        self, *, seat_key: str, reservation_id: UUID, expires_at: datetime, now: datetime
    ) -> SeatHold:
        reply = await self._eval(
            ACQUIRE_SCRIPT,
            [self._hold_key(seat_key), self.expiry_key],
            [seat_key, str(reservation_id), _to_ms(now), _to_ms(expires_at)],
            seat_key=seat_key,
        )
        return self._to_hold(seat_key, reply)

    async def release(self, *, seat_key: str, reservation_id: UUID) -> bool:
        released = await self._eval(
            RELEASE_SCRIPT,
            [self._hold_key(seat_key), self.expiry_key],
            [seat_key, str(reservation_id)],
            seat_key=seat_key,
        )
        return bool(released)

    async def confirm(self, *, seat_key: str, reservation_id: UUID, now: datetime) -> SeatHold:
        reply = await self._eval(
            CONFIRM_SCRIPT,
            [self._hold_key(seat_key), self.expiry_key],
            [seat_key, str(reservation_id), _to_ms(now)],
            seat_key=seat_key,
        )
        return self._to_hold(seat_key, reply)

    async def get(self, *, seat_key: str, now: datetime) -> Optional[SeatHold]:
        client = self.kvrocks_client.get_client()
        try:
            reply = await client.hmget(
                self._hold_key(seat_key), ['reservation_id', 'expires_at_ms', 'version', 'confirmed']
            )
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise TransientError(f'Seat hold store unavailable: {e}') from e
        if reply[0] is None:
            return None
        hold = self._to_hold(seat_key, reply)
        return hold if hold.is_active(now=now) else None

    async def pop_expired(self, *, now: datetime, limit: int) -> List[SeatHold]:
        rows = await self._eval(
            SWEEP_SCRIPT,
            [self.expiry_key],
            [_to_ms(now), limit, self.hold_prefix],
            seat_key='*',
        )
        expired = [
            self._to_hold(seat_key, (reservation_id, expires_at_ms, version, '0'))
            for seat_key, reservation_id, expires_at_ms, version in rows
        ]
        if expired:
            Logger.base.info(f'⌛ [KVROCKS] Swept {len(expired)} expired seat hold(s)')
        return expired
