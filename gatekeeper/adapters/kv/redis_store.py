"""Redis-backed key-value store (redis-py asyncio client).

The connection is lazy: the first command (or ``connect()``) opens it. After
a connection failure the store reports not-ready for a back-off period, so a
dead Redis costs one timeout per back-off window instead of one per request.
"""

from __future__ import annotations

import logging
import time

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from gatekeeper.adapters.kv.base import AbstractKVStore, CounterState
from gatekeeper.core.clock import Clock

logger = logging.getLogger(__name__)

# INCR and first-hit PEXPIRE in one round-trip so concurrent requests on the
# same bucket observe distinct counts and the TTL is never refreshed.
_INCREMENT_COUNTER_LUA = """
local count = redis.call('INCR', KEYS[1])
local ttl = redis.call('PTTL', KEYS[1])
if count == 1 or ttl < 0 then
    redis.call('PEXPIRE', KEYS[1], ARGV[1])
    ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""

_GLOB_SPECIAL = str.maketrans({"*": r"\*", "?": r"\?", "[": r"\[", "]": r"\]"})


class RedisKVStore(AbstractKVStore):
    """Store talking to one logical Redis database."""

    def __init__(
        self,
        *,
        url: str,
        db: int,
        domain: str,
        clock: Clock,
        connect_timeout_seconds: float = 5.0,
        operation_timeout_seconds: float = 0.5,
        reconnect_backoff_seconds: float = 5.0,
        client: redis.Redis | None = None,
    ) -> None:
        super().__init__(
            domain=domain,
            clock=clock,
            operation_timeout_seconds=operation_timeout_seconds,
        )
        self._client = client or redis.Redis.from_url(
            url,
            db=db,
            socket_connect_timeout=connect_timeout_seconds,
            socket_timeout=operation_timeout_seconds,
            decode_responses=True,
        )
        self._backoff = reconnect_backoff_seconds
        self._counter_script = self._client.register_script(_INCREMENT_COUNTER_LUA)
        self._connected = False
        self._retry_at = 0.0

    def ready(self) -> bool:
        return self._connected or time.monotonic() >= self._retry_at

    async def connect(self) -> bool:
        try:
            await self._client.ping()
        except Exception as exc:
            self._mark_failure(exc)
            logger.warning(
                "kv.connect_failed",
                extra={"domain": self.domain, "error_type": type(exc).__name__, "error_msg": str(exc)},
            )
            return False
        self._mark_success()
        logger.info("kv.connected", extra={"domain": self.domain})
        return True

    async def close(self) -> None:
        await self._client.aclose()

    def _mark_success(self) -> None:
        self._connected = True

    def _mark_failure(self, exc: Exception) -> None:
        if isinstance(exc, (RedisConnectionError, RedisTimeoutError, TimeoutError, OSError)):
            self._connected = False
            self._retry_at = time.monotonic() + self._backoff

    async def _set_with_ttl(self, key: str, value: str, ttl_ms: int) -> None:
        await self._client.set(key, value, px=ttl_ms)

    async def _get(self, key: str) -> str | None:
        return await self._client.get(key)

    async def _increment_counter(self, key: str, window_ms: int) -> CounterState:
        count, ttl = await self._counter_script(keys=[key], args=[window_ms])
        return CounterState(count=int(count), reset_at_ms=self._clock.now_ms() + int(ttl))

    async def _increment_float(self, key: str, amount: float, ttl_ms: int) -> None:
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.incrbyfloat(key, amount)
            pipe.pexpire(key, ttl_ms)
            await pipe.execute()

    async def _push_bounded_list(self, key: str, item: str, cap: int, ttl_ms: int) -> None:
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.lpush(key, item)
            pipe.ltrim(key, 0, cap - 1)
            pipe.pexpire(key, ttl_ms)
            await pipe.execute()

    async def _read_list(self, key: str) -> list[str]:
        return await self._client.lrange(key, 0, -1)

    async def _multi_get(self, keys: list[str]) -> list[str | None]:
        return await self._client.mget(keys)

    async def _scan_prefix(self, prefix: str) -> list[str]:
        pattern = prefix.translate(_GLOB_SPECIAL) + "*"
        return [key async for key in self._client.scan_iter(match=pattern, count=500)]

    async def _ttl_ms(self, key: str) -> int | None:
        ttl = await self._client.pttl(key)
        # -2: key does not exist, -1: no expiry
        if ttl == -2:
            return None
        return int(ttl)
