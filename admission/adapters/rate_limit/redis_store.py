"""Redis-backed counter store.

Shares counters between workers/hosts. Each key is a hash holding
``count`` and ``reset_time`` (epoch milliseconds) with ``PEXPIREAT`` set to
the window end, so Redis evicts dead windows itself.

The fixed-window increment runs as a Lua script, which executes atomically
on the server and removes the get-then-set race of the generic store.
"""

from __future__ import annotations

import logging
from typing import Any

import redis.asyncio as redis
from redis.exceptions import RedisError

from admission.adapters.rate_limit.base import CounterEntry, CounterStore
from admission.core.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

# KEYS[1] = counter key; ARGV[1] = now (ms); ARGV[2] = window (ms)
# Returns {count, reset_time_ms}
INCREMENT_SCRIPT = """
local now = tonumber(ARGV[1])
local reset = tonumber(redis.call('HGET', KEYS[1], 'reset_time'))
if (not reset) or now > reset then
    reset = now + tonumber(ARGV[2])
    redis.call('HSET', KEYS[1], 'count', 1, 'reset_time', reset)
    redis.call('PEXPIREAT', KEYS[1], reset)
    return {1, reset}
end
local count = redis.call('HINCRBY', KEYS[1], 'count', 1)
return {count, reset}
"""


def _to_ms(seconds: float) -> int:
    return int(round(seconds * 1000))


class RedisCounterStore(CounterStore):
    """Counter store on a shared Redis instance."""

    def __init__(
        self,
        *,
        url: str = "redis://localhost:6379/0",
        key_prefix: str = "rate_limit",
        client: Any | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            url: Redis connection URL, used when no client is given.
            key_prefix: Namespace prepended to every counter key.
            client: Pre-built ``redis.asyncio.Redis`` (mainly for tests).
        """
        self._url = url
        self._prefix = key_prefix
        self._client = client
        self._owns_client = client is None
        self._increment_script = None

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}" if self._prefix else key

    def _redis(self):
        if self._client is None:
            self._client = redis.from_url(self._url, decode_responses=True)
        return self._client

    def _unavailable(self, operation: str, key: str | None, exc: Exception) -> StoreUnavailableError:
        return StoreUnavailableError(
            code="rate_limit_store_unavailable",
            message=f"Redis counter store failed during {operation}",
            details={
                "backend": "redis",
                "operation": operation,
                "context": {"key": key, "error_type": type(exc).__name__},
            },
        )

    async def start(self) -> None:
        try:
            await self._redis().ping()
        except (RedisError, OSError) as exc:
            # Not fatal: admission fails open until Redis is reachable.
            logger.error(
                "rate_limit.store_connect_failed",
                extra={"backend": "redis", "error_type": type(exc).__name__},
            )
            return
        logger.info("rate_limit.store_connected", extra={"backend": "redis"})

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def get(self, key: str) -> CounterEntry | None:
        try:
            data = await self._redis().hgetall(self._key(key))
        except (RedisError, OSError) as exc:
            raise self._unavailable("get", key, exc) from exc

        if not data or "count" not in data or "reset_time" not in data:
            return None
        return CounterEntry(count=int(data["count"]), reset_time=int(data["reset_time"]) / 1000)

    async def set(self, key: str, entry: CounterEntry) -> None:
        redis_key = self._key(key)
        reset_ms = _to_ms(entry.reset_time)
        try:
            async with self._redis().pipeline(transaction=True) as pipe:
                pipe.hset(redis_key, mapping={"count": entry.count, "reset_time": reset_ms})
                pipe.pexpireat(redis_key, reset_ms)
                await pipe.execute()
        except (RedisError, OSError) as exc:
            raise self._unavailable("set", key, exc) from exc

    async def delete(self, key: str) -> None:
        try:
            await self._redis().delete(self._key(key))
        except (RedisError, OSError) as exc:
            raise self._unavailable("delete", key, exc) from exc

    async def cleanup(self) -> int:
        # Windows expire server-side via PEXPIREAT.
        return 0

    async def increment(self, key: str, *, window_seconds: float, now: float) -> CounterEntry:
        if self._increment_script is None:
            self._increment_script = self._redis().register_script(INCREMENT_SCRIPT)
        try:
            count, reset_ms = await self._increment_script(
                keys=[self._key(key)],
                args=[_to_ms(now), _to_ms(window_seconds)],
            )
        except (RedisError, OSError) as exc:
            raise self._unavailable("increment", key, exc) from exc

        return CounterEntry(count=int(count), reset_time=int(reset_ms) / 1000)
