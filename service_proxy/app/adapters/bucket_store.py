"""
Bucket store adapters for the proxy's leaky bucket limiter.

The store owns all bucket state. A check-and-consume is one indivisible
operation against it: a registered Lua script on Redis, or a lock-guarded
update for the single-process in-memory store.
"""

import asyncio
import time
from typing import Callable, Dict, Optional, Protocol, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.errors import StoreUnavailableError
from shared.logging import get_logger
from shared.retry import RetryConfig, call_with_retry
from ..ratelimit.leaky_bucket import BucketCheck, BucketPolicy, leak_and_consume


class BucketStore(Protocol):
    """Shared store able to run the atomic leaky bucket check."""

    async def start(self) -> None: ...

    async def close(self) -> None: ...

    async def check_and_consume(self, bucket_key: str, policy: BucketPolicy,
                                now: Optional[float] = None) -> BucketCheck: ...


class RedisBucketStore:
    """Redis-backed bucket store shared by every proxy instance."""

    # KEYS[1] = bucket key
    # ARGV[1] = capacity, ARGV[2] = leak rate (units/s), ARGV[3] = ttl (s),
    # ARGV[4] = optional caller clock (s); Redis TIME is used when absent
    # Returns {allowed (0/1), level, retry_after_ms}
    LUA_SCRIPT = """
local key = KEYS[1]
local capacity = tonumber(ARGV[1])
local leak_rate = tonumber(ARGV[2])
local ttl = tonumber(ARGV[3])
local now = tonumber(ARGV[4])
if now == nil then
  local t = redis.call('TIME')
  now = tonumber(t[1]) + tonumber(t[2]) / 1000000
end

local state = redis.call('HMGET', key, 'level', 'last_update')
local level = tonumber(state[1]) or 0
local last_update = tonumber(state[2]) or now

local elapsed = now - last_update
if elapsed < 0 then elapsed = 0 end
level = level - elapsed * leak_rate
if level < 0 then level = 0 end
if level > capacity then level = capacity end

local allowed = 0
local retry_after_ms = 0
if level + 1 <= capacity then
  level = level + 1
  allowed = 1
else
  retry_after_ms = math.ceil((level + 1 - capacity) / leak_rate * 1000)
end

local encoded = string.format('%.17g', level)
redis.call('HSET', key, 'level', encoded, 'last_update', string.format('%.6f', now))
redis.call('EXPIRE', key, ttl)
return {allowed, encoded, retry_after_ms}
"""

    def __init__(self, redis_url: str, socket_timeout: float = 0.5, connect_timeout: float = 1.0,
                 max_connections: int = 50, connect_attempts: int = 30, connect_base_delay: float = 0.2):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.connect_timeout = connect_timeout
        self.max_connections = max_connections
        self.retry_config = RetryConfig(
            max_attempts=connect_attempts,
            base_delay=connect_base_delay,
            max_delay=10.0
        )
        self.logger = get_logger("proxy.bucket_store.redis")
        self._redis: Optional[redis.Redis] = None
        self._script = None

    def _get_redis(self) -> redis.Redis:
        """Get Redis connection pool."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_timeout=self.socket_timeout,
                socket_connect_timeout=self.connect_timeout,
                max_connections=self.max_connections,
                health_check_interval=30
            )
        return self._redis

    def _get_script(self):
        if self._script is None:
            self._script = self._get_redis().register_script(self.LUA_SCRIPT)
        return self._script

    async def start(self) -> None:
        """Connect to Redis, retrying while the store comes up."""
        await call_with_retry(self.ping, exceptions=(StoreUnavailableError,), config=self.retry_config)
        self.logger.info("Bucket store connected", redis_url=self.redis_url)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self._script = None
            self.logger.info("Bucket store closed")

    async def ping(self) -> None:
        """Round-trip to Redis; raises StoreUnavailableError when it does not answer."""
        try:
            await self._get_redis().ping()
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            raise StoreUnavailableError(str(e) or type(e).__name__) from e

    async def check_and_consume(self, bucket_key: str, policy: BucketPolicy,
                                now: Optional[float] = None) -> BucketCheck:
        args = [policy.capacity, policy.leak_rate, policy.ttl_seconds]
        if now is not None:
            args.append(now)

        try:
            result = await self._get_script()(keys=[bucket_key], args=args)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            raise StoreUnavailableError(
                str(e) or type(e).__name__,
                details={"bucket_key": bucket_key}
            ) from e

        try:
            allowed, level, retry_after_ms = result
            return BucketCheck(
                allowed=int(allowed) == 1,
                level=float(level),
                retry_after=int(retry_after_ms) / 1000
            )
        except (TypeError, ValueError) as e:
            raise StoreUnavailableError(
                f"Unexpected script reply: {result!r}",
                details={"bucket_key": bucket_key}
            ) from e


class InMemoryBucketStore:
    """Single-process bucket store for local development and tests.

    Not shared between processes; use RedisBucketStore when more than one
    proxy instance serves traffic.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, sweep_every: int = 1024):
        self.clock = clock
        self.sweep_every = sweep_every
        self.logger = get_logger("proxy.bucket_store.memory")
        # bucket key -> (level, last_update, expires_at)
        self._buckets: Dict[str, Tuple[float, float, float]] = {}
        self._lock = asyncio.Lock()
        self._checks = 0

    async def start(self) -> None:
        self.logger.info("Using in-memory bucket store")

    async def close(self) -> None:
        self._buckets.clear()

    async def check_and_consume(self, bucket_key: str, policy: BucketPolicy,
                                now: Optional[float] = None) -> BucketCheck:
        async with self._lock:
            if now is None:
                now = self.clock()

            level: Optional[float] = None
            last_update: Optional[float] = None
            entry = self._buckets.get(bucket_key)
            if entry is not None and entry[2] > now:
                level, last_update, _ = entry

            new_level, result = leak_and_consume(level, last_update, now, policy)
            self._buckets[bucket_key] = (new_level, now, now + policy.ttl_seconds)

            self._checks += 1
            if self._checks % self.sweep_every == 0:
                self._sweep(now)

            return result

    def __len__(self) -> int:
        return len(self._buckets)

    def _sweep(self, now: float) -> None:
        expired = [key for key, (_, _, expires_at) in self._buckets.items() if expires_at <= now]
        for key in expired:
            del self._buckets[key]
