"""
Leaky bucket rate limiter for the proxy service.

Each accepted request adds one unit to a per-key bucket; the bucket drains
continuously at ``leak_rate`` units per second and a request is accepted only
while the bucket has room for one more unit. Bucket state lives in the
shared store, never in process memory, so the limiter is correct across any
number of proxy instances.
"""

import math
from dataclasses import dataclass
from typing import Optional, Tuple, TYPE_CHECKING

from shared.errors import RateLimitError, StoreUnavailableError
from shared.logging import get_logger
from shared.metrics import MetricsCollector

if TYPE_CHECKING:
    from ..adapters.bucket_store import BucketStore


@dataclass(frozen=True)
class BucketPolicy:
    """Process-wide bucket parameters shared by every key."""

    capacity: float = 1.0
    leak_rate: float = 1.0

    def __post_init__(self):
        if self.capacity < 1:
            raise ValueError("capacity must be at least one request unit")
        if self.leak_rate <= 0:
            raise ValueError("leak_rate must be positive")

    @property
    def ttl_seconds(self) -> int:
        """Idle time after which a bucket is fully drained and may be forgotten."""
        return max(1, math.ceil(self.capacity / self.leak_rate))


@dataclass(frozen=True)
class BucketCheck:
    """Result of one atomic check-and-consume against the store."""

    allowed: bool
    level: float
    retry_after: float = 0.0


@dataclass(frozen=True)
class RateLimitDecision:
    key: str
    allowed: bool
    retry_after: float
    level: float


def leak_and_consume(level: Optional[float], last_update: Optional[float], now: float,
                     policy: BucketPolicy) -> Tuple[float, BucketCheck]:
    """Apply leak and try to add one unit.

    This is the reference for the store-side Lua script; both must agree.
    ``level``/``last_update`` of None mean the bucket does not exist yet.
    Returns the level to persist (with ``last_update = now``) and the check.
    """
    if level is None:
        level = 0.0
    if last_update is None:
        last_update = now

    elapsed = max(0.0, now - last_update)
    level = min(policy.capacity, max(0.0, level - elapsed * policy.leak_rate))

    if level + 1 <= policy.capacity:
        level += 1
        return level, BucketCheck(allowed=True, level=level)

    retry_after = (level + 1 - policy.capacity) / policy.leak_rate
    return level, BucketCheck(allowed=False, level=level, retry_after=retry_after)


class LeakyBucketLimiter:
    """Distributed leaky bucket limiter backed by a shared bucket store."""

    def __init__(self, store: "BucketStore", policy: BucketPolicy,
                 metrics: Optional[MetricsCollector] = None, key_prefix: str = "rl:"):
        self.store = store
        self.policy = policy
        self.metrics = metrics
        self.key_prefix = key_prefix
        self.logger = get_logger("proxy.limiter")

    def bucket_key(self, key: str) -> str:
        """Generate the store key for a client-supplied rate-limit key."""
        return f"{self.key_prefix}{key}"

    async def check(self, key: str) -> RateLimitDecision:
        """Consume one unit for ``key`` if the bucket has room.

        Raises StoreUnavailableError when the store cannot answer; the
        limiter fails closed and never treats that as an allow.
        """
        try:
            result = await self.store.check_and_consume(self.bucket_key(key), self.policy)
        except StoreUnavailableError as e:
            self.logger.error("Bucket store unavailable", key=key, error=e.message)
            self._record("error")
            raise

        if result.allowed:
            self._record("allow")
        else:
            self.logger.warning(
                "Rate limit exceeded",
                key=key,
                level=result.level,
                retry_after=round(result.retry_after, 3)
            )
            self._record("reject")

        return RateLimitDecision(
            key=key,
            allowed=result.allowed,
            retry_after=result.retry_after,
            level=result.level
        )

    async def enforce(self, key: str) -> RateLimitDecision:
        """Like ``check`` but raises RateLimitError on rejection."""
        decision = await self.check(key)
        if not decision.allowed:
            raise RateLimitError(
                retry_after=decision.retry_after,
                details={"key": key, "retry_after": decision.retry_after}
            )
        return decision

    def _record(self, decision: str) -> None:
        if self.metrics is not None:
            self.metrics.record_rate_limit_decision(decision)
