"""Rate limiting utilities."""

import asyncio
import logging
import time
import uuid
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class ThrottleBucket:
    """Client side model of Shopify's leaky bucket.

    The server reports ``used/capacity`` after every call. Between calls the
    bucket drains at ``restore_rate`` points per second; when the estimate
    crosses ``threshold`` of capacity the caller sleeps until usage is back
    near ``target``.
    """

    def __init__(
        self,
        capacity: float = 1000.0,
        restore_rate: float = 50.0,
        threshold: float = 0.8,
        target: float = 0.5,
        max_wait: float = 5.0,
    ):
        self.capacity = capacity
        self.restore_rate = restore_rate
        self.threshold = threshold
        self.target = target
        self.max_wait = max_wait
        self.used = 0.0
        self.updated_at = time.monotonic()

    def update_from_header(self, header: Optional[str]) -> None:
        """Update from an ``X-Shopify-Shop-Api-Call-Limit`` value like ``40/1000``."""
        if not header:
            return
        try:
            used, capacity = header.split("/", 1)
            self.used = float(used)
            self.capacity = float(capacity) or self.capacity
            self.updated_at = time.monotonic()
        except ValueError:
            logger.debug(f"Ignoring malformed call limit header: {header}")

    def update_from_cost(self, throttle_status: Optional[Dict[str, Any]]) -> None:
        """Update from GraphQL ``extensions.cost.throttleStatus``."""
        if not throttle_status:
            return
        try:
            capacity = float(throttle_status["maximumAvailable"])
            available = float(throttle_status["currentlyAvailable"])
        except (KeyError, TypeError, ValueError):
            return
        self.capacity = capacity or self.capacity
        self.used = max(0.0, self.capacity - available)
        restore = throttle_status.get("restoreRate")
        if restore:
            self.restore_rate = float(restore)
        self.updated_at = time.monotonic()

    def estimated_usage(self, now: Optional[float] = None) -> float:
        now = time.monotonic() if now is None else now
        elapsed = max(0.0, now - self.updated_at)
        return max(0.0, self.used - elapsed * self.restore_rate)

    def compute_wait(self, now: Optional[float] = None) -> float:
        """Seconds to wait before the next call (0 when under the threshold)."""
        usage = self.estimated_usage(now)
        if usage <= self.capacity * self.threshold:
            return 0.0
        wait = (usage - self.capacity * self.target) / self.restore_rate
        return min(max(wait, 0.0), self.max_wait)

    async def wait_if_needed(self) -> float:
        wait = self.compute_wait()
        if wait > 0:
            logger.info(f"Approaching Shopify rate limit, waiting {wait:.2f}s")
            await asyncio.sleep(wait)
        return wait


class RateLimiter:
    """Sliding window rate limiter backed by a Redis sorted set."""

    def __init__(self, redis_client, prefix: str = "rate_limit"):
        self.redis_client = redis_client
        self.prefix = prefix

    async def check_rate_limit(
        self,
        key: str,
        limit: int = 100,
        window: float = 3600,
    ) -> bool:
        """Check if rate limit is exceeded; records the request when allowed."""
        full_key = f"{self.prefix}:{key}"
        current_time = time.time()
        window_start = current_time - window

        # Remove old entries
        await self.redis_client.zremrangebyscore(full_key, 0, window_start)

        # Count requests in current window
        count = await self.redis_client.zcard(full_key)

        if count >= limit:
            return False

        await self.redis_client.zadd(full_key, {uuid.uuid4().hex: current_time})
        await self.redis_client.expire(full_key, max(1, int(window) + 1))

        return True

    async def acquire(
        self,
        key: str,
        limit: int,
        window: float,
        poll_interval: float = 0.05,
    ) -> None:
        """Wait until a slot in the window is free."""
        while not await self.check_rate_limit(key, limit, window):
            await asyncio.sleep(poll_interval)

    async def reset_rate_limit(self, key: str) -> None:
        """Reset rate limit for a key."""
        full_key = f"{self.prefix}:{key}"
        await self.redis_client.delete(full_key)
