"""
Activity Throttle
=================
Bounds ``last_activity`` writes to one per window per session.

InMemoryActivityThrottle is per-process; RedisActivityThrottle shares the
window across instances with ``SET NX EX``.
"""

import time
from typing import Dict

import structlog

logger = structlog.get_logger(__name__)


class InMemoryActivityThrottle:
    """
    Process-local throttle.

    For development, tests and single-instance deployments.
    """

    def __init__(self, window: int = 300):
        """
        Args:
            window: Minimum seconds between two touches of one session
        """
        self.window = window
        self._last_touch: Dict[str, float] = {}

    @classmethod
    def from_settings(cls, settings) -> "InMemoryActivityThrottle":
        return cls(window=settings.activity_touch_seconds)

    async def should_touch(self, session_token: str) -> bool:
        now = time.monotonic()
        last = self._last_touch.get(session_token)
        if last is not None and now - last < self.window:
            return False
        self._last_touch[session_token] = now
        self._evict(now)
        return True

    def _evict(self, now: float) -> None:
        expired = [token for token, ts in self._last_touch.items() if now - ts >= self.window]
        for token in expired:
            del self._last_touch[token]


class RedisActivityThrottle:
    """Redis-backed throttle shared by all instances."""

    def __init__(self, redis_client, window: int = 300, prefix: str = "audit:touch"):
        """
        Args:
            redis_client: Async Redis client
            window: Minimum seconds between two touches of one session
            prefix: Key namespace
        """
        self.redis = redis_client
        self.window = window
        self.prefix = prefix

    @classmethod
    def from_settings(cls, settings, redis_client, prefix: str = "audit:touch") -> "RedisActivityThrottle":
        return cls(redis_client, window=settings.activity_touch_seconds, prefix=prefix)

    def get_key(self, session_token: str) -> str:
        return f"{self.prefix}:{session_token}"

    async def should_touch(self, session_token: str) -> bool:
        try:
            acquired = await self.redis.set(self.get_key(session_token), "1", nx=True, ex=self.window)
            return bool(acquired)
        except Exception as e:
            logger.warning("activity_throttle_unavailable", error=str(e))
            return False
