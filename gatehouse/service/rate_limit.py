from __future__ import annotations

import math
import time
from typing import Any, Callable, Optional, Protocol, TypeVar

from gatehouse.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

TIMER_SUFFIX = ":timer"


class Cache(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...

    def put(self, key: str, value: Any, ttl: Optional[int] = None) -> None: ...

    def add(self, key: str, value: Any, ttl: Optional[int] = None) -> bool: ...

    def increment(self, key: str, amount: int = 1) -> int: ...

    def forget(self, key: str) -> bool: ...

    def has(self, key: str) -> bool: ...


class RateLimiter:
    """Fixed-window attempt counter with a lockout timer.

    Each key owns two cache entries: the attempt counter under ``key`` and the
    absolute unlock timestamp under ``key:timer``. Both are written with the
    decay as TTL on the first hit of a window, so the window does not slide
    with later hits.
    """

    def __init__(self, cache: Cache, *, clock: Callable[[], float] = time.time) -> None:
        self.cache = cache
        self._clock = clock

    @staticmethod
    def _timer_key(key: str) -> str:
        return f"{key}{TIMER_SUFFIX}"

    def hit(self, key: str, decay_seconds: int = 60) -> int:
        self.cache.add(
            self._timer_key(key),
            math.ceil(self._clock()) + decay_seconds,
            decay_seconds,
        )
        added = self.cache.add(key, 0, decay_seconds)
        hits = int(self.cache.increment(key))
        if not added and hits == 1:
            # counter expired between add and increment; restore its TTL
            self.cache.put(key, 1, decay_seconds)
        return hits

    def attempts(self, key: str) -> int:
        return int(self.cache.get(key, 0) or 0)

    def too_many_attempts(self, key: str, max_attempts: int) -> bool:
        if self.attempts(key) >= max_attempts:
            if self.cache.has(self._timer_key(key)):
                return True
            self.reset_attempts(key)
        return False

    def reset_attempts(self, key: str) -> None:
        self.cache.forget(key)

    def retries_left(self, key: str, max_attempts: int) -> int:
        return max_attempts - self.attempts(key)

    def remaining(self, key: str, max_attempts: int) -> int:
        if self.too_many_attempts(key, max_attempts):
            return 0
        return max(0, self.retries_left(key, max_attempts))

    def clear(self, key: str) -> None:
        self.reset_attempts(key)
        self.cache.forget(self._timer_key(key))

    def available_in(self, key: str) -> int:
        unlock_at = self.cache.get(self._timer_key(key), 0) or 0
        return max(0, math.ceil(float(unlock_at) - self._clock()))

    def attempt(
        self,
        key: str,
        max_attempts: int,
        callback: Callable[[], T],
        decay_seconds: int = 60,
    ) -> Optional[T]:
        """Run ``callback`` unless ``key`` is locked out, counting the attempt.

        Returns ``None`` without calling ``callback`` when the limit is reached.
        """
        if self.too_many_attempts(key, max_attempts):
            logger.info(
                "rate_limit_exceeded",
                key=key,
                available_in=self.available_in(key),
            )
            return None
        self.hit(key, decay_seconds)
        return callback()
