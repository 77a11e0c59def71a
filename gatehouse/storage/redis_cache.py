from __future__ import annotations

import json
from typing import Any, Optional

from redis import Redis

from gatehouse.logging import get_logger

logger = get_logger(__name__)


class RedisCache:
    """Redis-backed cache for throttle counters and reset tokens.

    Values are stored as JSON so that counters written by ``increment`` (plain
    integers) and structured values written by ``put`` read back the same way.
    ``add`` maps to ``SET NX EX`` and ``increment`` to ``INCRBY``, so both stay
    atomic across processes.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        prefix: str = "gatehouse:",
        client: Optional[Redis] = None,
    ) -> None:
        self.redis_url = redis_url
        self.prefix = prefix
        if client is None:
            if not redis_url:
                raise ValueError("redis_url or client is required")
            client = Redis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        self.client = client

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    @staticmethod
    def _ttl(ttl: Optional[int]) -> Optional[int]:
        # Redis rejects non-positive EX values
        if ttl is None:
            return None
        return max(1, int(ttl))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        self.client.ping()

    def get(self, key: str, default: Any = None) -> Any:
        raw = self.client.get(self._key(key))
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except (TypeError, json.JSONDecodeError):
            logger.warning("redis_cache_value_invalid", key=key)
            return default

    def has(self, key: str) -> bool:
        return bool(self.client.exists(self._key(key)))

    def put(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        if ttl is not None and ttl <= 0:
            self.client.delete(self._key(key))
            return
        self.client.set(self._key(key), json.dumps(value), ex=self._ttl(ttl))

    def add(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        if ttl is not None and ttl <= 0:
            return False
        return bool(
            self.client.set(
                self._key(key), json.dumps(value), ex=self._ttl(ttl), nx=True
            )
        )

    def increment(self, key: str, amount: int = 1) -> int:
        return int(self.client.incrby(self._key(key), amount))

    def forget(self, key: str) -> bool:
        return bool(self.client.delete(self._key(key)))

    def close(self) -> None:
        self.client.close()
