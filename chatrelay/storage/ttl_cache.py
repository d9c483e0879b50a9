from __future__ import annotations

import json
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple, Union

from redis import Redis

from chatrelay.logging import get_logger

logger = get_logger(__name__)

CacheKey = Union[str, Tuple[Any, ...]]


def render_key(key: CacheKey) -> str:
    if isinstance(key, tuple):
        return ":".join("" if part is None else str(part) for part in key)
    return str(key)


class TTLCache:
    """Read-through cache with a fixed time-to-live and explicit invalidation.

    Values must be JSON-serializable so the Redis and in-memory backends
    behave the same. ``invalidate(prefix)`` drops every key that starts with
    the rendered prefix; ``invalidate()`` clears the namespace.
    """

    def __init__(self, namespace: str, ttl_seconds: float) -> None:
        self.namespace = namespace
        self.ttl_seconds = ttl_seconds

    def get(self, key: CacheKey) -> Optional[Any]:
        raise NotImplementedError

    def set(self, key: CacheKey, value: Any) -> None:
        raise NotImplementedError

    def invalidate(self, prefix: Optional[CacheKey] = None) -> int:
        raise NotImplementedError

    def get_or_load(self, key: CacheKey, loader: Callable[[], Any]) -> Any:
        cached = self.get(key)
        if cached is not None:
            return cached
        value = loader()
        if value is not None:
            self.set(key, value)
        return value


class MemoryTTLCache(TTLCache):
    """Process-local cache; expiry is checked lazily on read."""

    def __init__(
        self,
        namespace: str,
        ttl_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(namespace, ttl_seconds)
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: CacheKey) -> Optional[Any]:
        rendered = render_key(key)
        with self._lock:
            entry = self._entries.get(rendered)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                self._entries.pop(rendered, None)
                return None
            return value

    def set(self, key: CacheKey, value: Any) -> None:
        with self._lock:
            self._entries[render_key(key)] = (self._clock() + self.ttl_seconds, value)

    def invalidate(self, prefix: Optional[CacheKey] = None) -> int:
        with self._lock:
            if prefix is None:
                dropped = len(self._entries)
                self._entries.clear()
                return dropped
            rendered = render_key(prefix)
            doomed = [k for k in self._entries if k.startswith(rendered)]
            for k in doomed:
                self._entries.pop(k, None)
            return len(doomed)


class RedisTTLCache(TTLCache):
    """Shared cache backed by Redis ``SET ... EX`` so every worker sees invalidations."""

    def __init__(self, client: Redis, namespace: str, ttl_seconds: float) -> None:
        super().__init__(namespace, ttl_seconds)
        self.client = client

    def _full_key(self, key: CacheKey) -> str:
        return f"chatrelay:{self.namespace}:{render_key(key)}"

    def get(self, key: CacheKey) -> Optional[Any]:
        raw = self.client.get(self._full_key(key))
        if not raw:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            # Corrupted entry is a miss
            return None

    def set(self, key: CacheKey, value: Any) -> None:
        self.client.set(
            self._full_key(key), json.dumps(value), ex=max(1, int(self.ttl_seconds))
        )

    def invalidate(self, prefix: Optional[CacheKey] = None) -> int:
        pattern = (
            f"chatrelay:{self.namespace}:*"
            if prefix is None
            else f"{self._full_key(prefix)}*"
        )
        doomed = list(self.client.scan_iter(match=pattern))
        if doomed:
            self.client.delete(*doomed)
        return len(doomed)


class CacheFactory:
    """Builds namespaced caches on Redis when reachable, otherwise in memory."""

    def __init__(self, redis_client: Optional[Redis] = None) -> None:
        self.redis_client = redis_client

    @classmethod
    def connect(cls, redis_url: str, *, socket_timeout: float = 5.0) -> "CacheFactory":
        client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        client.ping()
        return cls(client)

    @property
    def backend(self) -> str:
        return "redis" if self.redis_client is not None else "memory"

    def build(self, namespace: str, ttl_seconds: float) -> TTLCache:
        if self.redis_client is not None:
            return RedisTTLCache(self.redis_client, namespace, ttl_seconds)
        return MemoryTTLCache(namespace, ttl_seconds)

    def close(self) -> None:
        if self.redis_client is not None:
            self.redis_client.close()
