import json
import logging
import threading
import time
from typing import Any, Callable, Optional

log = logging.getLogger("storefront.cache")

PRODUCTS_PREFIX = "products:v1"
INVENTORY_PREFIX = "inventory:v1"


class _MemoryBackend:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._cache: dict[str, tuple[float, Any]] = {}
        self.expired = 0

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            item = self._cache.get(key)
            if not item:
                return None
            expires_at, value = item
            if expires_at < time.time():
                self._cache.pop(key, None)
                self.expired += 1
                return None
            return value

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        with self._lock:
            self._cache[key] = (time.time() + ttl_seconds, value)

    def invalidate(self, prefix_or_key: str) -> None:
        with self._lock:
            for k in [k for k in self._cache if k.startswith(prefix_or_key)]:
                self._cache.pop(k, None)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()


class _RedisBackend:
    def __init__(self, url: str) -> None:
        import redis

        self._client = redis.Redis.from_url(url, decode_responses=True)
        self._client.ping()
        self.expired = 0

    def get(self, key: str) -> Optional[Any]:
        val = self._client.get(key)
        if val is None:
            return None
        try:
            return json.loads(val)
        except ValueError:
            return None

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        payload = json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)
        self._client.setex(key, ttl_seconds, payload)

    def invalidate(self, prefix_or_key: str) -> None:
        if self._client.delete(prefix_or_key):
            return
        pipe = self._client.pipeline(transaction=False)
        for k in self._client.scan_iter(f"{prefix_or_key}*"):
            pipe.delete(k)
        pipe.execute()

    def clear(self) -> None:
        for prefix in (PRODUCTS_PREFIX, INVENTORY_PREFIX):
            self.invalidate(prefix)


_enabled = True
_backend: Any = _MemoryBackend()
_metrics_lock = threading.RLock()
_hits = 0
_misses = 0


def configure_cache(enabled: bool = True, use_redis: bool = False, redis_url: str = "") -> None:
    """Pick the cache backend; Redis falls back to the in-process cache when unreachable."""
    global _enabled, _backend
    _enabled = enabled
    if use_redis:
        try:
            _backend = _RedisBackend(redis_url)
            log.info("cache backend=redis")
            return
        except Exception as e:
            log.warning("redis cache unavailable (%s); using in-process cache", e)
    _backend = _MemoryBackend()


def cache_get(key: str) -> Optional[Any]:
    global _hits, _misses
    if not _enabled:
        return None
    try:
        value = _backend.get(key)
    except Exception as e:
        log.warning("cache get failed key=%s: %s", key, e)
        return None
    with _metrics_lock:
        if value is not None:
            _hits += 1
        else:
            _misses += 1
    log.debug("cache %s key=%s", "hit" if value is not None else "miss", key)
    return value


def cache_set(key: str, value: Any, ttl_seconds: int) -> None:
    if not _enabled or ttl_seconds <= 0:
        return
    try:
        _backend.set(key, value, ttl_seconds)
    except Exception as e:
        log.warning("cache set failed key=%s: %s", key, e)


def cache_invalidate(*prefixes: str) -> None:
    for prefix in prefixes:
        try:
            _backend.invalidate(prefix)
        except Exception as e:
            log.warning("cache invalidate failed prefix=%s: %s", prefix, e)


def invalidate_stock_views() -> None:
    cache_invalidate(PRODUCTS_PREFIX, INVENTORY_PREFIX)


def cache_memo(key: str, ttl_seconds: int, producer: Callable[[], Any]) -> Any:
    cached = cache_get(key)
    if cached is not None:
        return cached
    value = producer()
    cache_set(key, value, ttl_seconds)
    return value


def cache_metrics() -> dict[str, int]:
    with _metrics_lock:
        return {"hits": _hits, "misses": _misses, "expired": getattr(_backend, "expired", 0)}
