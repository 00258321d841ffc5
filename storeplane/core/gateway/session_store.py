"""
Session token store: opaque token -> {userId, role, email, username}, with TTL.
- Single instance: in-process memory store.
- Multiple replicas: SESSION_STORE_URL pointing at Redis shares tokens across instances;
  a local cache plus a short blacklist of unknown tokens cuts Redis round trips.
"""
import json
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger("storeplane.session")

_TOKEN_CACHE_MAX = 2000
_TOKEN_CACHE_TTL_SEC = 60.0
_BLACKLIST_TTL_SEC = 30.0
_MEMORY_PRUNE_THRESHOLD = 10000


class MemoryTokenStore:
    """Process-local tokens; not shared between instances. Expired entries are pruned on set past prune_threshold."""

    def __init__(self, clock: Callable[[], float] = time.time, prune_threshold: int = _MEMORY_PRUNE_THRESHOLD) -> None:
        self._data: Dict[str, Tuple[Dict[str, Any], float]] = {}
        self._lock = threading.RLock()
        self._clock = clock
        self._prune_threshold = prune_threshold

    def get(self, token: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            item = self._data.get(token)
            if item is None:
                return None
            info, expires_at = item
            if self._clock() >= expires_at:
                del self._data[token]
                return None
            return info

    def set(self, token: str, user_info: Dict[str, Any], ttl_sec: int = 86400) -> None:
        with self._lock:
            now = self._clock()
            self._data[token] = (dict(user_info), now + ttl_sec)
            if len(self._data) > self._prune_threshold:
                for t in [t for t, (_, exp) in self._data.items() if now >= exp]:
                    del self._data[t]

    def delete(self, token: str) -> None:
        with self._lock:
            self._data.pop(token, None)

    def ping(self) -> bool:
        return True


class RedisTokenStore:
    """Tokens in Redis with server-side expiry."""

    def __init__(self, url: str, key_prefix: str = "storeplane:token:", default_ttl_sec: int = 86400) -> None:
        import redis
        self._client = redis.from_url(url, decode_responses=True)
        self._prefix = key_prefix
        self._ttl = default_ttl_sec

    def get(self, token: str) -> Optional[Dict[str, Any]]:
        try:
            raw = self._client.get(self._prefix + token)
        except Exception as e:
            logger.warning("redis token get failed: %s", e)
            return None
        if not raw:
            return None
        return json.loads(raw)

    def set(self, token: str, user_info: Dict[str, Any], ttl_sec: int = 86400) -> None:
        self._client.setex(self._prefix + token, ttl_sec or self._ttl, json.dumps(user_info, ensure_ascii=False))

    def delete(self, token: str) -> None:
        try:
            self._client.delete(self._prefix + token)
        except Exception as e:
            logger.warning("redis token delete failed: %s", e)

    def ping(self) -> bool:
        return bool(self._client.ping())


class TokenStoreWithCache:
    """Wraps a backend with a bounded local cache and a blacklist of recently unknown tokens."""

    def __init__(self, backend: Any, max_size: int = _TOKEN_CACHE_MAX, cache_ttl_sec: float = _TOKEN_CACHE_TTL_SEC,
                 blacklist_ttl_sec: float = _BLACKLIST_TTL_SEC) -> None:
        self._backend = backend
        self._max_size = max_size
        self._cache_ttl = cache_ttl_sec
        self._blacklist_ttl = blacklist_ttl_sec
        self._cache: Dict[str, Tuple[Dict[str, Any], float]] = {}
        self._blacklist: Dict[str, float] = {}
        self._lock = threading.RLock()

    def _evict(self) -> None:
        while len(self._cache) >= self._max_size and self._cache:
            self._cache.pop(next(iter(self._cache)))

    def get(self, token: str) -> Optional[Dict[str, Any]]:
        if not token:
            return None
        now = time.time()
        with self._lock:
            if self._blacklist.get(token, 0) > now:
                return None
            self._blacklist.pop(token, None)
            cached = self._cache.get(token)
            if cached is not None:
                data, exp = cached
                if now < exp:
                    return data
                del self._cache[token]
        data = self._backend.get(token)
        with self._lock:
            if data is not None:
                self._evict()
                self._cache[token] = (data, now + self._cache_ttl)
            else:
                self._blacklist[token] = now + self._blacklist_ttl
        return data

    def set(self, token: str, user_info: Dict[str, Any], ttl_sec: int = 86400) -> None:
        self._backend.set(token, user_info, ttl_sec)
        with self._lock:
            self._blacklist.pop(token, None)
            self._evict()
            self._cache[token] = (user_info, time.time() + min(self._cache_ttl, float(ttl_sec)))

    def delete(self, token: str) -> None:
        with self._lock:
            self._blacklist[token] = time.time() + self._blacklist_ttl
            self._cache.pop(token, None)
        self._backend.delete(token)

    def ping(self) -> bool:
        return self._backend.ping()


def create_token_store(url: str = ""):
    """
    Empty url: memory store (single instance).
    redis://... or rediss://...: Redis store wrapped with local cache and blacklist.
    An unreachable Redis falls back to memory with a warning.
    """
    url = (url or "").strip()
    if not url:
        return MemoryTokenStore()
    if url.startswith("redis://") or url.startswith("rediss://"):
        try:
            store = RedisTokenStore(url)
        except Exception as e:
            logger.warning("redis session store init failed, fallback to memory: %s", e)
            return MemoryTokenStore()
        logger.info("session store: redis with local cache and blacklist")
        return TokenStoreWithCache(store)
    logger.warning("unsupported SESSION_STORE_URL scheme, using memory store")
    return MemoryTokenStore()
