"""
Durable record stores for rate limiter state and cached charts.

Records are JSON text under string keys ("ratelimit:{name}", "chart:{fingerprint}").
Every put replaces one whole record in one operation, so readers never see a
half-written record.
"""

import logging
import threading
import time
from typing import Any, Dict, List, Optional, Protocol, Tuple

import redis

from .errors import StorageError

logger = logging.getLogger(__name__)


class RecordStore(Protocol):
    def get(self, key: str) -> Optional[str]:
        ...

    def put(self, key: str, value: str) -> None:
        ...

    def delete(self, *keys: str) -> int:
        ...

    def scan(self, prefix: str) -> List[Tuple[str, str]]:
        ...

    def health_check(self) -> Dict[str, Any]:
        ...


class MemoryRecordStore:
    """In-process record store (dev/tests). Not shared between workers."""

    def __init__(self):
        self._data: Dict[str, str] = {}
        self._lock = threading.RLock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def put(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, *keys: str) -> int:
        with self._lock:
            return sum(1 for key in keys if self._data.pop(key, None) is not None)

    def scan(self, prefix: str) -> List[Tuple[str, str]]:
        with self._lock:
            return [(k, v) for k, v in self._data.items() if k.startswith(prefix)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def health_check(self) -> Dict[str, Any]:
        return {"healthy": True, "backend": "memory", "records": len(self)}


class RedisRecordStore:
    """
    Redis-backed record store.

    Args:
        url: Redis connection URL
        key_prefix: Namespace prepended to every key
        client: Pre-built client (tests inject a fake here)
    """

    def __init__(self, url: str, key_prefix: str = "natal", client: Optional[redis.Redis] = None):
        self.url = url
        self.key_prefix = key_prefix
        self._redis = client if client is not None else redis.Redis.from_url(url, decode_responses=True)
        self._stats = {"gets": 0, "puts": 0, "deletes": 0, "errors": 0, "last_error": None}

    def _make_key(self, key: str) -> str:
        return f"{self.key_prefix}:{key}"

    def _failed(self, operation: str, e: Exception) -> StorageError:
        self._stats["errors"] += 1
        self._stats["last_error"] = str(e)
        logger.error(f"Redis store {operation} error: {e}")
        return StorageError(f"Redis {operation} failed: {e}")

    def get(self, key: str) -> Optional[str]:
        self._stats["gets"] += 1
        try:
            return self._redis.get(self._make_key(key))
        except redis.RedisError as e:
            raise self._failed("get", e)

    def put(self, key: str, value: str) -> None:
        self._stats["puts"] += 1
        try:
            self._redis.set(self._make_key(key), value)
        except redis.RedisError as e:
            raise self._failed("put", e)

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        self._stats["deletes"] += 1
        try:
            return int(self._redis.delete(*(self._make_key(k) for k in keys)))
        except redis.RedisError as e:
            raise self._failed("delete", e)

    def scan(self, prefix: str) -> List[Tuple[str, str]]:
        strip = len(self.key_prefix) + 1
        try:
            keys = list(self._redis.scan_iter(match=f"{self._make_key(prefix)}*", count=500))
            if not keys:
                return []
            values = self._redis.mget(keys)
        except redis.RedisError as e:
            raise self._failed("scan", e)

        # a key can vanish between SCAN and MGET
        return [(k[strip:], v) for k, v in zip(keys, values) if v is not None]

    def health_check(self) -> Dict[str, Any]:
        try:
            start_time = time.perf_counter()
            self._redis.ping()
            latency_ms = (time.perf_counter() - start_time) * 1000
            return {"healthy": True, "backend": "redis", "latency_ms": round(latency_ms, 2), **self._stats}
        except redis.RedisError as e:
            return {"healthy": False, "backend": "redis", "error": str(e), **self._stats}


def create_store(backend: str, redis_url: str = "", key_prefix: str = "natal") -> RecordStore:
    """Build the configured record store ("memory" or "redis")."""
    if backend == "redis":
        logger.info(f"Using Redis record store: {redis_url}")
        return RedisRecordStore(redis_url, key_prefix=key_prefix)
    logger.warning("Using in-memory record store; rate limits and cached charts are lost on restart")
    return MemoryRecordStore()
