"""
L1 (in-process) + L2 (Redis) cache stores.

These are plain key/value stores with TTLs and document tags. Key derivation,
version stamping and invalidation policy live in
contextrag.services.cache_layer.CacheLayer.

Store failures never propagate: they are logged, counted and reported to the
caller as a miss (reads) or a no-op (writes).
"""

import fnmatch
import json
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple

import redis

from .observability import get_logger
from .observability.metrics import cache_hit_rate, cache_operations_total

logger = get_logger(__name__)


def _decode(value: Any) -> Any:
    # Handle both bytes and str (depends on decode_responses setting)
    return value.decode() if isinstance(value, bytes) else value


class L1Cache:
    """Thread-safe in-process LRU cache with TTL and tag index."""

    def __init__(
        self,
        max_size: int = 1000,
        ttl_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ):
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._cache: "OrderedDict[str, Tuple[Any, float]]" = OrderedDict()
        self._tags: Dict[str, Set[str]] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

        cache_hit_rate.labels(layer="l1").set(0.0)

    def get(self, key: str) -> Optional[Any]:
        """Get value from cache if present and not expired."""
        with self._lock:
            item = self._cache.get(key)
            if item is None:
                self._misses += 1
                result = None
            else:
                value, expiry = item
                if self._clock() > expiry:
                    self._remove(key)
                    self._misses += 1
                    result = None
                else:
                    self._cache.move_to_end(key)
                    self._hits += 1
                    result = value
            self._record_metrics("hit" if result is not None else "miss")
            return result

    def _record_metrics(self, result: str) -> None:
        cache_operations_total.labels(operation="get", layer="l1", result=result).inc()
        total = self._hits + self._misses
        if total > 0:
            cache_hit_rate.labels(layer="l1").set(self._hits / total)

    def put(
        self,
        key: str,
        value: Any,
        ttl_seconds: Optional[int] = None,
        tags: Iterable[str] = (),
    ) -> None:
        """Put value in cache with TTL (the smaller of ``ttl_seconds`` and the L1 TTL)."""
        ttl = self.ttl_seconds if ttl_seconds is None else min(ttl_seconds, self.ttl_seconds)
        expiry = self._clock() + ttl
        with self._lock:
            if key in self._cache:
                self._cache[key] = (value, expiry)
                self._cache.move_to_end(key)
            else:
                if len(self._cache) >= self.max_size:
                    oldest, _ = self._cache.popitem(last=False)
                    self._untag(oldest)
                self._cache[key] = (value, expiry)
            for tag in tags:
                self._tags.setdefault(tag, set()).add(key)
        cache_operations_total.labels(operation="set", layer="l1", result="ok").inc()

    def _untag(self, key: str) -> None:
        # Caller holds the lock
        for tag in list(self._tags):
            members = self._tags[tag]
            members.discard(key)
            if not members:
                del self._tags[tag]

    def _remove(self, key: str) -> bool:
        # Caller holds the lock
        if key not in self._cache:
            return False
        del self._cache[key]
        self._untag(key)
        return True

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._remove(key)

    def invalidate_where(self, predicate: Callable[[str, Any], bool]) -> int:
        """Remove every entry for which ``predicate(key, value)`` is true."""
        with self._lock:
            doomed = [k for k, (v, _) in self._cache.items() if predicate(k, v)]
            for key in doomed:
                self._remove(key)
            return len(doomed)

    def invalidate_pattern(self, pattern: str) -> int:
        """Remove keys matching a glob pattern (same syntax as Redis MATCH)."""
        return self.invalidate_where(lambda key, _: fnmatch.fnmatchcase(key, pattern))

    def invalidate_tag(self, tag: str) -> int:
        with self._lock:
            keys = self._tags.pop(tag, set())
            return sum(1 for key in keys if self._remove(key))

    def clear(self) -> int:
        with self._lock:
            count = len(self._cache)
            self._cache.clear()
            self._tags.clear()
            return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": self._hits / total if total > 0 else 0.0,
                "size": len(self._cache),
                "max_size": self.max_size,
                "tags": len(self._tags),
            }


class L2Cache:
    """Redis-backed cache. Values are JSON documents stored with SETEX."""

    def __init__(self, redis_client: redis.Redis, ttl_seconds: int = 3600, scan_count: int = 100):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds
        self.scan_count = scan_count
        self._hits = 0
        self._misses = 0
        self._errors = 0

        cache_hit_rate.labels(layer="l2").set(0.0)

    def ping(self) -> bool:
        """Raises redis.RedisError when the server is unreachable."""
        return bool(self.redis.ping())

    def _record_error(self, operation: str, error: Exception, **fields: Any) -> None:
        self._errors += 1
        cache_operations_total.labels(operation=operation, layer="l2", result="error").inc()
        logger.warning(
            "l2_cache_error",
            operation=operation,
            error=str(error),
            error_type=type(error).__name__,
            **fields,
        )

    def _record_metrics(self, result: str) -> None:
        cache_operations_total.labels(operation="get", layer="l2", result=result).inc()
        total = self._hits + self._misses
        if total > 0:
            cache_hit_rate.labels(layer="l2").set(self._hits / total)

    def get(self, key: str) -> Optional[Any]:
        try:
            raw = self.redis.get(key)
        except redis.RedisError as e:
            self._misses += 1
            self._record_error("get", e, key=key)
            return None
        if raw is None:
            self._misses += 1
            self._record_metrics("miss")
            return None
        try:
            value = json.loads(_decode(raw))
        except ValueError as e:
            self._misses += 1
            self._record_error("decode", e, key=key)
            return None
        self._hits += 1
        self._record_metrics("hit")
        return value

    def put(
        self,
        key: str,
        value: Any,
        ttl_seconds: Optional[int] = None,
        tags: Iterable[str] = (),
    ) -> bool:
        """SETEX the value and add the key to each tag set."""
        ttl = ttl_seconds or self.ttl_seconds
        try:
            pipe = self.redis.pipeline()
            pipe.setex(key, ttl, json.dumps(value))
            for tag in tags:
                pipe.sadd(tag, key)
                pipe.expire(tag, ttl)
            pipe.execute()
        except (redis.RedisError, TypeError) as e:
            self._record_error("set", e, key=key)
            return False
        cache_operations_total.labels(operation="set", layer="l2", result="ok").inc()
        return True

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return int(self.redis.delete(*keys))
        except redis.RedisError as e:
            self._record_error("delete", e, count=len(keys))
            return 0

    def scan_keys(self, pattern: str) -> Iterator[str]:
        """Iterate keys matching ``pattern`` with SCAN (never KEYS)."""
        cursor = 0
        while True:
            cursor, keys = self.redis.scan(cursor, match=pattern, count=self.scan_count)
            for key in keys:
                yield _decode(key)
            if int(cursor) == 0:
                break

    def invalidate_pattern(
        self, pattern: str, exclude: Callable[[str], bool] = lambda key: False
    ) -> int:
        try:
            keys = [k for k in self.scan_keys(pattern) if not exclude(k)]
        except redis.RedisError as e:
            self._record_error("scan", e, pattern=pattern)
            return 0
        count = 0
        # Delete in batches to keep each command bounded
        for start in range(0, len(keys), self.scan_count):
            count += self.delete(*keys[start : start + self.scan_count])
        return count

    def invalidate_tag(self, tag: str) -> int:
        """Delete every key in the tag set, then the tag set itself."""
        try:
            members = [_decode(m) for m in self.redis.smembers(tag)]
        except redis.RedisError as e:
            self._record_error("smembers", e, tag=tag)
            return 0
        count = self.delete(*members) if members else 0
        self.delete(tag)
        return count

    def get_int(self, key: str) -> Optional[int]:
        try:
            raw = self.redis.get(key)
        except redis.RedisError as e:
            self._record_error("get", e, key=key)
            return None
        return 0 if raw is None else int(_decode(raw))

    def incr(self, key: str) -> Optional[int]:
        try:
            return int(self.redis.incr(key))
        except redis.RedisError as e:
            self._record_error("incr", e, key=key)
            return None

    def stats(self) -> Dict[str, Any]:
        total = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "errors": self._errors,
            "hit_rate": self._hits / total if total > 0 else 0.0,
        }


def iter_entries(
    l2: L2Cache, pattern: str, exclude: Callable[[str], bool]
) -> Iterator[Tuple[str, Dict[str, Any]]]:
    """Yield (key, entry) for stored entries matching ``pattern``."""
    for key in l2.scan_keys(pattern):
        if exclude(key):
            continue
        entry = l2.get(key)
        if isinstance(entry, dict):
            yield key, entry


def tag_keys(prefix: str, document_ids: Iterable[str]) -> List[str]:
    return [f"{prefix}:tag:doc:{doc_id}" for doc_id in sorted(set(document_ids))]
