"""
Versioned read-through/write-through cache over L1 (in-process) + L2 (Redis).

Key format:
    {prefix}:{namespace}:{version}:u:{user or -}:t:{topic or -}:{sha256[:16]}

Every entry is stored as ``{key, version, payload, created_at, ttl}`` and is
never served when its version differs from the current global version. The
global version lives in Redis (``{prefix}:version``, INCR) with an in-process
mirror, so a version bump on one replica invalidates every replica.

Invalidation triggers:
- document: keys tagged with the document (``{prefix}:tag:doc:{id}`` sets)
- topic / user: pattern delete on the key segments
- time: entries older than ``max_age_seconds``
- manual: glob pattern within a namespace, optional version bump
- clear(): everything except the version key, then a version bump

Cache failures never fail a request: reads degrade to misses, writes and
invalidations are logged and reported in the InvalidationResult.
"""

import asyncio
import hashlib
import json
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Literal, Optional

import redis
from pydantic import Field, model_validator

from contextrag.shared.cache import L1Cache, L2Cache, iter_entries, tag_keys
from contextrag.shared.config import CacheConfig
from contextrag.shared.errors import ConfigurationError
from contextrag.shared.models import ContextBaseModel, RetrievalFilters
from contextrag.shared.observability import get_logger
from contextrag.shared.observability.metrics import (
    cache_invalidations_total,
    cache_version,
)

logger = get_logger(__name__)

NAMESPACE_CONTEXT = "context"
NAMESPACE_EXPANSION = "expansion"


def normalize_query(query: str) -> str:
    return " ".join((query or "").lower().split())


class InvalidationTrigger(ContextBaseModel):
    """Inbound invalidation event."""

    type: Literal["document", "topic", "user", "time", "manual"]
    user_id: Optional[str] = None
    topic_id: Optional[str] = None
    document_ids: List[str] = Field(default_factory=list)
    max_age_seconds: Optional[int] = Field(default=None, ge=0)
    namespace: Optional[str] = None
    pattern: Optional[str] = None
    bump_version: bool = False
    reason: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def check_required_fields(self):
        required = {
            "document": ("document_ids", self.document_ids),
            "topic": ("topic_id", self.topic_id),
            "user": ("user_id", self.user_id),
            "time": ("max_age_seconds", self.max_age_seconds),
        }
        if self.type in required:
            name, value = required[self.type]
            if value is None or value == []:
                raise ValueError(f"{name} is required for {self.type} invalidation")
        return self


@dataclass
class InvalidationResult:
    trigger_type: str
    l1_count: int = 0
    l2_count: int = 0
    version_before: int = 0
    version_after: int = 0
    success: bool = True
    error: Optional[str] = None
    duration_ms: float = 0.0
    timestamp: float = field(default_factory=time.time)
    reason: str = ""

    @property
    def total_count(self) -> int:
        return self.l1_count + self.l2_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trigger_type": self.trigger_type,
            "l1_count": self.l1_count,
            "l2_count": self.l2_count,
            "total_count": self.total_count,
            "version_before": self.version_before,
            "version_after": self.version_after,
            "success": self.success,
            "error": self.error,
            "duration_ms": round(self.duration_ms, 2),
            "timestamp": self.timestamp,
            "reason": self.reason,
        }


class CacheLayer:
    """
    Two-tier cache with key derivation, TTL and version stamping.

    Args:
        config: Cache configuration
        redis_client: Required when ``config.l2.enabled``
        clock: Wall clock (entry ``created_at`` and time invalidation)

    Raises:
        ConfigurationError: L2 enabled without a reachable Redis
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        redis_client: Optional[redis.Redis] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or CacheConfig()
        self.prefix = self.config.l2.key_prefix
        self.version_key = f"{self.prefix}:version"
        self._clock = clock
        self._lock = threading.Lock()
        self._history: deque = deque(maxlen=self.config.invalidation.history_size)

        self.l1: Optional[L1Cache] = None
        if self.config.l1.enabled:
            self.l1 = L1Cache(
                max_size=self.config.l1.max_size,
                ttl_seconds=self.config.l1.ttl_seconds,
                clock=clock,
            )

        self.l2: Optional[L2Cache] = None
        if self.config.l2.enabled:
            if redis_client is None:
                raise ConfigurationError("cache.l2.enabled requires a Redis client")
            l2 = L2Cache(
                redis_client,
                ttl_seconds=self.config.l2.ttl_seconds,
                scan_count=self.config.invalidation.scan_count,
            )
            try:
                l2.ping()
            except redis.RedisError as e:
                raise ConfigurationError(f"Redis cache store unreachable: {e}") from e
            self.l2 = l2

        self._version = 0
        if self.l2 is not None:
            self._version = self.l2.get_int(self.version_key) or 0
        cache_version.set(self._version)

        logger.info(
            "cache_layer_initialized",
            enabled=self.config.enabled,
            l1=self.l1 is not None,
            l2=self.l2 is not None,
            version=self._version,
        )

    @property
    def enabled(self) -> bool:
        return self.config.enabled and (self.l1 is not None or self.l2 is not None)

    # ------------------------------------------------------------------
    # Versioning
    # ------------------------------------------------------------------

    def current_version(self) -> int:
        """Global version (refreshed from Redis when L2 is enabled)."""
        if self.l2 is not None:
            remote = self.l2.get_int(self.version_key)
            if remote is not None:
                with self._lock:
                    self._version = remote
        cache_version.set(self._version)
        return self._version

    def bump_version(self) -> int:
        """Increment the global version; every existing entry becomes a miss."""
        new_version = self.l2.incr(self.version_key) if self.l2 is not None else None
        with self._lock:
            self._version = new_version if new_version is not None else self._version + 1
            version = self._version
        cache_version.set(version)
        logger.info("cache_version_bumped", version=version)
        return version

    # ------------------------------------------------------------------
    # Keys and entries
    # ------------------------------------------------------------------

    def make_key(
        self,
        namespace: str,
        query: str,
        params: Optional[Dict[str, Any]] = None,
        filters: Optional[RetrievalFilters] = None,
        version: Optional[int] = None,
    ) -> str:
        """Deterministic key for (normalized query, filters, params, version)."""
        filters = filters or RetrievalFilters()
        material = json.dumps(
            {
                "query": normalize_query(query),
                "filters": filters.to_provider_filters(),
                "params": params or {},
            },
            sort_keys=True,
            default=str,
        )
        digest = hashlib.sha256(material.encode("utf-8")).hexdigest()[:16]
        version = self.current_version() if version is None else version
        return (
            f"{self.prefix}:{namespace}:{version}"
            f":u:{filters.user_id or '-'}:t:{filters.topic_id or '-'}:{digest}"
        )

    def _is_reserved(self, key: str) -> bool:
        return key == self.version_key or key.startswith(f"{self.prefix}:tag:")

    def _valid(self, entry: Any, version: int) -> bool:
        if not isinstance(entry, dict) or "payload" not in entry:
            return False
        if entry.get("version") != version:
            return False
        created_at = entry.get("created_at", 0)
        return self._clock() <= created_at + entry.get("ttl", 0)

    def get(self, key: str) -> Optional[Any]:
        """Payload for ``key``, or None on miss, version mismatch or store error."""
        if not self.enabled:
            return None
        try:
            version = self.current_version()
            entry = self.l1.get(key) if self.l1 is not None else None
            if entry is not None and self._valid(entry, version):
                return entry["payload"]

            if self.l2 is None:
                return None
            entry = self.l2.get(key)
            if entry is None or not self._valid(entry, version):
                return None
            if self.l1 is not None:
                remaining = int(entry["created_at"] + entry["ttl"] - self._clock())
                if remaining > 0:
                    self.l1.put(key, entry, ttl_seconds=remaining, tags=self._tags_of(entry))
            return entry["payload"]
        except Exception as e:
            logger.warning("cache_read_failed", key=key, error=str(e))
            return None

    @staticmethod
    def _tags_of(entry: Dict[str, Any]) -> List[str]:
        return list(entry.get("tags") or [])

    def set(
        self,
        key: str,
        payload: Any,
        *,
        ttl_seconds: Optional[int] = None,
        document_ids: Iterable[str] = (),
    ) -> bool:
        """
        Store ``payload`` under ``key`` stamped with the current version.

        ``document_ids`` tag the entry for document invalidation.
        """
        if not self.enabled:
            return False
        ttl = ttl_seconds or self.config.context_ttl_seconds
        tags = tag_keys(self.prefix, document_ids)
        entry = {
            "key": key,
            "version": self._version,
            "payload": payload,
            "created_at": self._clock(),
            "ttl": ttl,
            "tags": tags,
        }
        try:
            if self.l1 is not None:
                self.l1.put(key, entry, ttl_seconds=ttl, tags=tags)
            if self.l2 is not None:
                return self.l2.put(key, entry, ttl_seconds=ttl, tags=tags)
            return True
        except Exception as e:
            logger.warning("cache_write_failed", key=key, error=str(e))
            return False

    async def aget(self, key: str) -> Optional[Any]:
        return await asyncio.to_thread(self.get, key)

    async def aset(
        self,
        key: str,
        payload: Any,
        *,
        ttl_seconds: Optional[int] = None,
        document_ids: Iterable[str] = (),
    ) -> bool:
        return await asyncio.to_thread(
            self.set, key, payload, ttl_seconds=ttl_seconds, document_ids=document_ids
        )

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def _delete_pattern(self, pattern: str) -> tuple:
        l1_count = self.l1.invalidate_pattern(pattern) if self.l1 is not None else 0
        l2_count = (
            self.l2.invalidate_pattern(pattern, exclude=self._is_reserved)
            if self.l2 is not None
            else 0
        )
        return l1_count, l2_count

    def _invalidate_document(self, trigger: InvalidationTrigger) -> tuple:
        l1_count = l2_count = 0
        for tag in tag_keys(self.prefix, trigger.document_ids):
            if self.l1 is not None:
                l1_count += self.l1.invalidate_tag(tag)
            if self.l2 is not None:
                l2_count += self.l2.invalidate_tag(tag)
        return l1_count, l2_count

    def _invalidate_topic(self, trigger: InvalidationTrigger) -> tuple:
        return self._delete_pattern(f"{self.prefix}:*:t:{trigger.topic_id}:*")

    def _invalidate_user(self, trigger: InvalidationTrigger) -> tuple:
        return self._delete_pattern(f"{self.prefix}:*:u:{trigger.user_id}:*")

    def _invalidate_time(self, trigger: InvalidationTrigger) -> tuple:
        cutoff = self._clock() - trigger.max_age_seconds

        def too_old(entry: Any) -> bool:
            return isinstance(entry, dict) and entry.get("created_at", 0) < cutoff

        l1_count = (
            self.l1.invalidate_where(lambda _key, entry: too_old(entry))
            if self.l1 is not None
            else 0
        )
        l2_count = 0
        if self.l2 is not None:
            doomed = [
                key
                for key, entry in iter_entries(self.l2, f"{self.prefix}:*", self._is_reserved)
                if too_old(entry)
            ]
            l2_count = self.l2.delete(*doomed)
        return l1_count, l2_count

    def _invalidate_manual(self, trigger: InvalidationTrigger) -> tuple:
        namespace = trigger.namespace or "*"
        return self._delete_pattern(f"{self.prefix}:{namespace}:{trigger.pattern or '*'}")

    def invalidate(self, trigger: InvalidationTrigger) -> InvalidationResult:
        """Apply one invalidation trigger; never raises."""
        handlers = {
            "document": self._invalidate_document,
            "topic": self._invalidate_topic,
            "user": self._invalidate_user,
            "time": self._invalidate_time,
            "manual": self._invalidate_manual,
        }
        start = time.monotonic()
        result = InvalidationResult(
            trigger_type=trigger.type,
            version_before=self._version,
            reason=trigger.reason,
        )
        try:
            result.l1_count, result.l2_count = handlers[trigger.type](trigger)
            if trigger.bump_version:
                self.bump_version()
        except (redis.RedisError, ValueError, TypeError) as e:
            result.success = False
            result.error = str(e)
            logger.error(
                "cache_invalidation_failed",
                trigger_type=trigger.type,
                error=str(e),
                error_type=type(e).__name__,
            )
        return self._finish(result, start)

    def clear(self, reason: str = "") -> InvalidationResult:
        """Delete every entry (the version key survives), then bump the version."""
        start = time.monotonic()
        result = InvalidationResult(
            trigger_type="clear_all", version_before=self._version, reason=reason
        )
        try:
            result.l1_count = self.l1.clear() if self.l1 is not None else 0
            if self.l2 is not None:
                result.l2_count = self.l2.invalidate_pattern(
                    f"{self.prefix}:*", exclude=lambda key: key == self.version_key
                )
            self.bump_version()
        except redis.RedisError as e:
            result.success = False
            result.error = str(e)
            logger.error("cache_clear_failed", error=str(e))
        return self._finish(result, start)

    def _finish(self, result: InvalidationResult, start: float) -> InvalidationResult:
        result.version_after = self._version
        result.duration_ms = (time.monotonic() - start) * 1000
        with self._lock:
            self._history.append(result)
        cache_invalidations_total.labels(
            trigger_type=result.trigger_type,
            result="success" if result.success else "failure",
        ).inc()
        logger.info(
            "cache_invalidated",
            trigger_type=result.trigger_type,
            l1_count=result.l1_count,
            l2_count=result.l2_count,
            version_before=result.version_before,
            version_after=result.version_after,
            success=result.success,
        )
        return result

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def get_invalidation_history(self, limit: int = 100) -> List[InvalidationResult]:
        with self._lock:
            items = list(self._history)
        return items[-limit:] if limit > 0 else []

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            invalidations = len(self._history)
        return {
            "enabled": self.enabled,
            "version": self._version,
            "l1": self.l1.stats() if self.l1 is not None else None,
            "l2": self.l2.stats() if self.l2 is not None else None,
            "invalidations": invalidations,
        }
