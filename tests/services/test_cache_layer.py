"""
Versioned two-tier cache: key derivation, read/write paths, invalidation
triggers and version bumps shared through Redis.
"""

import json

import pytest
from pydantic import ValidationError

from contextrag.services.cache_layer import (
    NAMESPACE_CONTEXT,
    NAMESPACE_EXPANSION,
    CacheLayer,
    InvalidationTrigger,
    normalize_query,
)
from contextrag.shared.config import CacheConfig
from contextrag.shared.errors import ConfigurationError
from contextrag.shared.models import RetrievalFilters


class FakeClock:
    def __init__(self):
        self.now = 1_000_000.0

    def __call__(self):
        return self.now


def l2_config(**overrides):
    return CacheConfig(l2={"enabled": True, "key_prefix": "rag"}, **overrides)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return CacheLayer(CacheConfig(), clock=clock)


class TestKeys:
    def test_key_format(self, cache):
        key = cache.make_key(
            NAMESPACE_CONTEXT,
            "What is AI?",
            filters=RetrievalFilters(user_id="u1", topic_id="t9"),
        )
        prefix, namespace, version, u, user, t, topic, digest = key.split(":")
        assert (prefix, namespace, version) == ("contextrag", "context", "0")
        assert (u, user, t, topic) == ("u", "u1", "t", "t9")
        assert len(digest) == 16

    def test_normalized_query_shares_key(self, cache):
        assert cache.make_key(NAMESPACE_CONTEXT, "What  is AI?") == cache.make_key(
            NAMESPACE_CONTEXT, "  what is ai? "
        )
        assert normalize_query(" A\tB ") == "a b"

    def test_params_filters_and_namespace_change_key(self, cache):
        base = cache.make_key(NAMESPACE_CONTEXT, "q")
        assert cache.make_key(NAMESPACE_CONTEXT, "q", params={"k": 1}) != base
        assert cache.make_key(NAMESPACE_EXPANSION, "q") != base
        assert (
            cache.make_key(NAMESPACE_CONTEXT, "q", filters=RetrievalFilters(document_ids=["d1"]))
            != base
        )
        assert ":u:-:t:-:" in base


class TestReadWrite:
    def test_set_then_get(self, cache):
        key = cache.make_key(NAMESPACE_CONTEXT, "q")
        assert cache.get(key) is None
        assert cache.set(key, {"chunks": []})
        assert cache.get(key) == {"chunks": []}

    def test_entry_expires(self, cache, clock):
        key = cache.make_key(NAMESPACE_CONTEXT, "q")
        cache.set(key, "payload", ttl_seconds=60)
        clock.now += 61
        assert cache.get(key) is None

    def test_version_bump_invalidates(self, cache):
        key = cache.make_key(NAMESPACE_CONTEXT, "q")
        cache.set(key, "payload")
        assert cache.bump_version() == 1
        assert cache.get(key) is None
        assert ":1:" in cache.make_key(NAMESPACE_CONTEXT, "q")

    def test_disabled_cache(self, clock):
        cache = CacheLayer(CacheConfig(enabled=False), clock=clock)
        assert not cache.enabled
        assert not cache.set("k", 1)
        assert cache.get("k") is None

    @pytest.mark.asyncio
    async def test_async_wrappers(self, cache):
        key = cache.make_key(NAMESPACE_CONTEXT, "q")
        assert await cache.aset(key, [1, 2], document_ids=["d1"])
        assert await cache.aget(key) == [1, 2]


class TestRedisTier:
    def test_requires_client(self):
        with pytest.raises(ConfigurationError):
            CacheLayer(l2_config())

    def test_unreachable_redis_fails_fast(self, fake_redis):
        fake_redis.fail = True
        with pytest.raises(ConfigurationError, match="unreachable"):
            CacheLayer(l2_config(), redis_client=fake_redis)

    def test_entries_shared_between_replicas(self, fake_redis, clock):
        a = CacheLayer(l2_config(), redis_client=fake_redis, clock=clock)
        b = CacheLayer(l2_config(), redis_client=fake_redis, clock=clock)

        key = a.make_key(NAMESPACE_CONTEXT, "q")
        a.set(key, {"answer": 42}, ttl_seconds=120, document_ids=["d1"])

        stored = json.loads(fake_redis.store[key])
        assert stored["version"] == 0
        assert stored["payload"] == {"answer": 42}
        assert fake_redis.ttls[key] == 120
        assert fake_redis.sets["rag:tag:doc:d1"] == {key}

        assert b.get(key) == {"answer": 42}
        # Promoted into b's L1
        assert len(b.l1) == 1

    def test_version_bump_seen_by_other_replica(self, fake_redis, clock):
        a = CacheLayer(l2_config(), redis_client=fake_redis, clock=clock)
        b = CacheLayer(l2_config(), redis_client=fake_redis, clock=clock)
        key = a.make_key(NAMESPACE_CONTEXT, "q")
        a.set(key, "payload")
        assert b.get(key) == "payload"

        a.bump_version()
        assert b.current_version() == 1
        assert b.get(key) is None

    def test_version_restored_on_startup(self, fake_redis, clock):
        fake_redis.store["rag:version"] = "7"
        cache = CacheLayer(l2_config(), redis_client=fake_redis, clock=clock)
        assert cache.current_version() == 7

    def test_redis_outage_degrades_to_miss(self, fake_redis, clock):
        cache = CacheLayer(
            l2_config(l1={"enabled": False}), redis_client=fake_redis, clock=clock
        )
        key = cache.make_key(NAMESPACE_CONTEXT, "q")
        fake_redis.fail = True
        assert cache.set(key, "payload") is False
        assert cache.get(key) is None
        assert cache.stats()["l2"]["errors"] >= 2


class TestInvalidation:
    def test_trigger_requires_fields(self):
        with pytest.raises(ValidationError):
            InvalidationTrigger(type="document")
        with pytest.raises(ValidationError):
            InvalidationTrigger(type="topic")
        with pytest.raises(ValidationError):
            InvalidationTrigger(type="time")
        with pytest.raises(ValidationError):
            InvalidationTrigger(type="unknown")
        InvalidationTrigger(type="manual")

    def test_document_trigger(self, fake_redis, clock):
        cache = CacheLayer(l2_config(), redis_client=fake_redis, clock=clock)
        k1 = cache.make_key(NAMESPACE_CONTEXT, "one")
        k2 = cache.make_key(NAMESPACE_CONTEXT, "two")
        cache.set(k1, 1, document_ids=["d1", "d2"])
        cache.set(k2, 2, document_ids=["d3"])

        result = cache.invalidate(InvalidationTrigger(type="document", document_ids=["d2"]))

        assert result.success
        assert (result.l1_count, result.l2_count) == (1, 1)
        assert cache.get(k1) is None
        assert cache.get(k2) == 2

    def test_topic_and_user_triggers(self, cache):
        topic_key = cache.make_key(NAMESPACE_CONTEXT, "q", filters=RetrievalFilters(topic_id="t1"))
        user_key = cache.make_key(NAMESPACE_CONTEXT, "q", filters=RetrievalFilters(user_id="u1"))
        plain_key = cache.make_key(NAMESPACE_CONTEXT, "q")
        for key in (topic_key, user_key, plain_key):
            cache.set(key, key)

        assert cache.invalidate(InvalidationTrigger(type="topic", topic_id="t1")).l1_count == 1
        assert cache.invalidate(InvalidationTrigger(type="user", user_id="u1")).l1_count == 1
        assert cache.get(plain_key) == plain_key

    def test_time_trigger(self, fake_redis, clock):
        cache = CacheLayer(l2_config(), redis_client=fake_redis, clock=clock)
        old = cache.make_key(NAMESPACE_CONTEXT, "old")
        cache.set(old, "old")
        clock.now += 100
        new = cache.make_key(NAMESPACE_CONTEXT, "new")
        cache.set(new, "new")
        clock.now += 20

        result = cache.invalidate(InvalidationTrigger(type="time", max_age_seconds=50))

        assert (result.l1_count, result.l2_count) == (1, 1)
        assert cache.get(old) is None
        assert cache.get(new) == "new"

    def test_manual_trigger_with_version_bump(self, cache):
        context_key = cache.make_key(NAMESPACE_CONTEXT, "q")
        expansion_key = cache.make_key(NAMESPACE_EXPANSION, "q")
        cache.set(context_key, 1)
        cache.set(expansion_key, 2)

        result = cache.invalidate(
            InvalidationTrigger(type="manual", namespace="expansion", bump_version=True, reason="reindex")
        )
        assert result.l1_count == 1
        assert (result.version_before, result.version_after) == (0, 1)
        assert result.to_dict()["reason"] == "reindex"

    def test_clear_keeps_version_key(self, fake_redis, clock):
        cache = CacheLayer(l2_config(), redis_client=fake_redis, clock=clock)
        key = cache.make_key(NAMESPACE_CONTEXT, "q")
        cache.set(key, 1, document_ids=["d1"])

        result = cache.clear(reason="test")

        assert result.trigger_type == "clear_all"
        assert result.l1_count == 1
        assert result.l2_count == 2  # entry + tag set
        assert fake_redis.store == {"rag:version": "1"}
        assert cache.current_version() == 1

    def test_history_and_stats(self, cache):
        cache.invalidate(InvalidationTrigger(type="user", user_id="u1"))
        cache.clear()
        history = cache.get_invalidation_history()
        assert [r.trigger_type for r in history] == ["user", "clear_all"]
        assert cache.get_invalidation_history(limit=1)[0].trigger_type == "clear_all"

        stats = cache.stats()
        assert stats["invalidations"] == 2
        assert stats["version"] == 1
        assert stats["l2"] is None
