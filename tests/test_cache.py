import redis

from dayplanner.storage.cache import ScheduleCache


class FakeRedis:
    """Just enough of the redis client for ScheduleCache."""

    def __init__(self):
        self.data = {}

    def get(self, key):
        return self.data.get(key)

    def setex(self, key, ttl, value):
        self.data[key] = value

    def scan_iter(self, match):
        prefix = match.rstrip("*")
        return [k for k in self.data if k.startswith(prefix)]

    def delete(self, *keys):
        for k in keys:
            self.data.pop(k, None)
        return len(keys)

    def ping(self):
        return True


class BrokenRedis:
    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise redis.ConnectionError("connection refused")
        return fail


def make_cache(client):
    cache = ScheduleCache("redis://localhost:6379/15", ttl_seconds=60)
    cache.redis_client = client
    return cache


class TestScheduleCache:
    """Redis-backed memoization of day schedules."""

    def test_round_trip(self):
        cache = make_cache(FakeRedis())
        cache.set("2024-03-04", "abc", {"blocks": [], "score": 0.0})
        assert cache.get("2024-03-04", "abc") == {"blocks": [], "score": 0.0}
        assert cache.get("2024-03-04", "other") is None

    def test_invalidate_day(self):
        """Only the given date's entries are dropped."""
        cache = make_cache(FakeRedis())
        cache.set("2024-03-04", "a", {})
        cache.set("2024-03-04", "b", {})
        cache.set("2024-03-05", "a", {})
        assert cache.invalidate_day("2024-03-04") == 2
        assert cache.get("2024-03-05", "a") == {}

    def test_hash_ignores_key_order(self):
        assert ScheduleCache.hash_inputs({"a": 1, "b": [1, 2]}) == ScheduleCache.hash_inputs({"b": [1, 2], "a": 1})
        assert ScheduleCache.hash_inputs({"a": 1}) != ScheduleCache.hash_inputs({"a": 2})

    def test_unavailable_redis_is_a_miss(self):
        cache = make_cache(BrokenRedis())
        assert cache.get("2024-03-04", "abc") is None
        cache.set("2024-03-04", "abc", {"blocks": []})
        assert cache.invalidate_day("2024-03-04") == 0
        assert not cache.health_check()
