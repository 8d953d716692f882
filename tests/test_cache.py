import fnmatch

from redis import ConnectionError as RedisConnectionError

from cache import CacheService, NullCache


class FakeRedis:
    def __init__(self) -> None:
        self.store: dict[str, bytes] = {}
        self.ttls: dict[str, int] = {}

    def get(self, key):
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self.store[key] = value.encode("utf-8")
        self.ttls[key] = ttl

    def delete(self, *keys):
        for key in keys:
            self.store.pop(key, None)

    def scan_iter(self, match=None):
        return [key for key in list(self.store) if fnmatch.fnmatch(key, match)]


class DownRedis:
    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise RedisConnectionError("connection refused")

        return fail


def test_generate_key_joins_parts() -> None:
    assert CacheService.generate_key("overview", 7, "v5") == "overview:7:v5"


def test_remember_calls_producer_once() -> None:
    client = FakeRedis()
    cache = CacheService(client)
    calls = []

    def produce():
        calls.append(1)
        return {"total": 12.5}

    assert cache.remember("analytics:1:trends", 600, produce) == {"total": 12.5}
    assert cache.remember("analytics:1:trends", 600, produce) == {"total": 12.5}
    assert len(calls) == 1
    assert client.ttls["analytics:1:trends"] == 600


def test_invalidate_user_only_touches_that_user() -> None:
    client = FakeRedis()
    cache = CacheService(client)
    for key in (
        "overview:1:v5",
        "analytics:1:categories",
        "budgets:1:list:all",
        "expenses:1:stats:month",
        "expenses:12:stats:month",
        "overview:2:v5",
    ):
        cache.set(key, {"ok": True})

    assert cache.invalidate_user(1) == 4
    assert sorted(client.store) == ["expenses:12:stats:month", "overview:2:v5"]


def test_unavailable_redis_reads_as_miss() -> None:
    cache = CacheService(DownRedis())

    assert cache.get("overview:1:v5") is None
    assert cache.set("overview:1:v5", {"a": 1}) is False
    assert cache.delete_pattern("overview:1:*") == 0
    assert cache.remember("overview:1:v5", 60, lambda: {"fresh": True}) == {"fresh": True}


def test_corrupt_value_reads_as_miss() -> None:
    client = FakeRedis()
    client.store["overview:1:v5"] = b"not json"
    assert CacheService(client).get("overview:1:v5") is None


def test_null_cache_never_stores() -> None:
    cache = NullCache()
    assert cache.set("overview:1:v5", {"a": 1}) is False
    assert cache.get("overview:1:v5") is None
    assert cache.invalidate_user(1) == 0
