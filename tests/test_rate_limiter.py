"""Tests for the token bucket rate limiter, TTL cache and shared instances."""

from app.core.rate_limiter import RateLimiter, SharedInstances, TTLCache, build_cache_key, normalize_query


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_bucket_allows_burst_then_limits():
    clock = FakeClock()
    limiter = RateLimiter(max_tokens=3, refill_per_minute=60, clock=clock)

    assert [limiter.check_limit("t1") for _ in range(4)] == [True, True, True, False]


def test_bucket_refills_over_time():
    clock = FakeClock()
    limiter = RateLimiter(max_tokens=2, refill_per_minute=60, clock=clock)
    limiter.check_limit("t1")
    limiter.check_limit("t1")
    assert not limiter.check_limit("t1")

    clock.now += 1.0  # one token per second
    assert limiter.check_limit("t1")
    assert not limiter.check_limit("t1")


def test_buckets_are_per_key():
    limiter = RateLimiter(max_tokens=1, refill_per_minute=1, clock=FakeClock())
    assert limiter.check_limit("t1")
    assert limiter.check_limit("t2")
    assert not limiter.check_limit("t1")


def test_stats_and_reset():
    limiter = RateLimiter(max_tokens=5, refill_per_minute=5, clock=FakeClock())
    limiter.check_limit("t1")

    stats = limiter.get_stats("t1")
    assert stats["tokens_remaining"] == 4
    assert stats["total_requests"] == 1

    limiter.reset("t1")
    assert limiter.get_stats("t1")["tokens_remaining"] == 5


def test_cache_expires_entries():
    clock = FakeClock()
    cache = TTLCache(default_ttl=10, clock=clock)
    cache.set("k", "v")

    assert cache.get("k") == "v"
    clock.now = 10.5
    assert cache.get("k") is None
    assert len(cache) == 0


def test_cache_evicts_oldest_when_full():
    cache = TTLCache(default_ttl=60, max_size=2, clock=FakeClock())
    cache.set("a", 1)
    cache.set("b", 2)
    cache.set("c", 3)

    assert not cache.has("a")
    assert cache.get("b") == 2
    assert cache.get("c") == 3


def test_cache_cleanup():
    clock = FakeClock()
    cache = TTLCache(default_ttl=5, clock=clock)
    cache.set("short", 1)
    cache.set("long", 2, ttl=100)
    clock.now = 6

    cache.cleanup()

    assert len(cache) == 1
    assert cache.get("long") == 2


def test_cache_key_normalizes_query():
    assert normalize_query("  SaaS   Pricing ") == "saas pricing"
    assert build_cache_key("SaaS  pricing", 5) == build_cache_key("saas pricing", 5)


class Owner:
    pass


def test_shared_instance_built_once_per_owner():
    shared = SharedInstances()
    owner = Owner()
    built = []

    def factory():
        built.append(object())
        return built[-1]

    first = shared.get_or_create(owner, factory)

    assert shared.get_or_create(owner, factory) is first
    assert shared.get_or_create(Owner(), factory) is not first
    assert len(built) == 2


def test_shared_instances_evict_least_recently_used():
    shared = SharedInstances(max_size=2)
    a, b, c = Owner(), Owner(), Owner()
    shared.get_or_create(a, lambda: "a")
    shared.get_or_create(b, lambda: "b")
    shared.get_or_create(a, lambda: "a2")

    shared.get_or_create(c, lambda: "c")

    assert len(shared) == 2
    assert shared.get_or_create(a, lambda: "a3") == "a"
    assert shared.get_or_create(b, lambda: "b2") == "b2"
