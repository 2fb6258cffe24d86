from __future__ import annotations

import pytest

from techflunky.rate_limit import (
    DEFAULT_RATE_LIMITS,
    InMemoryRateLimiter,
    RedisRateLimiter,
    TenantRateLimit,
    create_rate_limiter_from_env,
    rate_limits_from_env,
)
from techflunky.tenancy import build_tenant

LIMITS = {
    "operator": TenantRateLimit(requests=3, window_s=60),
    "seller": TenantRateLimit(requests=2, window_s=60),
    "buyer": TenantRateLimit(requests=1, window_s=60),
}


class FakeClock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_memory_limiter_blocks_after_budget_and_reports_retry_after():
    clock = FakeClock(120.0)
    limiter = InMemoryRateLimiter(LIMITS, clock=clock)
    seller = build_tenant("seller_1", "seller")

    first = limiter.check(seller)
    second = limiter.check(seller)
    third = limiter.check(seller)

    assert (first.allowed, first.remaining) == (True, 1)
    assert (second.allowed, second.remaining) == (True, 0)
    assert third.allowed is False
    assert third.limit == 2
    assert third.retry_after_s == 60

    clock.now = 150.0
    assert limiter.check(seller).retry_after_s == 30


def test_memory_limiter_resets_on_next_window():
    clock = FakeClock(0.0)
    limiter = InMemoryRateLimiter(LIMITS, clock=clock)
    buyer = build_tenant("buyer_1", "buyer")

    assert limiter.check(buyer).allowed
    assert not limiter.check(buyer).allowed
    clock.now = 60.0
    assert limiter.check(buyer).allowed


def test_memory_limiter_keeps_tenants_separate():
    limiter = InMemoryRateLimiter(LIMITS, clock=FakeClock(0.0))
    assert limiter.check(build_tenant("buyer_1", "buyer")).allowed
    assert limiter.check(build_tenant("buyer_2", "buyer")).allowed
    assert not limiter.check(build_tenant("buyer_1", "buyer")).allowed


def test_memory_limiter_budgets_by_role():
    limiter = InMemoryRateLimiter(LIMITS, clock=FakeClock(0.0))
    operator = build_tenant("operator_1", "operator")
    decisions = [limiter.check(operator) for _ in range(4)]
    assert [d.allowed for d in decisions] == [True, True, True, False]
    assert decisions[0].limit == 3


def test_anonymous_callers_share_the_buyer_budget():
    limiter = InMemoryRateLimiter(LIMITS, clock=FakeClock(0.0))
    assert limiter.check(None).allowed
    assert not limiter.check(None).allowed
    assert limiter.check(build_tenant("buyer_1", "buyer")).allowed


class FakePipeline:
    def __init__(self, client: "FakeRedisClient") -> None:
        self._client = client
        self._ops: list[tuple[str, str, int | None]] = []

    def incr(self, key: str):
        self._ops.append(("incr", key, None))
        return self

    def expire(self, key: str, seconds: int):
        self._ops.append(("expire", key, seconds))
        return self

    def execute(self):
        results = []
        for op, key, arg in self._ops:
            if op == "incr":
                self._client.counts[key] = self._client.counts.get(key, 0) + 1
                results.append(self._client.counts[key])
            else:
                self._client.expiries[key] = arg
                results.append(True)
        return results


class FakeRedisClient:
    def __init__(self) -> None:
        self.counts: dict[str, int] = {}
        self.expiries: dict[str, int | None] = {}

    def pipeline(self):
        return FakePipeline(self)


class BrokenRedisClient:
    def pipeline(self):
        raise ConnectionError("redis unreachable")


def test_redis_limiter_counts_in_namespaced_window_keys():
    client = FakeRedisClient()
    limiter = RedisRateLimiter(dsn="", limits=LIMITS, namespace="tfx", client=client, clock=FakeClock(125.0))
    seller = build_tenant("seller_1", "seller")

    assert limiter.check(seller).remaining == 1
    assert limiter.check(seller).remaining == 0
    blocked = limiter.check(seller)
    assert blocked.allowed is False
    assert blocked.retry_after_s == 55
    assert client.counts == {"tfx:rate_limit:seller_1:120": 3}
    assert client.expiries == {"tfx:rate_limit:seller_1:120": 60}


def test_redis_limiter_fails_open_when_backend_is_down(caplog):
    limiter = RedisRateLimiter(dsn="", limits=LIMITS, client=BrokenRedisClient(), clock=FakeClock(0.0))
    decision = limiter.check(build_tenant("buyer_1", "buyer"))
    assert decision.allowed is True
    assert "rate_limit_backend_unavailable" in caplog.text


def test_redis_limiter_requires_dsn_without_client():
    with pytest.raises(ValueError, match="REDIS_DSN"):
        RedisRateLimiter(dsn=" ")


def test_rate_limits_from_env_overrides_budgets():
    limits = rate_limits_from_env({"TF_RATE_LIMIT_SELLER_REQUESTS": "10", "TF_RATE_LIMIT_WINDOW_S": "30"})
    assert limits["seller"] == TenantRateLimit(requests=10, window_s=30)
    assert limits["buyer"] == TenantRateLimit(requests=DEFAULT_RATE_LIMITS["buyer"].requests, window_s=30)


def test_rate_limiter_factory_defaults_to_memory():
    assert isinstance(create_rate_limiter_from_env({}), InMemoryRateLimiter)


def test_rate_limiter_factory_rejects_unsupported_backend():
    with pytest.raises(RuntimeError, match="unsupported rate limit backend"):
        create_rate_limiter_from_env({"TF_RATE_LIMIT_BACKEND": "memcached"})


def test_rate_limiter_factory_requires_redis_on_true_stack():
    with pytest.raises(RuntimeError, match="must be redis"):
        create_rate_limiter_from_env({"TF_REQUIRE_TRUESTACK": "true", "TF_RATE_LIMIT_BACKEND": "memory"})


def test_rate_limiter_factory_builds_redis_limiter(monkeypatch):
    class FakeRedisModule:
        class Redis:
            @classmethod
            def from_url(cls, dsn: str, decode_responses: bool = False):
                assert dsn == "redis://localhost:6379/0"
                assert decode_responses is True
                return FakeRedisClient()

    monkeypatch.setattr("techflunky.rate_limit._import_redis", lambda: FakeRedisModule)
    limiter = create_rate_limiter_from_env(
        {"TF_RATE_LIMIT_BACKEND": "redis", "REDIS_DSN": "redis://localhost:6379/0"}
    )
    assert isinstance(limiter, RedisRateLimiter)
    assert limiter.check(build_tenant("seller_1", "seller")).allowed
