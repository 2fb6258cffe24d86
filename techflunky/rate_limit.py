from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from techflunky.config import env_int
from techflunky.runtime_profile import true_stack_required
from techflunky.tenancy import TenantContext

logger = logging.getLogger(__name__)

ANONYMOUS_KEY = "anonymous"


@dataclass(frozen=True)
class TenantRateLimit:
    requests: int
    window_s: int


# operators get the largest budget, buyers (and anonymous callers) the smallest
DEFAULT_RATE_LIMITS: dict[str, TenantRateLimit] = {
    "operator": TenantRateLimit(requests=5000, window_s=3600),
    "seller": TenantRateLimit(requests=1000, window_s=3600),
    "buyer": TenantRateLimit(requests=500, window_s=3600),
}


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after_s: int


def rate_limits_from_env(environ: Mapping[str, str] | None = None) -> dict[str, TenantRateLimit]:
    env = os.environ if environ is None else environ
    limits: dict[str, TenantRateLimit] = {}
    for role, default in DEFAULT_RATE_LIMITS.items():
        window = env_int(env, "TF_RATE_LIMIT_WINDOW_S", default=default.window_s, minimum=1)
        requests = env_int(env, f"TF_RATE_LIMIT_{role.upper()}_REQUESTS", default=default.requests, minimum=1)
        limits[role] = TenantRateLimit(requests=requests, window_s=window)
    return limits


def _bucket(tenant: TenantContext | None, limits: Mapping[str, TenantRateLimit]) -> tuple[str, TenantRateLimit]:
    if tenant is None:
        return ANONYMOUS_KEY, limits["buyer"]
    return tenant.id, limits.get(tenant.role, limits["buyer"])


class InMemoryRateLimiter:
    """Fixed-window request counter per tenant id."""

    def __init__(
        self,
        limits: Mapping[str, TenantRateLimit] | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._limits = dict(DEFAULT_RATE_LIMITS if limits is None else limits)
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: dict[str, tuple[int, int]] = {}

    def check(self, tenant: TenantContext | None) -> RateLimitDecision:
        key, limit = _bucket(tenant, self._limits)
        now = int(self._clock())
        window_start = now - (now % limit.window_s)
        retry_after = max(1, window_start + limit.window_s - now)
        with self._lock:
            started, count = self._windows.get(key, (window_start, 0))
            if started != window_start:
                started, count = window_start, 0
            if count >= limit.requests:
                return RateLimitDecision(allowed=False, limit=limit.requests, remaining=0, retry_after_s=retry_after)
            count += 1
            self._windows[key] = (started, count)
        return RateLimitDecision(
            allowed=True,
            limit=limit.requests,
            remaining=limit.requests - count,
            retry_after_s=0,
        )

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()


def _import_redis() -> Any:
    try:
        import redis  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis is required for TF_RATE_LIMIT_BACKEND=redis; install redis>=5") from exc
    return redis


class RedisRateLimiter:
    """Redis fixed-window counter shared by every API worker."""

    def __init__(
        self,
        *,
        dsn: str,
        limits: Mapping[str, TenantRateLimit] | None = None,
        namespace: str = "tf",
        client: Any = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if client is None:
            if not dsn.strip():
                raise ValueError("REDIS_DSN must be provided for redis rate limit backend")
            redis = _import_redis()
            client = redis.Redis.from_url(dsn.strip(), decode_responses=True)
        self._client = client
        self._limits = dict(DEFAULT_RATE_LIMITS if limits is None else limits)
        self._namespace = namespace.strip() or "tf"
        self._clock = clock

    def _window_key(self, *, key: str, window_start: int) -> str:
        return f"{self._namespace}:rate_limit:{key}:{window_start}"

    def check(self, tenant: TenantContext | None) -> RateLimitDecision:
        key, limit = _bucket(tenant, self._limits)
        now = int(self._clock())
        window_start = now - (now % limit.window_s)
        retry_after = max(1, window_start + limit.window_s - now)
        redis_key = self._window_key(key=key, window_start=window_start)
        try:
            pipe = self._client.pipeline()
            pipe.incr(redis_key)
            pipe.expire(redis_key, limit.window_s)
            count = int(pipe.execute()[0])
        except Exception as exc:
            # a broken limiter must not take the marketplace down with it
            logger.warning("rate_limit_backend_unavailable key=%s error=%s", key, type(exc).__name__)
            return RateLimitDecision(allowed=True, limit=limit.requests, remaining=limit.requests, retry_after_s=0)
        if count > limit.requests:
            return RateLimitDecision(allowed=False, limit=limit.requests, remaining=0, retry_after_s=retry_after)
        return RateLimitDecision(
            allowed=True,
            limit=limit.requests,
            remaining=limit.requests - count,
            retry_after_s=0,
        )


def create_rate_limiter_from_env(
    environ: Mapping[str, str] | None = None,
) -> InMemoryRateLimiter | RedisRateLimiter:
    env = os.environ if environ is None else environ
    backend = env.get("TF_RATE_LIMIT_BACKEND", "memory").strip().lower() or "memory"
    limits = rate_limits_from_env(env)
    if true_stack_required(env) and backend != "redis":
        raise RuntimeError("TF_RATE_LIMIT_BACKEND must be redis when TF_REQUIRE_TRUESTACK=true")
    if backend == "memory":
        return InMemoryRateLimiter(limits)
    if backend == "redis":
        return RedisRateLimiter(
            dsn=env.get("REDIS_DSN", ""),
            limits=limits,
            namespace=env.get("TF_RATE_LIMIT_NAMESPACE", "tf"),
        )
    raise RuntimeError(f"unsupported rate limit backend: {backend}")
