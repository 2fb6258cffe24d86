from __future__ import annotations

from fastapi.testclient import TestClient

from conftest import JWT_SECRET, AuthenticatedClient, as_tenant
from techflunky.main import create_app
from techflunky.payments import InMemoryPaymentAdapter
from techflunky.rate_limit import InMemoryRateLimiter, TenantRateLimit
from techflunky.repositories import InMemoryEscrowRepository, MarketplaceDatabase
from techflunky.services import Services


def _client_with_budget(requests: int) -> tuple[AuthenticatedClient, Services]:
    limits = {role: TenantRateLimit(requests=requests, window_s=3600) for role in ("operator", "seller", "buyer")}
    services = Services(
        escrows=InMemoryEscrowRepository(),
        marketplace=MarketplaceDatabase(":memory:"),
        payments=InMemoryPaymentAdapter(),
        rate_limiter=InMemoryRateLimiter(limits),
    )
    return AuthenticatedClient(TestClient(create_app(services)), jwt_secret=JWT_SECRET), services


def test_exhausted_budget_returns_429_with_retry_after():
    client, services = _client_with_budget(2)
    try:
        first = client.get("/api/v1/listings", headers=as_tenant("buyer_1"))
        assert first.status_code == 200
        assert first.headers["x-ratelimit-limit"] == "2"
        assert first.headers["x-ratelimit-remaining"] == "1"
        assert client.get("/api/v1/listings", headers=as_tenant("buyer_1")).status_code == 200

        blocked = client.get("/api/v1/listings", headers=as_tenant("buyer_1"))
        assert blocked.status_code == 429
        assert blocked.json()["error"]["code"] == "RATE_LIMITED"
        assert blocked.json()["error"]["retryable"] is True
        assert int(blocked.headers["Retry-After"]) >= 1
        assert blocked.headers["x-trace-id"]

        other = client.get("/api/v1/listings", headers=as_tenant("buyer_2"))
        assert other.status_code == 200
    finally:
        services.marketplace.close()


def test_health_endpoints_are_not_metered():
    client, services = _client_with_budget(1)
    try:
        for _ in range(3):
            assert client.get("/api/v1/health").status_code == 200
            assert client.get("/healthz").status_code == 200
    finally:
        services.marketplace.close()
