import pathlib
import sys
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from techflunky.main import create_app
from techflunky.payments import InMemoryPaymentAdapter
from techflunky.rate_limit import InMemoryRateLimiter
from techflunky.repositories import InMemoryEscrowRepository, MarketplaceDatabase
from techflunky.services import Services

JWT_SECRET = "jwt_test_secret"


def issue_token(*, tenant_id: str, role: str | None = None, secret: str = JWT_SECRET, ttl_minutes: int = 30) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": f"user_{tenant_id}",
        "tenant_id": tenant_id,
        "exp": int((now + timedelta(minutes=ttl_minutes)).timestamp()),
        "iat": int(now.timestamp()),
        "iss": "test-issuer",
        "aud": "test-audience",
    }
    if role:
        payload["tenant_role"] = role
    return jwt.encode(payload, secret, algorithm="HS256")


class AuthenticatedClient:
    """Signs a token for whichever tenant the ``x-tenant-id`` header names.

    Requests without that header go out without a token and are anonymous.
    """

    def __init__(self, client: TestClient, *, jwt_secret: str):
        self._client = client
        self._jwt_secret = jwt_secret

    def request(self, method: str, url: str, **kwargs):
        headers = dict(kwargs.pop("headers", {}) or {})
        tenant_id = headers.get("x-tenant-id")
        if url.startswith("/api/v1/") and tenant_id and "Authorization" not in headers:
            token = issue_token(tenant_id=str(tenant_id), secret=self._jwt_secret)
            headers["Authorization"] = f"Bearer {token}"
        return self._client.request(method, url, headers=headers, **kwargs)

    def __getattr__(self, name: str):
        return getattr(self._client, name)

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)


def as_tenant(tenant_id: str, **extra: str) -> dict[str, str]:
    return {"x-tenant-id": tenant_id, **extra}


@pytest.fixture(autouse=True)
def jwt_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("JWT_SHARED_SECRET", JWT_SECRET)
    monkeypatch.setenv("JWT_ISSUER", "test-issuer")
    monkeypatch.setenv("JWT_AUDIENCE", "test-audience")
    monkeypatch.setenv("JWT_REQUIRED_CLAIMS", "tenant_id,sub,exp")
    monkeypatch.setenv("TF_STORE_BACKEND", "memory")
    monkeypatch.setenv("TF_RATE_LIMIT_BACKEND", "memory")
    monkeypatch.delenv("TF_REQUIRE_TRUESTACK", raising=False)
    yield


@pytest.fixture
def services() -> Services:
    built = Services(
        escrows=InMemoryEscrowRepository(),
        marketplace=MarketplaceDatabase(":memory:"),
        payments=InMemoryPaymentAdapter(),
        rate_limiter=InMemoryRateLimiter(),
    )
    yield built
    built.marketplace.close()


@pytest.fixture
def client(services: Services) -> AuthenticatedClient:
    base = TestClient(create_app(services))
    return AuthenticatedClient(base, jwt_secret=JWT_SECRET)


@pytest.fixture
def offer(client: AuthenticatedClient) -> dict:
    """An active listing by seller_1 with a 30000 offer on it from buyer_1."""
    listing = client.post(
        "/api/v1/listings",
        headers=as_tenant("seller_1"),
        json={"title": "Analytics SaaS starter", "price": 30000},
    )
    assert listing.status_code == 201
    created = client.post(
        "/api/v1/offers",
        headers=as_tenant("buyer_1"),
        json={"listing_id": listing.json()["data"]["id"], "amount": 30000},
    )
    assert created.status_code == 201
    return created.json()["data"]
