from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from techflunky.config import EscrowConfig, StoreConfig
from techflunky.db.postgres import PostgresTxRunner
from techflunky.escrow import EscrowEngine
from techflunky.events import InMemoryReputationLedger, OutboxNotificationSink
from techflunky.payments import InMemoryPaymentAdapter, PaymentAdapter
from techflunky.rate_limit import InMemoryRateLimiter, RedisRateLimiter, create_rate_limiter_from_env
from techflunky.repositories import (
    IdempotencyStore,
    InMemoryEscrowRepository,
    MarketplaceDatabase,
    PostgresEscrowRepository,
)
from techflunky.runtime_profile import true_stack_required

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything a request handler needs, built once per application."""

    escrows: InMemoryEscrowRepository | PostgresEscrowRepository
    marketplace: MarketplaceDatabase
    payments: PaymentAdapter
    rate_limiter: InMemoryRateLimiter | RedisRateLimiter
    escrow_config: EscrowConfig = field(default_factory=EscrowConfig)
    notifications: OutboxNotificationSink = field(default_factory=OutboxNotificationSink)
    reputation: InMemoryReputationLedger = field(default_factory=InMemoryReputationLedger)
    idempotency: IdempotencyStore = field(default_factory=IdempotencyStore)
    engine: EscrowEngine = field(init=False)

    def __post_init__(self) -> None:
        self.engine = EscrowEngine(
            repository=self.escrows,
            payments=self.payments,
            notifications=self.notifications,
            reputation=self.reputation,
            config=self.escrow_config,
        )

    def reset(self) -> None:
        if isinstance(self.escrows, InMemoryEscrowRepository):
            self.escrows.reset()
        self.marketplace.reset()
        self.notifications.reset()
        self.reputation.reset()
        self.idempotency.reset()
        if isinstance(self.rate_limiter, InMemoryRateLimiter):
            self.rate_limiter.reset()


def create_escrow_repository_from_env(
    environ: Mapping[str, str] | None = None,
) -> InMemoryEscrowRepository | PostgresEscrowRepository:
    env = os.environ if environ is None else environ
    cfg = StoreConfig.from_env(env)
    if true_stack_required(env) and cfg.backend != "postgres":
        raise RuntimeError("TF_STORE_BACKEND must be postgres when TF_REQUIRE_TRUESTACK=true")
    if cfg.backend == "memory":
        return InMemoryEscrowRepository()
    if cfg.backend == "postgres":
        if not cfg.postgres_dsn:
            raise RuntimeError("POSTGRES_DSN is required when TF_STORE_BACKEND=postgres")
        repo = PostgresEscrowRepository(tx_runner=PostgresTxRunner(cfg.postgres_dsn))
        repo.ensure_schema()
        return repo
    raise RuntimeError(f"unsupported store backend: {cfg.backend}")


def create_services_from_env(environ: Mapping[str, str] | None = None) -> Services:
    env = os.environ if environ is None else environ
    store_cfg = StoreConfig.from_env(env)
    services = Services(
        escrows=create_escrow_repository_from_env(env),
        marketplace=MarketplaceDatabase(store_cfg.marketplace_sqlite_path),
        payments=InMemoryPaymentAdapter(),
        rate_limiter=create_rate_limiter_from_env(env),
        escrow_config=EscrowConfig.from_env(env),
    )
    logger.info(
        "services_ready store_backend=%s rate_limiter=%s",
        store_cfg.backend,
        type(services.rate_limiter).__name__,
    )
    return services
