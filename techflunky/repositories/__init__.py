from techflunky.repositories.escrows import (
    ENGINE_TENANT,
    InMemoryEscrowRepository,
    PostgresEscrowRepository,
    escrow_visible_to,
)
from techflunky.repositories.idempotency import IdempotencyStore
from techflunky.repositories.marketplace import MarketplaceDatabase

__all__ = [
    "ENGINE_TENANT",
    "IdempotencyStore",
    "InMemoryEscrowRepository",
    "MarketplaceDatabase",
    "PostgresEscrowRepository",
    "escrow_visible_to",
]
