from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from typing import Any

from techflunky.errors import NotFoundError, ValidationError
from techflunky.models import utcnow
from techflunky.tenancy import TenantContext, TenantDatabase, require, sanitize_for_tenant

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS listings (
        id TEXT PRIMARY KEY,
        seller_id TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        price INTEGER NOT NULL CHECK (price > 0),
        status TEXT NOT NULL DEFAULT 'active',
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS offers (
        id TEXT PRIMARY KEY,
        listing_id TEXT NOT NULL REFERENCES listings(id),
        seller_id TEXT NOT NULL,
        buyer_id TEXT NOT NULL,
        amount INTEGER NOT NULL CHECK (amount > 0),
        message TEXT NOT NULL DEFAULT '',
        status TEXT NOT NULL DEFAULT 'pending',
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        offer_id TEXT NOT NULL REFERENCES offers(id),
        sender_id TEXT NOT NULL,
        body TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
)


class MarketplaceDatabase:
    """Listings, offers and offer messages on sqlite.

    Every read goes through ``TenantDatabase`` so the caller only sees its own rows;
    writes stamp ownership columns from the tenant before inserting.
    """

    def __init__(self, path: str = ":memory:") -> None:
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self.ensure_schema()

    def ensure_schema(self) -> None:
        with self._lock, self._conn:
            for statement in _SCHEMA:
                self._conn.execute(statement)

    def reset(self) -> None:
        with self._lock, self._conn:
            for table in ("messages", "offers", "listings"):
                self._conn.execute(f"DELETE FROM {table}")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _scoped(self, tenant: TenantContext | None) -> TenantDatabase:
        return TenantDatabase(self._conn, tenant)

    def create_listing(self, tenant: TenantContext | None, payload: dict[str, Any]) -> dict[str, Any]:
        require(tenant, "listing", "create")
        row = sanitize_for_tenant(payload, tenant, "listing")
        seller_id = str(row.get("seller_id") or "").strip()
        if not seller_id:
            raise ValidationError("seller_id is required for listings created by operators")
        listing = {
            "id": f"lst_{uuid.uuid4().hex[:12]}",
            "seller_id": seller_id,
            "title": str(row["title"]).strip(),
            "description": str(row.get("description") or ""),
            "price": int(row["price"]),
            "status": str(row.get("status") or "active"),
            "created_at": utcnow().isoformat(),
        }
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO listings (id, seller_id, title, description, price, status, created_at) "
                "VALUES (:id, :seller_id, :title, :description, :price, :status, :created_at)",
                listing,
            )
        logger.info("listing_created listing_id=%s seller_id=%s", listing["id"], seller_id)
        return listing

    def list_listings(self, tenant: TenantContext | None) -> list[dict[str, Any]]:
        with self._lock:
            return self._scoped(tenant).fetch_all("SELECT * FROM listings ORDER BY created_at DESC", "listings")

    def get_listing(self, tenant: TenantContext | None, listing_id: str) -> dict[str, Any] | None:
        with self._lock:
            return self._scoped(tenant).fetch_one("SELECT * FROM listings WHERE id = ?", "listings", (listing_id,))

    def create_offer(self, tenant: TenantContext | None, payload: dict[str, Any]) -> dict[str, Any]:
        require(tenant, "offer", "create")
        row = sanitize_for_tenant(payload, tenant, "offer")
        listing = self.get_listing(tenant, str(row["listing_id"]))
        if listing is None or listing["status"] != "active":
            raise NotFoundError("listing")
        buyer_id = str(row.get("buyer_id") or "").strip()
        if not buyer_id:
            raise ValidationError("buyer_id is required for offers created by operators")
        offer = {
            "id": f"off_{uuid.uuid4().hex[:12]}",
            "listing_id": listing["id"],
            "seller_id": listing["seller_id"],
            "buyer_id": buyer_id,
            "amount": int(row["amount"]),
            "message": str(row.get("message") or ""),
            "status": "pending",
            "created_at": utcnow().isoformat(),
        }
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO offers (id, listing_id, seller_id, buyer_id, amount, message, status, created_at) "
                "VALUES (:id, :listing_id, :seller_id, :buyer_id, :amount, :message, :status, :created_at)",
                offer,
            )
        logger.info("offer_created offer_id=%s listing_id=%s", offer["id"], offer["listing_id"])
        return offer

    def list_offers(self, tenant: TenantContext | None) -> list[dict[str, Any]]:
        require(tenant, "offer", "read")
        with self._lock:
            return self._scoped(tenant).fetch_all("SELECT * FROM offers ORDER BY created_at DESC", "offers")

    def get_offer(self, tenant: TenantContext | None, offer_id: str) -> dict[str, Any] | None:
        require(tenant, "offer", "read")
        with self._lock:
            return self._scoped(tenant).fetch_one("SELECT * FROM offers WHERE id = ?", "offers", (offer_id,))

    def set_offer_status(self, offer_id: str, status: str) -> None:
        with self._lock, self._conn:
            self._conn.execute("UPDATE offers SET status = ? WHERE id = ?", (status, offer_id))

    def add_message(self, tenant: TenantContext | None, *, offer_id: str, body: str) -> dict[str, Any]:
        tenant = require(tenant, "message", "write")
        if self.get_offer(tenant, offer_id) is None:
            raise NotFoundError("offer")
        message = {
            "id": f"msg_{uuid.uuid4().hex[:12]}",
            "offer_id": offer_id,
            "sender_id": tenant.id,
            "body": body,
            "created_at": utcnow().isoformat(),
        }
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO messages (id, offer_id, sender_id, body, created_at) "
                "VALUES (:id, :offer_id, :sender_id, :body, :created_at)",
                message,
            )
        return message

    def list_messages(self, tenant: TenantContext | None, offer_id: str) -> list[dict[str, Any]]:
        require(tenant, "message", "read")
        with self._lock:
            return self._scoped(tenant).fetch_all(
                "SELECT * FROM messages WHERE offer_id = ? ORDER BY created_at",
                "messages",
                (offer_id,),
            )
