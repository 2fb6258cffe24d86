from __future__ import annotations

import sqlite3

import pytest

from techflunky.errors import AuthorizationError
from techflunky.tenancy import (
    TenantDatabase,
    authorize,
    build_tenant,
    require,
    resolve_tenant,
    sanitize_for_tenant,
    scope_query,
)


def test_build_tenant_strips_role_prefix_into_identity():
    seller = build_tenant("seller_42", "seller")
    assert seller is not None
    assert seller.seller_id == "42"
    assert seller.buyer_id is None
    assert seller.identity == "42"

    buyer = build_tenant("alice", "buyer")
    assert buyer is not None
    assert buyer.buyer_id == "alice"


def test_build_tenant_rejects_unknown_role_and_empty_identity():
    assert build_tenant("x_1", "admin") is None
    assert build_tenant("", "seller") is None
    assert build_tenant("seller_", "seller") is None


def test_resolve_tenant_reads_headers_case_insensitively():
    tenant = resolve_tenant({"X-Tenant-ID": "operator_ops", "X-Tenant-Type": "Platform"})
    assert tenant is not None
    assert tenant.role == "operator"
    assert tenant.is_operator

    assert resolve_tenant({"x-tenant-id": "buyer_1"}) is None
    assert resolve_tenant({}) is None


def test_authorize_follows_role_permissions():
    seller = build_tenant("seller_1", "seller")
    buyer = build_tenant("buyer_1", "buyer")
    operator = build_tenant("operator_1", "operator")

    assert authorize(seller, "listing", "create")
    assert not authorize(buyer, "listing", "create")
    assert authorize(buyer, "escrow", "create")
    assert not authorize(seller, "escrow", "create")
    assert not authorize(seller, "escrow", "resolve")
    assert authorize(operator, "escrow", "resolve")
    assert authorize(operator, "operator", "read")
    assert not authorize(None, "listing", "read")


def test_authorize_checks_owner_for_seller_owned_resources():
    seller = build_tenant("seller_1", "seller")
    buyer = build_tenant("buyer_1", "buyer")

    assert authorize(seller, "listing", "manage", "1")
    assert not authorize(seller, "listing", "manage", "2")
    assert authorize(buyer, "listing", "read", "2")
    assert authorize(build_tenant("operator_1", "operator"), "listing", "manage", "2")


def test_require_distinguishes_anonymous_from_forbidden():
    with pytest.raises(AuthorizationError) as anonymous:
        require(None, "offer", "create")
    assert anonymous.value.code == "TENANT_REQUIRED"
    assert anonymous.value.http_status == 401

    with pytest.raises(AuthorizationError) as forbidden:
        require(build_tenant("seller_1", "seller"), "offer", "create")
    assert forbidden.value.code == "AUTH_FORBIDDEN"
    assert forbidden.value.http_status == 403


def test_scope_query_filters_listings_by_role():
    seller = build_tenant("seller_1", "seller")
    buyer = build_tenant("buyer_1", "buyer")

    assert scope_query(seller, "SELECT * FROM listings", "listings") == (
        "SELECT * FROM listings WHERE seller_id = ?",
        ["1"],
    )
    assert scope_query(buyer, "SELECT * FROM listings", "listings") == (
        "SELECT * FROM listings WHERE status = 'active'",
        [],
    )
    assert scope_query(None, "SELECT * FROM listings", "listings") == (
        "SELECT * FROM listings WHERE status = 'active'",
        [],
    )


def test_scope_query_merges_existing_where_and_keeps_order_by():
    buyer = build_tenant("buyer_7", "buyer")
    query, params = scope_query(
        buyer,
        "SELECT * FROM offers WHERE status = ? ORDER BY created_at DESC",
        "offers",
    )
    assert query == "SELECT * FROM offers WHERE (buyer_id = ?) AND (status = ?) ORDER BY created_at DESC"
    assert params == ["7"]


def test_scope_query_supports_format_paramstyle_and_subselects():
    seller = build_tenant("seller_2", "seller")
    query, params = scope_query(seller, "SELECT * FROM messages", "messages", paramstyle="format")
    assert query == "SELECT * FROM messages WHERE offer_id IN (SELECT id FROM offers WHERE seller_id = %s)"
    assert params == ["2"]


def test_scope_query_binds_identity_once_per_placeholder():
    buyer = build_tenant("buyer_3", "buyer")
    query, params = scope_query(buyer, "SELECT * FROM reviews", "reviews")
    assert query == "SELECT * FROM reviews WHERE (reviewer_id = ? OR reviewed_id = ?)"
    assert params == ["3", "3"]


def test_scope_query_leaves_operator_queries_unscoped():
    operator = build_tenant("operator_1", "operator")
    assert scope_query(operator, "SELECT * FROM offers LIMIT 5", "offers") == ("SELECT * FROM offers LIMIT 5", [])


def test_scope_query_rejects_anonymous_reads_of_private_tables():
    with pytest.raises(AuthorizationError) as exc_info:
        scope_query(None, "SELECT * FROM offers", "offers")
    assert exc_info.value.code == "TENANT_REQUIRED"


def test_scope_query_rejects_unknown_table_and_paramstyle():
    buyer = build_tenant("buyer_1", "buyer")
    with pytest.raises(ValueError, match="no tenant scope policy"):
        scope_query(buyer, "SELECT * FROM secrets", "secrets")
    with pytest.raises(ValueError, match="no tenant scope policy"):
        scope_query(build_tenant("operator_1", "operator"), "SELECT * FROM secrets", "secrets")
    with pytest.raises(ValueError, match="paramstyle"):
        scope_query(buyer, "SELECT * FROM offers", "offers", paramstyle="named")


def test_scope_query_rejects_unions_subqueries_and_stacked_statements():
    buyer = build_tenant("buyer_1", "buyer")
    for query in (
        "SELECT id FROM offers UNION SELECT id FROM offers",
        "SELECT * FROM offers WHERE id IN (SELECT offer_id FROM messages WHERE body = ?)",
        "SELECT * FROM offers; DELETE FROM offers",
    ):
        with pytest.raises(ValueError, match="single SELECT"):
            scope_query(buyer, query, "offers")
    with pytest.raises(ValueError, match="single SELECT"):
        scope_query(build_tenant("operator_1", "operator"), "SELECT * FROM offers union select * FROM offers", "offers")


def test_tenant_database_only_returns_callers_rows():
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    conn.execute("CREATE TABLE offers (id TEXT, seller_id TEXT, buyer_id TEXT, status TEXT)")
    conn.executemany(
        "INSERT INTO offers VALUES (?, ?, ?, ?)",
        [
            ("off_a", "1", "1", "pending"),
            ("off_b", "1", "2", "pending"),
            ("off_c", "2", "2", "accepted"),
        ],
    )

    buyer_two = TenantDatabase(conn, build_tenant("buyer_2", "buyer"))
    rows = buyer_two.fetch_all("SELECT id FROM offers WHERE status = ? ORDER BY id", "offers", ("pending",))
    assert [r["id"] for r in rows] == ["off_b"]

    seller_one = TenantDatabase(conn, build_tenant("seller_1", "seller"))
    assert [r["id"] for r in seller_one.fetch_all("SELECT id FROM offers ORDER BY id", "offers")] == [
        "off_a",
        "off_b",
    ]
    assert seller_one.fetch_one("SELECT id FROM offers WHERE id = ?", "offers", ("off_c",)) is None

    with pytest.raises(AuthorizationError):
        TenantDatabase(conn, None).fetch_all("SELECT id FROM offers", "offers")
    conn.close()


def test_sanitize_for_tenant_overwrites_ownership_fields():
    payload = {"title": "CRM", "seller_id": "someone_else"}
    seller = build_tenant("seller_1", "seller")

    sanitized = sanitize_for_tenant(payload, seller, "listing")
    assert sanitized["seller_id"] == "1"
    assert payload["seller_id"] == "someone_else"

    offer = sanitize_for_tenant({"buyer_id": "spoofed", "amount": 5}, build_tenant("buyer_9", "buyer"), "offer")
    assert offer == {"buyer_id": "9", "amount": 5}

    operator = build_tenant("operator_1", "operator")
    assert sanitize_for_tenant(payload, operator, "listing") == payload
