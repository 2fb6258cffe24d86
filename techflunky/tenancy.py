"""Tenant-scoped data access.

Every read or write against a shared marketplace table goes through this module:
``resolve_tenant`` derives the caller, ``authorize`` decides whether the caller may
act on a resource type at all, and ``scope_query`` appends the row filter that keeps
one tenant from observing another tenant's rows. Nothing here touches the store.
"""

from __future__ import annotations

import copy
import re
import sqlite3
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from techflunky.errors import AuthorizationError

ROLE_ALIASES: dict[str, str] = {
    "seller": "seller",
    "buyer": "buyer",
    "operator": "operator",
    "platform": "operator",
    "platform-operator": "operator",
    "platform_operator": "operator",
}

ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    "seller": frozenset(
        {
            "seller:read",
            "seller:write",
            "listing:create",
            "listing:read",
            "listing:manage",
            "offer:read",
            "offer:respond",
            "escrow:read",
            "escrow:dispute",
            "message:read",
            "message:write",
        }
    ),
    "buyer": frozenset(
        {
            "buyer:read",
            "listing:read",
            "offer:create",
            "offer:read",
            "escrow:create",
            "escrow:read",
            "escrow:complete",
            "escrow:dispute",
            "escrow:cancel",
            "message:read",
            "message:write",
        }
    ),
}
ROLE_PERMISSIONS["operator"] = frozenset(
    set().union(*ROLE_PERMISSIONS.values())
    | {
        "listing:manage",
        "escrow:complete",
        "escrow:cancel",
        "escrow:resolve",
        "escrow:confirm_funding",
        "operator:read",
    }
)

# resource types that only ever belong to one seller
_SELLER_OWNED_RESOURCES = frozenset({"seller", "listing"})
# resource types that only ever belong to one buyer
_BUYER_OWNED_RESOURCES = frozenset({"buyer"})


@dataclass(frozen=True)
class TenantContext:
    id: str
    role: str
    seller_id: str | None = None
    buyer_id: str | None = None
    permissions: frozenset[str] = field(default_factory=frozenset)

    @property
    def identity(self) -> str:
        """Sub-identifier stored in ownership columns; actor and audit columns store ``id``."""
        return self.seller_id or self.buyer_id or self.id

    @property
    def is_operator(self) -> bool:
        return self.role == "operator"


def build_tenant(tenant_id: str, role: str) -> TenantContext | None:
    tenant_id = tenant_id.strip()
    normalized_role = ROLE_ALIASES.get(role.strip().lower())
    if not tenant_id or normalized_role is None:
        return None
    prefix = f"{normalized_role}_"
    sub_id = tenant_id[len(prefix) :] if tenant_id.startswith(prefix) else tenant_id
    if not sub_id:
        return None
    return TenantContext(
        id=tenant_id,
        role=normalized_role,
        seller_id=sub_id if normalized_role == "seller" else None,
        buyer_id=sub_id if normalized_role == "buyer" else None,
        permissions=ROLE_PERMISSIONS[normalized_role],
    )


def resolve_tenant(headers: Mapping[str, str]) -> TenantContext | None:
    """Build the tenant from ``X-Tenant-ID`` / ``X-Tenant-Type`` headers.

    Missing or unrecognised identity yields ``None`` (anonymous) instead of an error.
    """
    lowered = {str(k).lower(): str(v) for k, v in headers.items()}
    tenant_id = lowered.get("x-tenant-id", "")
    tenant_type = lowered.get("x-tenant-type", "")
    if not tenant_id or not tenant_type:
        return None
    return build_tenant(tenant_id, tenant_type)


def authorize(
    tenant: TenantContext | None,
    resource_type: str,
    action: str = "read",
    resource_id: str | None = None,
) -> bool:
    """Pure permission check on role, resource type and action.

    For owner-keyed resource types (``seller``, ``listing``, ``buyer``) ``resource_id``
    is the owning identity; a seller can only manage rows keyed to itself.
    """
    if tenant is None:
        return False
    if f"{resource_type}:{action}" not in tenant.permissions:
        return False
    if tenant.is_operator:
        return True
    if resource_type in _SELLER_OWNED_RESOURCES and resource_id is not None:
        if resource_type == "listing" and action == "read":
            return True
        return tenant.role == "seller" and resource_id == tenant.seller_id
    if resource_type in _BUYER_OWNED_RESOURCES and resource_id is not None:
        return tenant.role == "buyer" and resource_id == tenant.buyer_id
    return True


def require(
    tenant: TenantContext | None,
    resource_type: str,
    action: str = "read",
    resource_id: str | None = None,
) -> TenantContext:
    if tenant is None:
        raise AuthorizationError(
            f"authentication required for {resource_type}:{action}",
            code="TENANT_REQUIRED",
            http_status=401,
        )
    if not authorize(tenant, resource_type, action, resource_id):
        raise AuthorizationError(f"{tenant.role} may not {action} {resource_type}")
    return tenant


@dataclass(frozen=True)
class ScopePolicy:
    """Row filter for one table.

    ``seller`` / ``buyer`` are SQL predicates where every ``{p}`` is a bound
    placeholder filled with the tenant's own identifier. ``None`` means the role
    may not read the table at all; ``anonymous`` is the filter for public reads.
    """

    seller: str | None
    buyer: str | None
    anonymous: str | None = None


SCOPE_POLICIES: dict[str, ScopePolicy] = {
    "listings": ScopePolicy(seller="seller_id = {p}", buyer="status = 'active'", anonymous="status = 'active'"),
    "business_blueprints": ScopePolicy(
        seller="seller_id = {p}",
        buyer="status = 'active'",
        anonymous="status = 'active'",
    ),
    "offers": ScopePolicy(seller="seller_id = {p}", buyer="buyer_id = {p}"),
    "messages": ScopePolicy(
        seller="offer_id IN (SELECT id FROM offers WHERE seller_id = {p})",
        buyer="offer_id IN (SELECT id FROM offers WHERE buyer_id = {p})",
    ),
    "reviews": ScopePolicy(
        seller="(reviewer_id = {p} OR reviewed_id = {p})",
        buyer="(reviewer_id = {p} OR reviewed_id = {p})",
    ),
    "favorites": ScopePolicy(seller="user_id = {p}", buyer="user_id = {p}"),
    "escrow_transactions": ScopePolicy(seller="seller_id = {p}", buyer="buyer_id = {p}"),
    "escrow_milestones": ScopePolicy(
        seller="escrow_id IN (SELECT id FROM escrow_transactions WHERE seller_id = {p})",
        buyer="escrow_id IN (SELECT id FROM escrow_transactions WHERE buyer_id = {p})",
    ),
    "disputes": ScopePolicy(
        seller="escrow_id IN (SELECT id FROM escrow_transactions WHERE seller_id = {p})",
        buyer="escrow_id IN (SELECT id FROM escrow_transactions WHERE buyer_id = {p})",
    ),
    "escrow_ledger": ScopePolicy(
        seller="escrow_id IN (SELECT id FROM escrow_transactions WHERE seller_id = {p})",
        buyer="escrow_id IN (SELECT id FROM escrow_transactions WHERE buyer_id = {p})",
    ),
    "users": ScopePolicy(seller="id = {p}", buyer="id = {p}"),
}

_PLACEHOLDERS = {"qmark": "?", "format": "%s"}
_WHERE_RE = re.compile(r"\bWHERE\b", re.IGNORECASE)
_TAIL_RE = re.compile(r"\s+(ORDER\s+BY|GROUP\s+BY|LIMIT)\b.*$", re.IGNORECASE | re.DOTALL)
# shapes the WHERE/tail rewrite cannot scope correctly
_UNSCOPABLE_RE = re.compile(r"\bUNION\b|\(\s*SELECT\b|;", re.IGNORECASE)


def _policy_predicate(tenant: TenantContext | None, table: str) -> tuple[str, int]:
    policy = SCOPE_POLICIES.get(table)
    if policy is None:
        raise ValueError(f"no tenant scope policy for table: {table}")
    if tenant is None:
        if policy.anonymous is None:
            raise AuthorizationError(
                f"authentication required to read {table}",
                code="TENANT_REQUIRED",
                http_status=401,
            )
        return policy.anonymous, 0
    predicate = policy.seller if tenant.role == "seller" else policy.buyer
    if predicate is None:
        raise AuthorizationError(f"{tenant.role} may not read {table}")
    return predicate, predicate.count("{p}")


def scope_query(
    tenant: TenantContext | None,
    base_query: str,
    table: str,
    *,
    paramstyle: str = "qmark",
) -> tuple[str, list[Any]]:
    """Return ``base_query`` restricted to rows visible to ``tenant``.

    The returned parameters must be bound before any parameters of the base
    query's own ``WHERE`` clause are appended. Operators are
    unscoped; an anonymous caller on a non-public table is rejected.
    """
    placeholder = _PLACEHOLDERS.get(paramstyle)
    if placeholder is None:
        raise ValueError(f"unsupported paramstyle: {paramstyle}")
    if _UNSCOPABLE_RE.search(base_query):
        raise ValueError(f"base query must be a single SELECT without UNION or subqueries: {table}")
    if tenant is not None and tenant.is_operator:
        if table not in SCOPE_POLICIES:
            raise ValueError(f"no tenant scope policy for table: {table}")
        return base_query, []

    predicate, param_count = _policy_predicate(tenant, table)
    clause = predicate.replace("{p}", placeholder)
    params: list[Any] = [tenant.identity] * param_count if tenant is not None else []

    query = base_query.strip()
    tail = ""
    tail_match = _TAIL_RE.search(query)
    if tail_match:
        tail = query[tail_match.start() :]
        query = query[: tail_match.start()]
    if _WHERE_RE.search(query):
        head, existing = _WHERE_RE.split(query, maxsplit=1)
        # tenant predicate first so its parameters bind ahead of the caller's
        scoped = f"{head.rstrip()} WHERE ({clause}) AND ({existing.strip()})"
    else:
        scoped = f"{query} WHERE {clause}"
    return f"{scoped}{tail}", params


def sanitize_for_tenant(payload: dict[str, Any], tenant: TenantContext | None, resource_type: str) -> dict[str, Any]:
    """Force ownership columns of a write payload to the caller's own identity."""
    sanitized = copy.deepcopy(payload)
    if tenant is None or tenant.is_operator:
        return sanitized
    if resource_type in {"listing", "platform"} and tenant.role == "seller":
        sanitized["seller_id"] = tenant.seller_id
    elif resource_type == "offer":
        if tenant.role == "seller":
            sanitized["seller_id"] = tenant.seller_id
        elif tenant.role == "buyer":
            sanitized["buyer_id"] = tenant.buyer_id
    elif resource_type in {"user", "profile"}:
        sanitized["id"] = tenant.identity
        sanitized["user_id"] = tenant.identity
    return sanitized


class TenantDatabase:
    """sqlite connection wrapper whose table reads are always tenant-scoped."""

    def __init__(self, conn: sqlite3.Connection, tenant: TenantContext | None) -> None:
        self._conn = conn
        self._tenant = tenant

    @property
    def tenant(self) -> TenantContext | None:
        return self._tenant

    def _execute(self, base_query: str, table: str, params: tuple[Any, ...]) -> sqlite3.Cursor:
        query, scope_params = scope_query(self._tenant, base_query, table)
        return self._conn.execute(query, (*scope_params, *params))

    def fetch_all(self, base_query: str, table: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
        rows = self._execute(base_query, table, params).fetchall()
        return [dict(row) for row in rows]

    def fetch_one(self, base_query: str, table: str, params: tuple[Any, ...] = ()) -> dict[str, Any] | None:
        row = self._execute(base_query, table, params).fetchone()
        return dict(row) if row is not None else None
