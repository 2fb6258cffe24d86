from __future__ import annotations

import re
from typing import Any

from techflunky.tenancy import SCOPE_POLICIES, ScopePolicy


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for PostgreSQL backends; install psycopg[binary]") from exc
    return psycopg


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def policy_using_clause(policy: ScopePolicy) -> str:
    """Translate a tenant scope policy into an RLS ``USING`` expression."""
    branches = ["current_setting('app.tenant_role', true) = 'operator'"]
    if policy.seller is not None:
        seller = policy.seller.replace("{p}", "current_setting('app.seller_id', true)")
        branches.append(f"(current_setting('app.tenant_role', true) = 'seller' AND {seller})")
    if policy.buyer is not None:
        buyer = policy.buyer.replace("{p}", "current_setting('app.buyer_id', true)")
        branches.append(f"(current_setting('app.tenant_role', true) = 'buyer' AND {buyer})")
    if policy.anonymous is not None:
        branches.append(f"(current_setting('app.tenant_role', true) = 'anonymous' AND {policy.anonymous})")
    return " OR ".join(branches)


class PostgresRlsManager:
    """Apply RLS tenant policies on PostgreSQL tables."""

    # tables created by PostgresEscrowRepository.ensure_schema; marketplace tables live in sqlite
    DEFAULT_TABLES: tuple[str, ...] = (
        "escrow_transactions",
        "escrow_milestones",
        "disputes",
        "escrow_ledger",
    )

    def __init__(self, dsn: str, *, tables: list[str] | tuple[str, ...] | None = None) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()
        target_tables = list(self.DEFAULT_TABLES if tables is None else tables)
        if not target_tables:
            raise ValueError("tables must not be empty")
        self._tables = [_validate_identifier(name) for name in target_tables]
        unknown = [name for name in self._tables if name not in SCOPE_POLICIES]
        if unknown:
            raise ValueError(f"no tenant scope policy for tables: {unknown}")

    def statements(self) -> list[str]:
        out: list[str] = []
        for table in self._tables:
            policy = f"{table}_tenant_isolation"
            using = policy_using_clause(SCOPE_POLICIES[table])
            out.append(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
            out.append(f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY")
            out.append(f"DROP POLICY IF EXISTS {policy} ON {table}")
            out.append(f"CREATE POLICY {policy} ON {table} USING ({using}) WITH CHECK ({using})")
        return out

    def apply(self) -> list[str]:
        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                for statement in self.statements():
                    cur.execute(statement)
            conn.commit()
        return list(self._tables)
