from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from techflunky.tenancy import TenantContext

# session settings read by the row-level-security policies
SESSION_SETTINGS: tuple[str, ...] = ("app.tenant_role", "app.seller_id", "app.buyer_id")


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for PostgreSQL backends; install psycopg[binary]") from exc
    return psycopg


def session_values(tenant: TenantContext | None) -> tuple[str, str, str]:
    if tenant is None:
        return ("anonymous", "", "")
    return (tenant.role, tenant.seller_id or "", tenant.buyer_id or "")


class PostgresTxRunner:
    """Run callback logic in one PostgreSQL transaction with tenant session injection."""

    def __init__(self, dsn: str) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()

    @contextmanager
    def transaction(self, *, tenant: TenantContext | None) -> Iterator[Any]:
        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                for name, value in zip(SESSION_SETTINGS, session_values(tenant)):
                    cur.execute("SELECT set_config(%s, %s, true)", (name, value))
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            conn.commit()

    def run_in_tx(
        self,
        *,
        tenant: TenantContext | None,
        fn: Callable[[Any], Any],
    ) -> Any:
        with self.transaction(tenant=tenant) as conn:
            return fn(conn)
