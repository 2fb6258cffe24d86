from __future__ import annotations

import json
import re
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any, Protocol

from techflunky.db.postgres import PostgresTxRunner
from techflunky.errors import ConcurrencyError
from techflunky.models import Dispute, EscrowTransaction, EscrowView, LedgerEntry, Milestone
from techflunky.tenancy import TenantContext, build_tenant, scope_query

# engine writes run with operator visibility; callers check party access before invoking the engine
ENGINE_TENANT = build_tenant("operator_escrow_engine", "operator")


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def escrow_visible_to(tenant: TenantContext | None, escrow: EscrowTransaction) -> bool:
    if tenant is None:
        return False
    if tenant.is_operator:
        return True
    if tenant.role == "seller":
        return escrow.seller_id == tenant.seller_id
    if tenant.role == "buyer":
        return escrow.buyer_id == tenant.buyer_id
    return False


class EscrowUnitOfWork(Protocol):
    """Reads and staged writes for one atomic escrow operation."""

    def get_escrow(self, escrow_id: str) -> EscrowTransaction | None: ...

    def find_open_escrow_for_offer(self, offer_id: str) -> EscrowTransaction | None: ...

    def list_milestones(self, escrow_id: str) -> list[Milestone]: ...

    def list_disputes(self, escrow_id: str) -> list[Dispute]: ...

    def add_escrow(self, escrow: EscrowTransaction, milestones: list[Milestone]) -> None: ...

    def save_escrow(self, escrow: EscrowTransaction) -> None: ...

    def save_milestone(self, milestone: Milestone) -> None: ...

    def add_dispute(self, dispute: Dispute) -> None: ...

    def save_dispute(self, dispute: Dispute) -> None: ...

    def append_ledger(self, entry: LedgerEntry) -> None: ...


class InMemoryUnitOfWork:
    def __init__(self, repo: "InMemoryEscrowRepository") -> None:
        self._repo = repo
        self.new_escrows: dict[str, EscrowTransaction] = {}
        self.escrows: dict[str, EscrowTransaction] = {}
        self.milestones: dict[tuple[str, int], Milestone] = {}
        self.disputes: dict[str, Dispute] = {}
        self.ledger: list[LedgerEntry] = []

    def get_escrow(self, escrow_id: str) -> EscrowTransaction | None:
        staged = self.escrows.get(escrow_id) or self.new_escrows.get(escrow_id)
        if staged is not None:
            return staged.copy()
        with self._repo._lock:
            row = self._repo._escrows.get(escrow_id)
            return row.copy() if row is not None else None

    def find_open_escrow_for_offer(self, offer_id: str) -> EscrowTransaction | None:
        with self._repo._lock:
            for row in self._repo._escrows.values():
                if row.offer_id == offer_id and row.status != "cancelled":
                    return row.copy()
        for row in self.new_escrows.values():
            if row.offer_id == offer_id:
                return row.copy()
        return None

    def list_milestones(self, escrow_id: str) -> list[Milestone]:
        with self._repo._lock:
            merged = {m.sequence_number: m for m in self._repo._milestones.get(escrow_id, [])}
        for (staged_escrow_id, seq), milestone in self.milestones.items():
            if staged_escrow_id == escrow_id:
                merged[seq] = milestone
        return [merged[seq].copy() for seq in sorted(merged)]

    def list_disputes(self, escrow_id: str) -> list[Dispute]:
        with self._repo._lock:
            merged = {d.id: d for d in self._repo._disputes.get(escrow_id, [])}
        merged.update({d.id: d for d in self.disputes.values() if d.escrow_id == escrow_id})
        return sorted((d.copy() for d in merged.values()), key=lambda d: d.created_at)

    def add_escrow(self, escrow: EscrowTransaction, milestones: list[Milestone]) -> None:
        self.new_escrows[escrow.id] = escrow.copy()
        for milestone in milestones:
            self.milestones[(escrow.id, milestone.sequence_number)] = milestone.copy()

    def save_escrow(self, escrow: EscrowTransaction) -> None:
        if escrow.id in self.new_escrows:
            self.new_escrows[escrow.id] = escrow.copy()
            return
        self.escrows[escrow.id] = escrow.copy()

    def save_milestone(self, milestone: Milestone) -> None:
        self.milestones[(milestone.escrow_id, milestone.sequence_number)] = milestone.copy()

    def add_dispute(self, dispute: Dispute) -> None:
        self.disputes[dispute.id] = dispute.copy()

    def save_dispute(self, dispute: Dispute) -> None:
        self.disputes[dispute.id] = dispute.copy()

    def append_ledger(self, entry: LedgerEntry) -> None:
        self.ledger.append(entry)


class InMemoryEscrowRepository:
    """Dict-backed escrow store.

    Operations on one escrow are serialized by a per-escrow lock; staged writes
    are applied only when the unit of work exits cleanly.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._escrow_locks: dict[str, threading.Lock] = {}
        self._escrows: dict[str, EscrowTransaction] = {}
        self._milestones: dict[str, list[Milestone]] = {}
        self._disputes: dict[str, list[Dispute]] = {}
        self._ledger: dict[str, list[LedgerEntry]] = {}

    def _lock_for(self, key: str) -> threading.Lock:
        with self._lock:
            return self._escrow_locks.setdefault(key, threading.Lock())

    @contextmanager
    def unit_of_work(self, *, escrow_id: str | None = None, offer_id: str | None = None) -> Iterator[InMemoryUnitOfWork]:
        lock = self._lock_for(f"escrow:{escrow_id}" if escrow_id else f"offer:{offer_id}")
        with lock:
            uow = InMemoryUnitOfWork(self)
            yield uow
            self._commit(uow)

    def _commit(self, uow: InMemoryUnitOfWork) -> None:
        with self._lock:
            for escrow_id in uow.new_escrows:
                if escrow_id in self._escrows:
                    raise ConcurrencyError(escrow_id)
            for escrow in uow.escrows.values():
                current = self._escrows.get(escrow.id)
                if current is None or current.version != escrow.version:
                    raise ConcurrencyError(escrow.id)
            for escrow in uow.new_escrows.values():
                self._escrows[escrow.id] = escrow
                self._milestones.setdefault(escrow.id, [])
            for escrow in uow.escrows.values():
                escrow.version += 1
                self._escrows[escrow.id] = escrow
            for (escrow_id, seq), milestone in uow.milestones.items():
                rows = [m for m in self._milestones.setdefault(escrow_id, []) if m.sequence_number != seq]
                rows.append(milestone)
                self._milestones[escrow_id] = sorted(rows, key=lambda m: m.sequence_number)
            for dispute in uow.disputes.values():
                rows = [d for d in self._disputes.setdefault(dispute.escrow_id, []) if d.id != dispute.id]
                rows.append(dispute)
                self._disputes[dispute.escrow_id] = rows
            for entry in uow.ledger:
                self._ledger.setdefault(entry.escrow_id, []).append(entry)

    def get_view(self, *, escrow_id: str, tenant: TenantContext | None) -> EscrowView | None:
        with self._lock:
            escrow = self._escrows.get(escrow_id)
            if escrow is None or not escrow_visible_to(tenant, escrow):
                return None
            return EscrowView(
                escrow=escrow.copy(),
                milestones=[m.copy() for m in self._milestones.get(escrow_id, [])],
                disputes=[d.copy() for d in self._disputes.get(escrow_id, [])],
                ledger=list(self._ledger.get(escrow_id, [])),
            )

    def find_for_offer(self, *, offer_id: str, tenant: TenantContext | None) -> EscrowView | None:
        with self._lock:
            candidates = [
                e for e in self._escrows.values() if e.offer_id == offer_id and escrow_visible_to(tenant, e)
            ]
        if not candidates:
            return None
        latest = max(candidates, key=lambda e: e.created_at)
        return self.get_view(escrow_id=latest.id, tenant=tenant)

    def list_escrows(self, *, tenant: TenantContext | None) -> list[EscrowTransaction]:
        with self._lock:
            rows = [e.copy() for e in self._escrows.values() if escrow_visible_to(tenant, e)]
        return sorted(rows, key=lambda e: e.created_at, reverse=True)

    def reset(self) -> None:
        with self._lock:
            self._escrow_locks.clear()
            self._escrows.clear()
            self._milestones.clear()
            self._disputes.clear()
            self._ledger.clear()


def _ts(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    return datetime.fromisoformat(str(value))


_ESCROW_COLUMNS = (
    "id, offer_id, seller_id, buyer_id, total_amount, platform_fee_amount, currency, total_milestone_count, "
    "current_milestone_index, status, payment_authorization_id, captured_amount, fee_collected_amount, "
    "cancel_reason, version, created_at, updated_at"
)
_MILESTONE_COLUMNS = (
    "escrow_id, sequence_number, description, amount, deliverables, status, fee_amount, released_amount, "
    "transfer_id, completed_at, completed_by"
)
_DISPUTE_COLUMNS = (
    "id, escrow_id, milestone_sequence_number, initiating_party, dispute_type, description, status, "
    "milestone_prior_status, resolution, resolved_by, resolved_at, created_at"
)
_LEDGER_COLUMNS = (
    "id, escrow_id, kind, gross_amount, fee_amount, net_amount, reference, milestone_sequence_number, created_at"
)


def _escrow_from_row(row: tuple[Any, ...]) -> EscrowTransaction:
    return EscrowTransaction(
        id=row[0],
        offer_id=row[1],
        seller_id=row[2],
        buyer_id=row[3],
        total_amount=int(row[4]),
        platform_fee_amount=int(row[5]),
        currency=row[6],
        total_milestone_count=int(row[7]),
        current_milestone_index=int(row[8]),
        status=row[9],
        payment_authorization_id=row[10] or "",
        captured_amount=int(row[11]),
        fee_collected_amount=int(row[12]),
        cancel_reason=row[13],
        version=int(row[14]),
        created_at=_ts(row[15]),
        updated_at=_ts(row[16]),
    )


def _milestone_from_row(row: tuple[Any, ...]) -> Milestone:
    deliverables = row[4]
    if isinstance(deliverables, str):
        deliverables = json.loads(deliverables or "[]")
    return Milestone(
        escrow_id=row[0],
        sequence_number=int(row[1]),
        description=row[2],
        amount=int(row[3]),
        deliverables=list(deliverables or []),
        status=row[5],
        fee_amount=int(row[6]),
        released_amount=int(row[7]),
        transfer_id=row[8],
        completed_at=_ts(row[9]),
        completed_by=row[10],
    )


def _dispute_from_row(row: tuple[Any, ...]) -> Dispute:
    return Dispute(
        id=row[0],
        escrow_id=row[1],
        milestone_sequence_number=int(row[2]),
        initiating_party=row[3],
        dispute_type=row[4],
        description=row[5],
        status=row[6],
        milestone_prior_status=row[7],
        resolution=row[8],
        resolved_by=row[9],
        resolved_at=_ts(row[10]),
        created_at=_ts(row[11]),
    )


def _ledger_from_row(row: tuple[Any, ...]) -> LedgerEntry:
    return LedgerEntry(
        id=row[0],
        escrow_id=row[1],
        kind=row[2],
        gross_amount=int(row[3]),
        fee_amount=int(row[4]),
        net_amount=int(row[5]),
        reference=row[6],
        milestone_sequence_number=row[7],
        created_at=_ts(row[8]),
    )


class PostgresUnitOfWork:
    """Executes every read and write inside the caller's open transaction."""

    def __init__(self, conn: Any, tables: dict[str, str]) -> None:
        self._conn = conn
        self._t = tables

    def _fetchone(self, sql: str, params: tuple[Any, ...]) -> tuple[Any, ...] | None:
        with self._conn.cursor() as cur:
            cur.execute(sql, params)
            return cur.fetchone()

    def _fetchall(self, sql: str, params: tuple[Any, ...]) -> list[tuple[Any, ...]]:
        with self._conn.cursor() as cur:
            cur.execute(sql, params)
            return list(cur.fetchall() or [])

    def _execute(self, sql: str, params: tuple[Any, ...]) -> int:
        with self._conn.cursor() as cur:
            cur.execute(sql, params)
            return int(cur.rowcount)

    def get_escrow(self, escrow_id: str) -> EscrowTransaction | None:
        # row lock serializes concurrent operations on the same escrow until commit
        row = self._fetchone(
            f"SELECT {_ESCROW_COLUMNS} FROM {self._t['escrows']} WHERE id = %s FOR UPDATE",
            (escrow_id,),
        )
        return _escrow_from_row(row) if row is not None else None

    def find_open_escrow_for_offer(self, offer_id: str) -> EscrowTransaction | None:
        row = self._fetchone(
            f"SELECT {_ESCROW_COLUMNS} FROM {self._t['escrows']} "
            "WHERE offer_id = %s AND status <> 'cancelled' ORDER BY created_at DESC LIMIT 1 FOR UPDATE",
            (offer_id,),
        )
        return _escrow_from_row(row) if row is not None else None

    def list_milestones(self, escrow_id: str) -> list[Milestone]:
        rows = self._fetchall(
            f"SELECT {_MILESTONE_COLUMNS} FROM {self._t['milestones']} WHERE escrow_id = %s ORDER BY sequence_number",
            (escrow_id,),
        )
        return [_milestone_from_row(row) for row in rows]

    def list_disputes(self, escrow_id: str) -> list[Dispute]:
        rows = self._fetchall(
            f"SELECT {_DISPUTE_COLUMNS} FROM {self._t['disputes']} WHERE escrow_id = %s ORDER BY created_at",
            (escrow_id,),
        )
        return [_dispute_from_row(row) for row in rows]

    def add_escrow(self, escrow: EscrowTransaction, milestones: list[Milestone]) -> None:
        self._execute(
            f"INSERT INTO {self._t['escrows']} ({_ESCROW_COLUMNS}) "
            "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)",
            (
                escrow.id,
                escrow.offer_id,
                escrow.seller_id,
                escrow.buyer_id,
                escrow.total_amount,
                escrow.platform_fee_amount,
                escrow.currency,
                escrow.total_milestone_count,
                escrow.current_milestone_index,
                escrow.status,
                escrow.payment_authorization_id,
                escrow.captured_amount,
                escrow.fee_collected_amount,
                escrow.cancel_reason,
                escrow.version,
                escrow.created_at,
                escrow.updated_at,
            ),
        )
        for milestone in milestones:
            self._execute(
                f"INSERT INTO {self._t['milestones']} ({_MILESTONE_COLUMNS}) "
                "VALUES (%s, %s, %s, %s, %s::jsonb, %s, %s, %s, %s, %s, %s)",
                self._milestone_params(milestone),
            )

    @staticmethod
    def _milestone_params(milestone: Milestone) -> tuple[Any, ...]:
        return (
            milestone.escrow_id,
            milestone.sequence_number,
            milestone.description,
            milestone.amount,
            json.dumps(milestone.deliverables, ensure_ascii=True),
            milestone.status,
            milestone.fee_amount,
            milestone.released_amount,
            milestone.transfer_id,
            milestone.completed_at,
            milestone.completed_by,
        )

    def save_escrow(self, escrow: EscrowTransaction) -> None:
        updated = self._execute(
            f"""
            UPDATE {self._t['escrows']} SET
                current_milestone_index = %s, status = %s, payment_authorization_id = %s,
                captured_amount = %s, fee_collected_amount = %s, cancel_reason = %s,
                version = version + 1, updated_at = %s
            WHERE id = %s AND version = %s
            """,
            (
                escrow.current_milestone_index,
                escrow.status,
                escrow.payment_authorization_id,
                escrow.captured_amount,
                escrow.fee_collected_amount,
                escrow.cancel_reason,
                escrow.updated_at,
                escrow.id,
                escrow.version,
            ),
        )
        if updated == 0:
            raise ConcurrencyError(escrow.id)

    def save_milestone(self, milestone: Milestone) -> None:
        self._execute(
            f"""
            UPDATE {self._t['milestones']} SET
                deliverables = %s::jsonb, status = %s, fee_amount = %s, released_amount = %s,
                transfer_id = %s, completed_at = %s, completed_by = %s
            WHERE escrow_id = %s AND sequence_number = %s
            """,
            (
                json.dumps(milestone.deliverables, ensure_ascii=True),
                milestone.status,
                milestone.fee_amount,
                milestone.released_amount,
                milestone.transfer_id,
                milestone.completed_at,
                milestone.completed_by,
                milestone.escrow_id,
                milestone.sequence_number,
            ),
        )

    def add_dispute(self, dispute: Dispute) -> None:
        self._execute(
            f"INSERT INTO {self._t['disputes']} ({_DISPUTE_COLUMNS}) "
            "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)",
            (
                dispute.id,
                dispute.escrow_id,
                dispute.milestone_sequence_number,
                dispute.initiating_party,
                dispute.dispute_type,
                dispute.description,
                dispute.status,
                dispute.milestone_prior_status,
                dispute.resolution,
                dispute.resolved_by,
                dispute.resolved_at,
                dispute.created_at,
            ),
        )

    def save_dispute(self, dispute: Dispute) -> None:
        self._execute(
            f"UPDATE {self._t['disputes']} SET status = %s, resolution = %s, resolved_by = %s, resolved_at = %s "
            "WHERE id = %s",
            (dispute.status, dispute.resolution, dispute.resolved_by, dispute.resolved_at, dispute.id),
        )

    def append_ledger(self, entry: LedgerEntry) -> None:
        self._execute(
            f"INSERT INTO {self._t['ledger']} ({_LEDGER_COLUMNS}) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)",
            (
                entry.id,
                entry.escrow_id,
                entry.kind,
                entry.gross_amount,
                entry.fee_amount,
                entry.net_amount,
                entry.reference,
                entry.milestone_sequence_number,
                entry.created_at,
            ),
        )


class PostgresEscrowRepository:
    """Escrow store on PostgreSQL; one database transaction per unit of work."""

    def __init__(
        self,
        *,
        tx_runner: PostgresTxRunner,
        escrows_table: str = "escrow_transactions",
        milestones_table: str = "escrow_milestones",
        disputes_table: str = "disputes",
        ledger_table: str = "escrow_ledger",
    ) -> None:
        self._tx_runner = tx_runner
        self._tables = {
            "escrows": _validate_identifier(escrows_table),
            "milestones": _validate_identifier(milestones_table),
            "disputes": _validate_identifier(disputes_table),
            "ledger": _validate_identifier(ledger_table),
        }

    def ensure_schema(self) -> None:
        t = self._tables

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {t['escrows']} (
                        id TEXT PRIMARY KEY,
                        offer_id TEXT NOT NULL,
                        seller_id TEXT NOT NULL,
                        buyer_id TEXT NOT NULL,
                        total_amount BIGINT NOT NULL CHECK (total_amount > 0),
                        platform_fee_amount BIGINT NOT NULL CHECK (platform_fee_amount >= 0),
                        currency TEXT NOT NULL,
                        total_milestone_count INTEGER NOT NULL,
                        current_milestone_index INTEGER NOT NULL DEFAULT 1,
                        status TEXT NOT NULL CHECK (
                            status IN ('created', 'in_progress', 'completed', 'disputed', 'cancelled')
                        ),
                        payment_authorization_id TEXT,
                        captured_amount BIGINT NOT NULL DEFAULT 0,
                        fee_collected_amount BIGINT NOT NULL DEFAULT 0,
                        cancel_reason TEXT,
                        version INTEGER NOT NULL DEFAULT 0,
                        created_at TIMESTAMPTZ NOT NULL,
                        updated_at TIMESTAMPTZ NOT NULL,
                        CHECK (current_milestone_index <= total_milestone_count)
                    )
                    """
                )
                cur.execute(
                    f"CREATE UNIQUE INDEX IF NOT EXISTS {t['escrows']}_open_offer_idx "
                    f"ON {t['escrows']} (offer_id) WHERE status <> 'cancelled'"
                )
                cur.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {t['milestones']} (
                        escrow_id TEXT NOT NULL REFERENCES {t['escrows']}(id),
                        sequence_number INTEGER NOT NULL,
                        description TEXT NOT NULL,
                        amount BIGINT NOT NULL CHECK (amount > 0),
                        deliverables JSONB NOT NULL DEFAULT '[]'::jsonb,
                        status TEXT NOT NULL CHECK (status IN ('pending', 'completed', 'disputed')),
                        fee_amount BIGINT NOT NULL DEFAULT 0,
                        released_amount BIGINT NOT NULL DEFAULT 0,
                        transfer_id TEXT,
                        completed_at TIMESTAMPTZ,
                        completed_by TEXT,
                        PRIMARY KEY (escrow_id, sequence_number)
                    )
                    """
                )
                cur.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {t['disputes']} (
                        id TEXT PRIMARY KEY,
                        escrow_id TEXT NOT NULL REFERENCES {t['escrows']}(id),
                        milestone_sequence_number INTEGER NOT NULL,
                        initiating_party TEXT NOT NULL,
                        dispute_type TEXT NOT NULL,
                        description TEXT NOT NULL,
                        status TEXT NOT NULL CHECK (status IN ('open', 'resolved', 'rejected')),
                        milestone_prior_status TEXT NOT NULL,
                        resolution TEXT,
                        resolved_by TEXT,
                        resolved_at TIMESTAMPTZ,
                        created_at TIMESTAMPTZ NOT NULL
                    )
                    """
                )
                cur.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {t['ledger']} (
                        id TEXT PRIMARY KEY,
                        escrow_id TEXT NOT NULL REFERENCES {t['escrows']}(id),
                        kind TEXT NOT NULL,
                        gross_amount BIGINT NOT NULL,
                        fee_amount BIGINT NOT NULL,
                        net_amount BIGINT NOT NULL,
                        reference TEXT NOT NULL,
                        milestone_sequence_number INTEGER,
                        created_at TIMESTAMPTZ NOT NULL
                    )
                    """
                )

        self._tx_runner.run_in_tx(tenant=ENGINE_TENANT, fn=_op)

    @contextmanager
    def unit_of_work(self, *, escrow_id: str | None = None, offer_id: str | None = None) -> Iterator[PostgresUnitOfWork]:
        with self._tx_runner.transaction(tenant=ENGINE_TENANT) as conn:
            yield PostgresUnitOfWork(conn, self._tables)

    def _scoped_view(self, conn: Any, tenant: TenantContext | None, where: str, params: tuple[Any, ...]) -> EscrowView | None:
        query, scope_params = scope_query(
            tenant,
            f"SELECT {_ESCROW_COLUMNS} FROM {self._tables['escrows']} WHERE {where} ORDER BY created_at DESC LIMIT 1",
            "escrow_transactions",
            paramstyle="format",
        )
        with conn.cursor() as cur:
            cur.execute(query, (*scope_params, *params))
            row = cur.fetchone()
        if row is None:
            return None
        escrow = _escrow_from_row(row)
        uow = PostgresUnitOfWork(conn, self._tables)
        ledger_rows = uow._fetchall(
            f"SELECT {_LEDGER_COLUMNS} FROM {self._tables['ledger']} WHERE escrow_id = %s ORDER BY created_at",
            (escrow.id,),
        )
        return EscrowView(
            escrow=escrow,
            milestones=uow.list_milestones(escrow.id),
            disputes=uow.list_disputes(escrow.id),
            ledger=[_ledger_from_row(r) for r in ledger_rows],
        )

    def get_view(self, *, escrow_id: str, tenant: TenantContext | None) -> EscrowView | None:
        if tenant is None:
            return None
        return self._tx_runner.run_in_tx(
            tenant=tenant,
            fn=lambda conn: self._scoped_view(conn, tenant, "id = %s", (escrow_id,)),
        )

    def find_for_offer(self, *, offer_id: str, tenant: TenantContext | None) -> EscrowView | None:
        if tenant is None:
            return None
        return self._tx_runner.run_in_tx(
            tenant=tenant,
            fn=lambda conn: self._scoped_view(conn, tenant, "offer_id = %s", (offer_id,)),
        )

    def list_escrows(self, *, tenant: TenantContext | None) -> list[EscrowTransaction]:
        if tenant is None:
            return []
        query, scope_params = scope_query(
            tenant,
            f"SELECT {_ESCROW_COLUMNS} FROM {self._tables['escrows']} ORDER BY created_at DESC",
            "escrow_transactions",
            paramstyle="format",
        )

        def _op(conn: Any) -> list[EscrowTransaction]:
            with conn.cursor() as cur:
                cur.execute(query, tuple(scope_params))
                rows = cur.fetchall() or []
            return [_escrow_from_row(row) for row in rows]

        return self._tx_runner.run_in_tx(tenant=tenant, fn=_op)
