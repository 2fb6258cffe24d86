#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from techflunky.config import split_csv
from techflunky.db.rls import PostgresRlsManager


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Apply tenant row-level-security policies to marketplace tables")
    parser.add_argument("--dsn", default=os.getenv("POSTGRES_DSN", ""), help="PostgreSQL DSN")
    parser.add_argument(
        "--tables",
        default="",
        help="comma-separated table names; default covers the escrow tables",
    )
    parser.add_argument("--dry-run", action="store_true", help="print the SQL instead of executing it")
    args = parser.parse_args(argv)

    tables = split_csv(args.tables) or None
    dsn = str(args.dsn or "").strip()
    if args.dry_run:
        manager = PostgresRlsManager(dsn or "postgresql://dry-run", tables=tables)
        print("\n".join(f"{stmt};" for stmt in manager.statements()))
        return 0
    if not dsn:
        raise SystemExit("POSTGRES_DSN is required (pass --dsn or set env)")

    applied = PostgresRlsManager(dsn, tables=tables).apply()
    print(json.dumps({"applied_tables": applied, "count": len(applied)}, ensure_ascii=True, sort_keys=True, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
