from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


def env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def split_csv(raw: str) -> list[str]:
    return [x.strip() for x in raw.split(",") if x.strip()]


@dataclass(frozen=True)
class EscrowConfig:
    # 800 bps = 8 %, the marketplace's standard transaction fee
    platform_fee_bps: int = 800
    default_currency: str = "usd"
    dispute_grace_period_s: int = 0
    cancel_max_completed_milestones: int = 1

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "EscrowConfig":
        env = os.environ if environ is None else environ
        return cls(
            platform_fee_bps=min(10_000, env_int(env, "TF_PLATFORM_FEE_BPS", default=800)),
            default_currency=env.get("TF_DEFAULT_CURRENCY", "usd").strip().lower() or "usd",
            dispute_grace_period_s=env_int(env, "TF_DISPUTE_GRACE_PERIOD_S", default=0),
            cancel_max_completed_milestones=env_int(env, "TF_CANCEL_MAX_COMPLETED_MILESTONES", default=1),
        )


@dataclass(frozen=True)
class StoreConfig:
    backend: str = "memory"
    postgres_dsn: str = ""
    marketplace_sqlite_path: str = ":memory:"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "StoreConfig":
        env = os.environ if environ is None else environ
        return cls(
            backend=env.get("TF_STORE_BACKEND", "memory").strip().lower() or "memory",
            postgres_dsn=env.get("POSTGRES_DSN", "").strip(),
            marketplace_sqlite_path=env.get("TF_MARKETPLACE_SQLITE_PATH", ":memory:").strip() or ":memory:",
        )
