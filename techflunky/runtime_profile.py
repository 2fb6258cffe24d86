from __future__ import annotations

from collections.abc import Mapping
import os


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def true_stack_required(environ: Mapping[str, str] | None = None) -> bool:
    """True when in-memory fallbacks for the store and rate limiter are forbidden."""
    env = os.environ if environ is None else environ
    return _as_bool(env.get("TF_REQUIRE_TRUESTACK", "false"))
