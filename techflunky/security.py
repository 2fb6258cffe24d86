from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from techflunky.config import env_bool, split_csv
from techflunky.errors import ApiError

_SENSITIVE_KEYS = frozenset(
    {"authorization", "token", "secret", "password", "api_key", "apikey", "access_token", "client_secret"}
)


def _b64url_decode(raw: str) -> bytes:
    padded = raw + "=" * ((4 - len(raw) % 4) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _unauthorized(message: str) -> ApiError:
    return ApiError(
        code="AUTH_UNAUTHORIZED",
        message=message,
        error_class="security_sensitive",
        retryable=False,
        http_status=401,
    )


def redact_sensitive(value: object) -> object:
    """Mask credentials in headers and payloads before they are logged."""
    if isinstance(value, dict):
        redacted: dict[str, object] = {}
        for key, item in value.items():
            if str(key).lower() in _SENSITIVE_KEYS:
                redacted[str(key)] = "***REDACTED***"
            else:
                redacted[str(key)] = redact_sensitive(item)
        return redacted
    if isinstance(value, list):
        return [redact_sensitive(x) for x in value]
    if isinstance(value, str):
        lowered = value.lower()
        if len(value) >= 24 and any(k in lowered for k in ("sk_", "bearer ", "token", "_secret_")):
            return "***REDACTED***"
    return value


@dataclass
class AuthContext:
    tenant_id: str
    role: str
    subject: str
    claims: dict[str, Any]


@dataclass
class JwtSecurityConfig:
    enabled: bool
    issuer: str
    audience: str
    shared_secret: str
    required_claims: list[str]
    tenant_claim: str
    role_claim: str
    log_redaction_enabled: bool

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "JwtSecurityConfig":
        env = os.environ if environ is None else environ
        issuer = env.get("JWT_ISSUER", "").strip()
        audience = env.get("JWT_AUDIENCE", "").strip()
        shared_secret = env.get("JWT_SHARED_SECRET", "").strip()
        return cls(
            enabled=bool(issuer or audience or shared_secret),
            issuer=issuer,
            audience=audience,
            shared_secret=shared_secret,
            required_claims=split_csv(env.get("JWT_REQUIRED_CLAIMS", "tenant_id,sub,exp")),
            tenant_claim=env.get("JWT_TENANT_CLAIM", "tenant_id").strip() or "tenant_id",
            role_claim=env.get("JWT_ROLE_CLAIM", "tenant_role").strip() or "tenant_role",
            log_redaction_enabled=env_bool(env, "SECURITY_LOG_REDACTION_ENABLED", True),
        )


def _parse_token_parts(token: str) -> tuple[dict[str, Any], dict[str, Any], str, str]:
    parts = token.split(".")
    if len(parts) != 3:
        raise _unauthorized("invalid token format")
    header_raw, payload_raw, signature_raw = parts
    try:
        header_obj = json.loads(_b64url_decode(header_raw))
        payload_obj = json.loads(_b64url_decode(payload_raw))
    except (json.JSONDecodeError, ValueError, TypeError):
        raise _unauthorized("invalid token payload") from None
    if not isinstance(header_obj, dict) or not isinstance(payload_obj, dict):
        raise _unauthorized("invalid token payload")
    return header_obj, payload_obj, f"{header_raw}.{payload_raw}", signature_raw


def _role_from_tenant_id(tenant_id: str) -> str:
    prefix, sep, _ = tenant_id.partition("_")
    return prefix if sep else ""


def _signature_matches(signing_input: str, signature_raw: str, secret: str) -> bool:
    digest = hmac.new(secret.encode("utf-8"), signing_input.encode("ascii"), hashlib.sha256).digest()
    return hmac.compare_digest(_b64url_encode(digest), signature_raw)


def _audience_matches(aud: Any, expected: str) -> bool:
    if isinstance(aud, list):
        return expected in {str(x) for x in aud}
    return str(aud or "") == expected


def _check_registered_claims(claims: dict[str, Any], cfg: JwtSecurityConfig) -> None:
    now_ts = int(datetime.now(UTC).timestamp())
    exp = _as_int(claims.get("exp"))
    if exp is None or exp <= now_ts:
        raise _unauthorized("token expired")
    nbf = _as_int(claims.get("nbf"))
    if nbf is not None and nbf > now_ts:
        raise _unauthorized("token not yet valid")
    if cfg.issuer and str(claims.get("iss", "")) != cfg.issuer:
        raise _unauthorized("jwt issuer mismatch")
    if cfg.audience and not _audience_matches(claims.get("aud"), cfg.audience):
        raise _unauthorized("jwt audience mismatch")
    missing = [claim for claim in cfg.required_claims if claim not in claims]
    if missing:
        raise _unauthorized(f"missing required claim: {missing[0]}")


def parse_and_validate_bearer_token(*, authorization: str | None, cfg: JwtSecurityConfig) -> AuthContext:
    """Verify an HS256 bearer token and return the caller it names."""
    if not authorization:
        raise _unauthorized("missing Authorization bearer token")
    scheme, _, token = authorization.partition(" ")
    if scheme != "Bearer":
        raise _unauthorized("invalid Authorization header")
    token = token.strip()
    if not token:
        raise _unauthorized("empty bearer token")
    header_obj, claims, signing_input, signature_raw = _parse_token_parts(token)
    if str(header_obj.get("alg", "")).upper() != "HS256":
        raise _unauthorized("unsupported jwt algorithm")
    if not cfg.shared_secret:
        raise _unauthorized("jwt shared secret not configured")
    if not _signature_matches(signing_input, signature_raw, cfg.shared_secret):
        raise _unauthorized("invalid token signature")
    _check_registered_claims(claims, cfg)

    tenant_id = str(claims.get(cfg.tenant_claim) or "").strip()
    subject = str(claims.get("sub") or "").strip()
    if not tenant_id or not subject:
        raise _unauthorized("missing tenant or subject claim")
    # tokens minted before the role claim existed carry the role only as the tenant id prefix
    role = str(claims.get(cfg.role_claim) or "").strip() or _role_from_tenant_id(tenant_id)
    return AuthContext(tenant_id=tenant_id, role=role, subject=subject, claims=claims)
