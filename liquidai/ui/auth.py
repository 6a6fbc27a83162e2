"""Operator tokens for the dashboard API.

Read endpoints stay open; only actions with side effects (manual cycle
trigger) require a token when `UI_AUTH_ENABLED=true`. Tokens are
`v1.<payload>.<hmac>` with an HMAC-SHA256 signature over the JSON claims.
"""

from __future__ import annotations

import base64
import binascii
import hmac
import json
import os
import secrets
import time
from dataclasses import dataclass
from hashlib import sha256
from typing import Any, Dict, Optional


OPERATOR_SCOPE = "operator"
DEFAULT_TTL_S = 8 * 60 * 60


def auth_enabled() -> bool:
    return os.getenv("UI_AUTH_ENABLED", "false").strip().lower() in {"1", "true", "yes", "y", "on"}


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


def _b64url_decode(txt: str) -> bytes:
    return base64.urlsafe_b64decode((txt + "=" * (-len(txt) % 4)).encode("utf-8"))


def _secret(secret: Optional[str]) -> str:
    return secret or os.getenv("UI_TOKEN_SECRET") or "liquidai-dev-secret"


def _sign(data: bytes, secret: str) -> str:
    return _b64url_encode(hmac.new(secret.encode("utf-8"), data, sha256).digest())


@dataclass(frozen=True)
class OperatorClaims:
    sub: str
    scope: str
    iat: int
    exp: int

    def to_dict(self) -> Dict[str, Any]:
        return {"sub": self.sub, "scope": self.scope, "iat": self.iat, "exp": self.exp}


def issue_token(
    *,
    operator: str,
    scope: str = OPERATOR_SCOPE,
    ttl_s: int = DEFAULT_TTL_S,
    secret: Optional[str] = None,
    now: Optional[int] = None,
) -> str:
    issued = int(time.time()) if now is None else int(now)
    claims = OperatorClaims(sub=operator, scope=scope, iat=issued, exp=issued + int(ttl_s))
    payload = json.dumps(claims.to_dict(), separators=(",", ":"), sort_keys=True).encode("utf-8")
    return f"v1.{_b64url_encode(payload)}.{_sign(payload, _secret(secret))}"


def verify_token(token: str, *, secret: Optional[str] = None, now: Optional[int] = None) -> Optional[OperatorClaims]:
    """Claims for a valid, unexpired token; None otherwise."""
    parts = (token or "").split(".")
    if len(parts) != 3 or parts[0] != "v1":
        return None
    try:
        payload = _b64url_decode(parts[1])
    except (binascii.Error, ValueError):
        return None
    if not secrets.compare_digest(parts[2], _sign(payload, _secret(secret))):
        return None
    try:
        data = json.loads(payload.decode("utf-8"))
        claims = OperatorClaims(
            sub=str(data["sub"]),
            scope=str(data.get("scope") or ""),
            iat=int(data["iat"]),
            exp=int(data["exp"]),
        )
    except (KeyError, TypeError, ValueError):
        return None
    current = int(time.time()) if now is None else int(now)
    if not claims.sub or claims.exp <= current:
        return None
    return claims


def check_credentials(*, username: str, password: str) -> bool:
    cfg_user = os.getenv("UI_OPERATOR_USER", "operator")
    cfg_pass = os.getenv("UI_OPERATOR_PASS", "")
    if not cfg_pass:
        return False
    return secrets.compare_digest(username, cfg_user) and secrets.compare_digest(password, cfg_pass)


def bearer_token(auth_header: Optional[str]) -> Optional[str]:
    if not auth_header:
        return None
    parts = auth_header.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1].strip()
    return None


__all__ = [
    "OPERATOR_SCOPE",
    "OperatorClaims",
    "auth_enabled",
    "bearer_token",
    "check_credentials",
    "issue_token",
    "verify_token",
]
