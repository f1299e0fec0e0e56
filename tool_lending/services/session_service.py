from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Any

from services.operator_account_service import ROLE_SUPER_OPERATOR, rights_for_role


SESSION_TTL_SECONDS = 60 * 60 * 12

_LOCK = threading.Lock()
_REVOKED_TOKENS: dict[str, float] = {}


def _require_session_secret() -> bytes:
    raw = (os.environ.get("SESSION_SIGNING_SECRET") or "").strip()
    if len(raw) < 32:
        raise RuntimeError("SESSION_SIGNING_SECRET must be set and at least 32 characters long.")
    return raw.encode("utf-8")


_SESSION_SECRET = _require_session_secret()


@dataclass
class OperatorSession:
    """The signed-in operator, resolved once per request and passed to services."""

    operatorID: str
    email: str
    name: str
    role: str
    rights: dict[str, bool] = field(default_factory=dict)
    isProtected: bool = False

    @property
    def is_super_operator(self) -> bool:
        return self.role == ROLE_SUPER_OPERATOR

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_payload(cls, payload: dict[str, Any] | None) -> "OperatorSession | None":
        if not isinstance(payload, dict) or not payload.get("operatorID"):
            return None
        role = str(payload.get("role") or "")
        return cls(
            operatorID=str(payload["operatorID"]),
            email=str(payload.get("email") or ""),
            name=str(payload.get("name") or ""),
            role=role,
            rights=rights_for_role(role),
            isProtected=bool(payload.get("isProtected")),
        )


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(raw: str) -> bytes:
    return base64.urlsafe_b64decode(raw + "=" * (-len(raw) % 4))


def _sign(encoded: str) -> bytes:
    return hmac.new(_SESSION_SECRET, encoded.encode("ascii"), hashlib.sha256).digest()


def create_session(session: OperatorSession) -> str:
    payload = session.to_payload()
    payload["expiresAt"] = time.time() + SESSION_TTL_SECONDS
    body = json.dumps(payload, ensure_ascii=True, separators=(",", ":"), default=str).encode("utf-8")
    encoded = _b64encode(body)
    return f"{encoded}.{_b64encode(_sign(encoded))}"


def _decode_token(token: str) -> dict[str, Any] | None:
    try:
        encoded, encoded_sig = token.split(".", 1)
        if not hmac.compare_digest(_sign(encoded), _b64decode(encoded_sig)):
            return None
        decoded = json.loads(_b64decode(encoded).decode("utf-8"))
    except (ValueError, UnicodeDecodeError, json.JSONDecodeError):
        return None
    return decoded if isinstance(decoded, dict) else None


def _prune_revoked_unlocked(now: float) -> None:
    for revoked_token, expires_at in list(_REVOKED_TOKENS.items()):
        if now >= expires_at:
            _REVOKED_TOKENS.pop(revoked_token, None)


def get_session(token: str | None) -> OperatorSession | None:
    if not token:
        return None
    decoded = _decode_token(token)
    if decoded is None:
        return None
    now = time.time()
    if now >= float(decoded.get("expiresAt") or 0.0):
        return None
    with _LOCK:
        _prune_revoked_unlocked(now)
        if token in _REVOKED_TOKENS:
            return None
    return OperatorSession.from_payload(decoded)


def remove_session(token: str | None) -> None:
    if not token:
        return
    decoded = _decode_token(token)
    if decoded is None:
        return
    expires_at = float(decoded.get("expiresAt") or 0.0)
    now = time.time()
    if expires_at <= now:
        return
    with _LOCK:
        _prune_revoked_unlocked(now)
        _REVOKED_TOKENS[token] = expires_at
