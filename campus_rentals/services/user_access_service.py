from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import secrets
import threading
import time
from typing import Any


SESSION_TTL_SECONDS = 60 * 60 * 24 * 7
PASSWORD_HASH_ITERATIONS = 120000

_LOCK = threading.Lock()
_REVOKED_TOKENS: dict[str, float] = {}


def _require_session_secret() -> bytes:
    raw = (os.environ.get("SESSION_SIGNING_SECRET") or "").strip()
    if len(raw) < 32:
        raise RuntimeError("SESSION_SIGNING_SECRET must be set and at least 32 characters long.")
    return raw.encode("utf-8")


_SESSION_SECRET = _require_session_secret()


def hash_password(password: str, salt: str | None = None) -> tuple[str, str]:
    salt = salt or secrets.token_hex(16)
    raw = hashlib.pbkdf2_hmac(
        "sha256",
        (password or "").encode("utf-8"),
        salt.encode("utf-8"),
        PASSWORD_HASH_ITERATIONS,
    )
    return raw.hex(), salt


def verify_password(password: str, stored_hash: str | None, stored_salt: str | None) -> bool:
    if not stored_hash or not stored_salt:
        return False
    candidate, _ = hash_password(password, stored_salt)
    return hmac.compare_digest(candidate, stored_hash)


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def create_session(payload: dict[str, Any]) -> str:
    session_payload = dict(payload)
    session_payload["expiresAt"] = time.time() + SESSION_TTL_SECONDS
    session_payload["nonce"] = secrets.token_hex(8)
    body = json.dumps(session_payload, ensure_ascii=True, separators=(",", ":")).encode("utf-8")
    encoded = _b64encode(body)
    signature = hmac.new(_SESSION_SECRET, encoded.encode("ascii"), hashlib.sha256).digest()
    return f"{encoded}.{_b64encode(signature)}"


def _decode_token(token: str) -> dict[str, Any] | None:
    try:
        encoded, encoded_sig = token.split(".", 1)
        expected_sig = hmac.new(_SESSION_SECRET, encoded.encode("ascii"), hashlib.sha256).digest()
        if not hmac.compare_digest(expected_sig, _b64decode(encoded_sig)):
            return None
        decoded = json.loads(_b64decode(encoded).decode("utf-8"))
    except (ValueError, UnicodeError):
        return None
    return decoded if isinstance(decoded, dict) else None


def get_session(token: str | None) -> dict[str, Any] | None:
    if not token:
        return None
    decoded = _decode_token(token)
    if decoded is None:
        return None

    now = time.time()
    try:
        expires_at = float(decoded.get("expiresAt") or 0.0)
    except (TypeError, ValueError):
        return None
    if now >= expires_at:
        return None

    with _LOCK:
        for revoked_token, revoked_exp in list(_REVOKED_TOKENS.items()):
            if now >= revoked_exp:
                _REVOKED_TOKENS.pop(revoked_token, None)
        if token in _REVOKED_TOKENS:
            return None
    return decoded


def remove_session(token: str | None) -> None:
    if not token:
        return
    decoded = _decode_token(token)
    if decoded is None:
        return
    try:
        expires_at = float(decoded.get("expiresAt") or 0.0)
    except (TypeError, ValueError):
        return
    if expires_at <= time.time():
        return
    with _LOCK:
        _REVOKED_TOKENS[token] = expires_at
