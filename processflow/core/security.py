from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone

import bcrypt

from processflow.config import settings

ALGORITHM = "HS256"


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    if not hashed_password:
        return False
    return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(s: str) -> bytes:
    s += "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode(s)


def _sign(signing_input: str, purpose: str = "") -> bytes:
    key = settings.SECRET_KEY.encode()
    if purpose:
        key = hmac.new(key, purpose.encode(), hashlib.sha256).digest()
    return hmac.new(key, signing_input.encode(), hashlib.sha256).digest()


def create_access_token(user_id: int, role: str | None = None) -> str:
    header = _b64url_encode(json.dumps({"alg": ALGORITHM, "typ": "JWT"}).encode())
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    payload_data = {"sub": str(user_id), "exp": int(expire.timestamp())}
    if role:
        payload_data["role"] = role
    payload = _b64url_encode(json.dumps(payload_data).encode())
    signing_input = f"{header}.{payload}"
    return f"{signing_input}.{_b64url_encode(_sign(signing_input))}"


def decode_access_token(token: str) -> dict | None:
    """Return the token payload, or None when malformed, forged or expired."""
    try:
        parts = token.split(".")
        if len(parts) != 3:
            return None

        signing_input = f"{parts[0]}.{parts[1]}"
        if not hmac.compare_digest(_sign(signing_input), _b64url_decode(parts[2])):
            return None

        payload_data = json.loads(_b64url_decode(parts[1]))
        if not isinstance(payload_data, dict):
            return None

        if "exp" in payload_data:
            if datetime.now(timezone.utc).timestamp() > payload_data["exp"]:
                return None

        return payload_data
    except (ValueError, TypeError):
        return None


# ── Signed document references ──────────────────────────────────────
# A signed reference is "<b64 path>.<expiry>.<b64 mac>".  It is derived on
# every request from the stored path and is never persisted.

_STORAGE_PURPOSE = "storage-ref"


def sign_storage_path(path: str, ttl_seconds: int | None = None, now: float | None = None) -> tuple[str, int]:
    """Return ``(token, expires_at_epoch)`` granting temporary access to ``path``."""
    ttl = settings.SIGNED_URL_TTL_SECONDS if ttl_seconds is None else ttl_seconds
    expires = int((time.time() if now is None else now) + ttl)
    encoded = _b64url_encode(path.encode("utf-8"))
    signing_input = f"{encoded}.{expires}"
    mac = _b64url_encode(_sign(signing_input, _STORAGE_PURPOSE))
    return f"{signing_input}.{mac}", expires


def verify_signed_path(token: str, now: float | None = None) -> str | None:
    """Return the storage path a token grants, or None when invalid or expired."""
    try:
        encoded, expires_raw, mac = token.split(".")
        signing_input = f"{encoded}.{expires_raw}"
        if not hmac.compare_digest(_sign(signing_input, _STORAGE_PURPOSE), _b64url_decode(mac)):
            return None
        if (time.time() if now is None else now) > int(expires_raw):
            return None
        return _b64url_decode(encoded).decode("utf-8")
    except (ValueError, TypeError):
        return None
