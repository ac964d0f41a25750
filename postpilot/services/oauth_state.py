"""Signed, self-contained OAuth ``state`` tokens.

The token binds the LinkedIn redirect back to the user who started the flow
without any server-side session storage::

    base64url(json payload) + "." + base64url(hmac_sha256(secret, encoded payload))

The payload carries ``userId``, ``iat`` and ``exp`` (epoch milliseconds) and a
random ``nonce``.
"""

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from postpilot.config import settings
from postpilot.errors import (
    ConfigurationError,
    InvalidStateFormat,
    InvalidStatePayload,
    InvalidStateSignature,
    StateExpired,
)

DEFAULT_STATE_TTL = timedelta(minutes=10)


@dataclass(frozen=True)
class OAuthStatePayload:
    user_id: str
    iat: int
    exp: int
    nonce: str


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")

def _b64url_decode(part: str) -> bytes:
    pad = "=" * (-len(part) % 4)
    return base64.urlsafe_b64decode(part + pad)

def _sign(encoded_payload: str, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), encoded_payload.encode("utf-8"), hashlib.sha256).digest()
    return _b64url_encode(digest)

def _now_ms() -> int:
    return int(time.time() * 1000)


def get_state_secret() -> str:
    secret = settings.linkedin_state_secret or settings.linkedin_client_secret
    if not secret:
        raise ConfigurationError("Missing LINKEDIN_STATE_SECRET or LINKEDIN_CLIENT_SECRET")
    return secret


def create_state(user_id: str, secret: str, ttl: Optional[timedelta] = None) -> str:
    issued_at = _now_ms()
    ttl = DEFAULT_STATE_TTL if ttl is None else ttl
    payload = {
        "userId": user_id,
        "iat": issued_at,
        "exp": issued_at + int(ttl.total_seconds() * 1000),
        "nonce": secrets.token_hex(16),
    }
    encoded = _b64url_encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
    return f"{encoded}.{_sign(encoded, secret)}"


def verify_state(state: str, secret: str, now_ms: Optional[int] = None) -> OAuthStatePayload:
    """Return the payload of a valid state or raise an ``OAuthStateError`` subclass."""
    parts = (state or "").split(".")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise InvalidStateFormat("Invalid state format")
    encoded, signature = parts

    expected = _sign(encoded, secret)
    if not hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8")):
        raise InvalidStateSignature("Invalid state signature")

    try:
        payload = json.loads(_b64url_decode(encoded).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        raise InvalidStatePayload("Invalid state payload")
    if not isinstance(payload, dict) or not isinstance(payload.get("userId"), str):
        raise InvalidStatePayload("Invalid state payload")

    exp = payload.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, int):
        raise StateExpired("State expired")
    if exp < (_now_ms() if now_ms is None else now_ms):
        raise StateExpired("State expired")

    return OAuthStatePayload(
        user_id=payload["userId"],
        iat=int(payload.get("iat") or 0),
        exp=exp,
        nonce=str(payload.get("nonce", "")),
    )
