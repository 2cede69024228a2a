"""Sealed session tokens.

Tokens are Fernet-encrypted JSON payloads, so they are authenticated and
opaque to clients.  Each payload carries the subject, a ``type``
discriminator and an absolute ``exp`` timestamp.
"""

import json
import time

from cryptography.fernet import Fernet, InvalidToken

from app.config import get_settings

ACCESS = "access"
REFRESH = "refresh"


class TokenError(Exception):
    """Raised when a token cannot be opened or has expired."""


def get_fernet() -> Fernet:
    settings = get_settings()
    key = settings.TOKEN_SECRET_KEY
    return Fernet(key.encode() if isinstance(key, str) else key)


def seal_token(subject: str, token_type: str, ttl_seconds: int) -> str:
    """Encrypt a token payload for ``subject`` valid for ``ttl_seconds``."""
    now = int(time.time())
    payload = {"sub": subject, "type": token_type, "iat": now, "exp": now + ttl_seconds}
    return get_fernet().encrypt(json.dumps(payload).encode("utf-8")).decode("ascii")


def open_token(token: str, expected_type: str) -> dict:
    """Decrypt ``token`` and check its type and expiry.

    Raises ``TokenError`` on a bad signature, malformed payload, wrong
    ``type`` or an ``exp`` in the past.
    """
    try:
        raw = get_fernet().decrypt(token.encode("ascii"))
        payload = json.loads(raw.decode("utf-8"))
    except (InvalidToken, ValueError, UnicodeError) as exc:
        raise TokenError("invalid_token") from exc

    if not isinstance(payload, dict) or "sub" not in payload:
        raise TokenError("malformed_token")
    if payload.get("type") != expected_type:
        raise TokenError("wrong_token_type")
    if int(payload.get("exp", 0)) <= int(time.time()):
        raise TokenError("token_expired")
    return payload
