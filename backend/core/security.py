"""
StockRoute Security Utilities

Channel credentials (OAuth tokens, carrier API secrets) are stored as a
single Fernet-encrypted JSON blob per integration. API callers present a
bearer JWT carrying their ``account_id``.
"""

import base64
import hashlib
import json
import secrets
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any

from cryptography.fernet import Fernet
from jose import JWTError, jwt

from core.config import DEFAULT_ENCRYPTION_KEY, get_settings

ACCESS_TOKEN_TTL = timedelta(hours=24)


@lru_cache
def _cipher() -> Fernet:
    key = get_settings().encryption_key
    if key == DEFAULT_ENCRYPTION_KEY:
        # Deterministic so the API and the Celery workers can read each other's blobs
        return Fernet(base64.urlsafe_b64encode(hashlib.sha256(b"stockroute-dev-key-not-for-production").digest()))
    return Fernet(key.encode())


def encrypt_credentials(credentials: dict[str, Any]) -> str:
    """Encrypt an opaque, platform-specific credential blob."""
    payload = json.dumps(credentials, sort_keys=True).encode()
    return _cipher().encrypt(payload).decode()


def decrypt_credentials(ciphertext: str | None) -> dict[str, Any]:
    if not ciphertext:
        return {}
    return json.loads(_cipher().decrypt(ciphertext.encode()))


def generate_state_token() -> str:
    """Single-use opaque token for the OAuth ``state`` parameter."""
    return secrets.token_hex(32)


def create_access_token(claims: dict, ttl: timedelta | None = None) -> str:
    settings = get_settings()
    body = {**claims, "exp": datetime.now(timezone.utc) + (ttl or ACCESS_TOKEN_TTL)}
    return jwt.encode(body, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> dict | None:
    """Claims of a valid token, or None when the signature or expiry check fails."""
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
