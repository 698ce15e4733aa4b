"""Security utilities: JWT tokens, password hashing, token blacklist and AES primitives."""

from __future__ import annotations

import base64
import hashlib
import os
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any
import logging

import jwt
from jwt.exceptions import PyJWTError
import bcrypt
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from foodhub.core.cache import redis_cache
from foodhub.core.config import settings

logger = logging.getLogger(__name__)

MFA_PURPOSE = "mfa_verification"


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a plain password against a hash.

    Uses bcrypt's built-in timing-safe comparison.
    """
    try:
        return bcrypt.checkpw(
            plain_password.encode('utf-8'),
            hashed_password.encode('utf-8')
        )
    except ValueError as e:
        logger.warning(f"Password verification error: {e}")
        return False


def get_password_hash(password: str) -> str:
    """Hash a password using bcrypt."""
    return bcrypt.hashpw(
        password.encode('utf-8'),
        bcrypt.gensalt()
    ).decode('utf-8')


def create_access_token(data: dict[str, Any], expires_delta: timedelta | None = None) -> str:
    """Create a JWT access token with a unique JTI for blacklisting support."""
    to_encode = data.copy()
    now = datetime.now(timezone.utc)

    if expires_delta:
        expire = now + expires_delta
    else:
        expire = now + timedelta(minutes=settings.access_token_expire_minutes)

    to_encode.update({
        "exp": expire,
        "iat": now,
        "jti": secrets.token_urlsafe(16),
    })
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def decode_access_token(token: str) -> dict[str, Any] | None:
    """Decode and validate an access token. Blacklisted and MFA tokens are rejected."""
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.algorithm],
            options={"require_exp": True}
        )
    except PyJWTError as e:
        logger.debug(f"JWT decode error: {e}")
        return None

    if payload.get("purpose"):
        return None

    jti = payload.get("jti")
    if jti and is_token_blacklisted(jti):
        logger.debug(f"Token {jti} is blacklisted")
        return None

    return payload


def create_mfa_token(user_id: int) -> str:
    """Short-lived token proving the password step of an MFA login."""
    now = datetime.now(timezone.utc)
    return jwt.encode(
        {
            "sub": str(user_id),
            "purpose": MFA_PURPOSE,
            "iat": now,
            "exp": now + timedelta(minutes=settings.mfa_token_expire_minutes),
            "jti": secrets.token_urlsafe(16),
        },
        settings.secret_key,
        algorithm=settings.algorithm,
    )


def decode_mfa_token(token: str) -> dict[str, Any]:
    """Decode an MFA token.

    Raises jwt.ExpiredSignatureError when it expired and PyJWTError for
    anything malformed; returns the payload otherwise.
    """
    return jwt.decode(
        token,
        settings.secret_key,
        algorithms=[settings.algorithm],
        options={"require_exp": True},
    )


def generate_otp_code() -> str:
    return f"{secrets.randbelow(1_000_000):06d}"


def blacklist_token(token: str) -> bool:
    """Invalidate a token until its natural expiry."""
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.algorithm],
            options={"require_exp": True, "verify_exp": False}
        )
    except PyJWTError:
        return False

    jti = payload.get("jti")
    if not jti:
        return False

    exp = payload.get("exp", 0)
    ttl = max(int(exp - datetime.now(timezone.utc).timestamp()), 60)
    redis_cache.set(f"token_blacklist:{jti}", 1, ttl)
    return True


def is_token_blacklisted(jti: str) -> bool:
    return redis_cache.has(f"token_blacklist:{jti}")


# ---------------------------------------------------------------------------
# Symmetric encryption (AES-256-GCM)
# ---------------------------------------------------------------------------

_NONCE_SIZE = 12


def _derive_key(key_material: str | None = None) -> bytes:
    material = key_material or settings.encryption_key or settings.secret_key
    return hashlib.sha256(material.encode("utf-8")).digest()


def encrypt_data(plaintext: str, key_material: str | None = None) -> str:
    """Encrypt a string with AES-256-GCM; returns urlsafe base64 of nonce + ciphertext."""
    nonce = os.urandom(_NONCE_SIZE)
    ciphertext = AESGCM(_derive_key(key_material)).encrypt(nonce, plaintext.encode("utf-8"), None)
    return base64.urlsafe_b64encode(nonce + ciphertext).decode("ascii")


def decrypt_data(token: str, key_material: str | None = None) -> str:
    """Reverse of encrypt_data. Raises ValueError on tampering or a wrong key."""
    try:
        raw = base64.urlsafe_b64decode(token.encode("ascii"))
        nonce, ciphertext = raw[:_NONCE_SIZE], raw[_NONCE_SIZE:]
        plaintext = AESGCM(_derive_key(key_material)).decrypt(nonce, ciphertext, None)
    except (InvalidTag, ValueError, TypeError) as e:
        raise ValueError("Unable to decrypt payload") from e
    return plaintext.decode("utf-8")
