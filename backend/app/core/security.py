"""Security utilities - PKCE, nonces, token hashing, session JWTs"""

import base64
import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

from jose import JWTError, jwt

from app.config import settings

ACCESS_TOKEN_ROLES = {"user", "admin"}


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def generate_code_verifier() -> str:
    """
    Generate a PKCE code verifier (RFC 7636)

    Returns:
        str: 43-character URL-safe string carrying 256 bits of entropy
    """
    return _b64url(secrets.token_bytes(32))


def generate_code_challenge(verifier: str) -> str:
    """
    Derive the S256 code challenge for a verifier

    Args:
        verifier: PKCE code verifier

    Returns:
        str: base64url SHA-256 digest without padding
    """
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


def generate_nonce() -> str:
    """Generate a 128-bit nonce for ID token binding (32 hex chars)"""
    return secrets.token_hex(16)


def generate_state() -> str:
    """Generate a 128-bit CSRF state token (32 hex chars)"""
    return secrets.token_hex(16)


def safe_compare(a: Optional[str], b: Optional[str]) -> bool:
    """
    Timing-safe string comparison for state parameters and nonces

    Length is not secret, so it is checked before the constant-time compare.

    Args:
        a: First value
        b: Second value

    Returns:
        bool: True if both are present and equal
    """
    if a is None or b is None:
        return False
    if len(a) != len(b):
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def hash_token(token: str) -> str:
    """
    Hash a bearer secret for storage

    Args:
        token: Plaintext token

    Returns:
        str: SHA-256 hex digest
    """
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_refresh_token() -> str:
    """Generate an opaque refresh token (64 hex chars)"""
    return secrets.token_hex(32)


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """
    Create JWT access token

    Args:
        data: Claims to encode (sub, email, role)
        expires_delta: Token expiration time

    Returns:
        str: Encoded JWT token
    """
    to_encode = data.copy()
    now = datetime.now(timezone.utc)

    if expires_delta:
        expire = now + expires_delta
    else:
        expire = now + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode.update({
        "exp": expire,
        "iat": now,
        "typ": "access",
        "jti": secrets.token_urlsafe(16)
    })
    if settings.JWT_ISSUER:
        to_encode["iss"] = settings.JWT_ISSUER
    if settings.JWT_AUDIENCE:
        to_encode["aud"] = settings.JWT_AUDIENCE

    encoded_jwt = jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return encoded_jwt


def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    """
    Decode and verify JWT access token

    Args:
        token: JWT token string

    Returns:
        Optional[Dict]: Decoded token data or None if invalid
    """
    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            issuer=settings.JWT_ISSUER,
            options={"verify_aud": bool(settings.JWT_AUDIENCE)},
        )
    except JWTError:
        return None

    if payload.get("typ") != "access":
        return None
    if not isinstance(payload.get("sub"), str) or not isinstance(payload.get("email"), str):
        return None
    if payload.get("role") not in ACCESS_TOKEN_ROLES:
        return None
    return payload
