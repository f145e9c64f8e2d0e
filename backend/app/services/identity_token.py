"""Apple identity token verification against Apple's published key set."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTClaimsError, JWTError

from app.core.exceptions import (
    IdentityTokenExpiredError,
    InvalidAudienceError,
    InvalidIssuerError,
    InvalidSignatureError,
    KeySetUnavailableError,
    MalformedIdentityTokenError,
    MissingIatClaimError,
    MissingSubjectClaimError,
    NonceMismatchError,
    TokenTooOldError,
)
from app.core.security import safe_compare
from app.services.apple_auth import APPLE_ISSUER, exchange_code_for_tokens
from app.services.repositories import AppleConfig

logger = logging.getLogger(__name__)

APPLE_KEYS_URL = "https://appleid.apple.com/auth/keys"

ID_TOKEN_MAX_AGE_SECONDS = 600
CLOCK_TOLERANCE_SECONDS = 30
JWKS_FETCH_TIMEOUT_SECONDS = 10.0
JWKS_CACHE_TTL_SECONDS = 3600


@dataclass(frozen=True)
class AppleUserInfo:
    sub: str
    email: Optional[str] = None
    email_verified: bool = False
    is_private_email: bool = False


def _claim_flag(value: Any) -> bool:
    # Apple sends these as either JSON booleans or the strings "true"/"false".
    return value is True or value == "true"


class AppleKeySet:
    """Cached copy of Apple's JWKS, refetched on expiry or unknown ``kid``."""

    def __init__(
        self,
        url: str = APPLE_KEYS_URL,
        *,
        http_client: Optional[httpx.Client] = None,
        timeout: float = JWKS_FETCH_TIMEOUT_SECONDS,
        cache_ttl: int = JWKS_CACHE_TTL_SECONDS,
    ) -> None:
        self._url = url
        self._http_client = http_client
        self._timeout = timeout
        self._cache_ttl = cache_ttl
        self._lock = threading.Lock()
        self._keys: List[Dict[str, Any]] = []
        self._expires_at: float = 0.0

    def _fetch(self) -> List[Dict[str, Any]]:
        client = self._http_client or httpx.Client()
        try:
            response = client.get(self._url, timeout=self._timeout)
            response.raise_for_status()
            keys = response.json().get("keys", [])
        except (httpx.HTTPError, ValueError, AttributeError) as exc:
            logger.error("Failed to fetch Apple JWKS: %s", exc)
            raise KeySetUnavailableError() from exc
        finally:
            if self._http_client is None:
                client.close()
        logger.info("Fetched Apple JWKS (%d keys)", len(keys))
        return keys

    def _refresh(self) -> None:
        self._keys = self._fetch()
        self._expires_at = time.monotonic() + self._cache_ttl

    def get_key(self, kid: str) -> Dict[str, Any]:
        """
        Return the JWK for ``kid``

        Raises:
            InvalidSignatureError: If Apple does not publish that key
            KeySetUnavailableError: If the key set cannot be fetched
        """
        with self._lock:
            if time.monotonic() >= self._expires_at:
                self._refresh()
            key = self._find(kid)
            if key is None:
                # Apple rotated keys since our last fetch.
                self._refresh()
                key = self._find(kid)
        if key is None:
            raise InvalidSignatureError(f"Signing key {kid} not found in Apple JWKS")
        return key

    def _find(self, kid: str) -> Optional[Dict[str, Any]]:
        for key in self._keys:
            if key.get("kid") == kid:
                return key
        return None


class IdentityTokenVerifier:
    """Validates Apple ``id_token`` values and extracts the user claims."""

    def __init__(self, key_set: Optional[AppleKeySet] = None) -> None:
        self.key_set = key_set or AppleKeySet()

    def verify(
        self,
        id_token: str,
        client_id: str,
        expected_nonce: Optional[str] = None,
        now: Optional[int] = None,
    ) -> AppleUserInfo:
        """
        Verify signature, issuer, audience, nonce and freshness

        Args:
            id_token: JWT from Apple
            client_id: Expected audience
            expected_nonce: Nonce issued with the web authorization request;
                None for native flows, which do not bind a nonce
            now: Current epoch seconds (defaults to current time)

        Returns:
            AppleUserInfo: Verified claims

        Raises:
            TokenVerificationError: Subclass naming the failed check
        """
        try:
            header = jwt.get_unverified_header(id_token)
        except JWTError as exc:
            raise MalformedIdentityTokenError("Identity token is not a valid JWT") from exc

        kid = header.get("kid")
        if not kid:
            raise MalformedIdentityTokenError("Identity token missing key ID")
        key = self.key_set.get_key(kid)

        try:
            claims = jwt.decode(
                id_token,
                key,
                algorithms=[key.get("alg", "RS256")],
                audience=client_id,
                issuer=APPLE_ISSUER,
                options={"leeway": CLOCK_TOLERANCE_SECONDS, "verify_at_hash": False},
            )
        except ExpiredSignatureError as exc:
            raise IdentityTokenExpiredError("Identity token has expired") from exc
        except JWTClaimsError as exc:
            message = str(exc)
            if "audience" in message.lower():
                raise InvalidAudienceError("Identity token audience mismatch") from exc
            if "issuer" in message.lower():
                raise InvalidIssuerError("Identity token issuer mismatch") from exc
            raise MalformedIdentityTokenError(f"Identity token claims invalid: {message}") from exc
        except JWTError as exc:
            raise InvalidSignatureError("Identity token signature verification failed") from exc

        # jose only compares aud when the claim is present.
        if "aud" not in claims:
            raise InvalidAudienceError("Identity token has no audience")

        sub = claims.get("sub")
        if not isinstance(sub, str) or not sub:
            raise MissingSubjectClaimError("Missing or invalid sub claim in ID token")

        if expected_nonce:
            nonce = claims.get("nonce")
            if not isinstance(nonce, str) or not safe_compare(nonce, expected_nonce):
                raise NonceMismatchError("Nonce mismatch - possible replay attack", subject=sub)

        iat = claims.get("iat")
        if not isinstance(iat, (int, float)):
            raise MissingIatClaimError("Missing iat claim in ID token", subject=sub)
        current = int(time.time()) if now is None else now
        if current - iat > ID_TOKEN_MAX_AGE_SECONDS:
            raise TokenTooOldError("ID token too old - possible replay attack", subject=sub)

        email = claims.get("email")
        return AppleUserInfo(
            sub=sub,
            email=email if isinstance(email, str) else None,
            email_verified=_claim_flag(claims.get("email_verified")),
            is_private_email=_claim_flag(claims.get("is_private_email")),
        )


def authenticate_with_apple(
    config: AppleConfig,
    authorization_code: str,
    code_verifier: str,
    expected_nonce: Optional[str],
    *,
    verifier: IdentityTokenVerifier,
    http_client: Optional[httpx.Client] = None,
    timeout: float = 15.0,
    now: Optional[int] = None,
) -> AppleUserInfo:
    """Exchange the code, then verify the returned identity token."""
    tokens = exchange_code_for_tokens(
        config, authorization_code, code_verifier, http_client=http_client, timeout=timeout
    )
    return verifier.verify(tokens.id_token, config.client_id, expected_nonce, now=now)
