"""Apple Sign-In OAuth client: client secret, authorize URL, code exchange."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlencode

import httpx
from jose import jwt
from jose.exceptions import JOSEError

from app.core.exceptions import ConfigIncompleteError, NotConfiguredError, TokenExchangeFailedError
from app.core.security import generate_code_challenge, generate_code_verifier, generate_nonce, generate_state
from app.services.repositories import AppleConfig

logger = logging.getLogger(__name__)

APPLE_ISSUER = "https://appleid.apple.com"
APPLE_AUTH_URL = "https://appleid.apple.com/auth/authorize"
APPLE_TOKEN_URL = "https://appleid.apple.com/auth/token"

CLIENT_SECRET_TTL_SECONDS = 600
TOKEN_EXCHANGE_TIMEOUT_SECONDS = 15.0


@dataclass(frozen=True)
class AppleTokenResponse:
    access_token: str
    token_type: str
    expires_in: int
    id_token: str
    refresh_token: Optional[str] = None


@dataclass(frozen=True)
class AuthorizationRequest:
    """Everything the route layer needs to start the web flow."""

    url: str
    state: str
    code_verifier: str
    nonce: str


def generate_client_secret(config: AppleConfig, now: Optional[int] = None) -> str:
    """
    Mint the ES256 client_secret JWT Apple expects at the token endpoint

    Args:
        config: Apple configuration
        now: Issue time in epoch seconds (defaults to current time)

    Returns:
        str: Signed JWT valid for 10 minutes

    Raises:
        ConfigIncompleteError: If any credential is empty or the key cannot be parsed
    """
    if not config.private_key or not config.key_id or not config.team_id or not config.client_id:
        raise ConfigIncompleteError()

    private_key = config.private_key.replace("\\n", "\n")
    issued_at = int(time.time()) if now is None else now

    claims = {
        "iss": config.team_id,
        "sub": config.client_id,
        "aud": APPLE_ISSUER,
        "iat": issued_at,
        "exp": issued_at + CLIENT_SECRET_TTL_SECONDS,
    }
    try:
        return jwt.encode(claims, private_key, algorithm="ES256", headers={"kid": config.key_id})
    except JOSEError as exc:
        raise ConfigIncompleteError(f"Apple private key could not be used: {exc}") from exc


def build_authorization_url(config: AppleConfig, state: str, code_challenge: str, nonce: str) -> str:
    """
    Build the redirect URL for Apple's authorize endpoint

    Raises:
        NotConfiguredError: If the client ID is empty
    """
    if not config.client_id:
        raise NotConfiguredError()

    params = {
        "client_id": config.client_id,
        "redirect_uri": config.redirect_uri,
        "response_type": "code id_token",
        "response_mode": "form_post",
        "scope": "email",
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
        "nonce": nonce,
    }
    return f"{APPLE_AUTH_URL}?{urlencode(params)}"


def create_authorization_request(config: AppleConfig) -> AuthorizationRequest:
    """Generate state, PKCE pair and nonce, and the matching authorize URL."""
    state = generate_state()
    code_verifier = generate_code_verifier()
    nonce = generate_nonce()
    url = build_authorization_url(config, state, generate_code_challenge(code_verifier), nonce)
    return AuthorizationRequest(url=url, state=state, code_verifier=code_verifier, nonce=nonce)


def exchange_code_for_tokens(
    config: AppleConfig,
    authorization_code: str,
    code_verifier: str,
    *,
    http_client: Optional[httpx.Client] = None,
    timeout: float = TOKEN_EXCHANGE_TIMEOUT_SECONDS,
) -> AppleTokenResponse:
    """
    Exchange an authorization code for Apple tokens

    Args:
        config: Apple configuration
        authorization_code: Code from Apple's callback
        code_verifier: PKCE verifier issued with the authorization request
        http_client: Optional shared client (tests inject a mock transport)
        timeout: Request timeout in seconds

    Returns:
        AppleTokenResponse: Apple's response, uninterpreted

    Raises:
        TokenExchangeFailedError: On timeout, transport failure or non-2xx status
    """
    client_secret = generate_client_secret(config)
    form = {
        "client_id": config.client_id,
        "client_secret": client_secret,
        "code": authorization_code,
        "grant_type": "authorization_code",
        "redirect_uri": config.redirect_uri,
        "code_verifier": code_verifier,
    }

    owns_client = http_client is None
    client = http_client or httpx.Client()
    try:
        response = client.post(
            APPLE_TOKEN_URL,
            data=form,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=timeout,
        )
    except httpx.HTTPError as exc:
        logger.warning("Apple token exchange transport error: %s", type(exc).__name__)
        raise TokenExchangeFailedError() from exc
    finally:
        if owns_client:
            client.close()

    if not response.is_success:
        try:
            body = response.text
        except (UnicodeDecodeError, httpx.HTTPError):
            body = "Unknown error"
        raise TokenExchangeFailedError(response.status_code, body)

    try:
        payload = response.json()
        return AppleTokenResponse(
            access_token=payload["access_token"],
            token_type=payload["token_type"],
            expires_in=payload["expires_in"],
            id_token=payload["id_token"],
            refresh_token=payload.get("refresh_token"),
        )
    except (ValueError, KeyError, TypeError) as exc:
        raise TokenExchangeFailedError(response.status_code, "Malformed token response") from exc
