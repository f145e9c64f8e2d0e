"""API dependencies - services, authentication and rate limiting"""

from datetime import timedelta
from typing import Callable, Optional

import httpx
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from app.config import settings
from app.core.database import get_db
from app.core.exceptions import AuthenticationError, RateLimitExceededError
from app.core.security import decode_access_token
from app.services.audit_service import AuditService
from app.services.auth_service import AuthService
from app.services.identity_token import AppleKeySet, IdentityTokenVerifier
from app.services.rate_limiter import rate_limiter
from app.services.repositories import AuthUser
from app.services.sql_repositories import SqlAlchemyRefreshTokenRepository, SqlAlchemyUserRepository

# Optional bearer: browsers authenticate with the access cookie instead.
bearer_scheme = HTTPBearer(auto_error=False)

# One key set per process so the JWKS cache is shared between requests.
_identity_verifier = IdentityTokenVerifier(
    AppleKeySet(timeout=settings.APPLE_JWKS_TIMEOUT_SECONDS, cache_ttl=settings.JWKS_CACHE_TTL_SECONDS)
)


def get_identity_verifier() -> IdentityTokenVerifier:
    return _identity_verifier


def get_apple_http_client() -> Optional[httpx.Client]:
    """HTTP client for Apple's token endpoint; None opens one per exchange."""
    return None


def get_auth_service(
    db: Session = Depends(get_db),
    identity_verifier: IdentityTokenVerifier = Depends(get_identity_verifier),
    http_client: Optional[httpx.Client] = Depends(get_apple_http_client),
) -> AuthService:
    """
    Build the per-request authentication service

    Args:
        db: Database session
        identity_verifier: Process-wide Apple token verifier
        http_client: Client used for the code exchange

    Returns:
        AuthService bound to SQLAlchemy repositories
    """
    return AuthService(
        SqlAlchemyUserRepository(db),
        SqlAlchemyRefreshTokenRepository(db),
        apple_config=settings.apple_config(),
        identity_verifier=identity_verifier,
        audit=AuditService(db),
        lockout_config=settings.lockout_config(),
        session_config=settings.session_config(),
        access_token_ttl=timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
        refresh_token_ttl=timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS),
        http_client=http_client,
        exchange_timeout=settings.APPLE_TOKEN_TIMEOUT_SECONDS,
    )


def get_client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def rate_limit(scope: str, limit: int) -> Callable[[Request], None]:
    """Dependency factory enforcing ``limit`` requests per minute per client IP."""

    def dependency(request: Request) -> None:
        decision = rate_limiter.hit(f"{scope}:{get_client_ip(request)}", limit, 60)
        if not decision.allowed:
            raise RateLimitExceededError(
                "Too many requests. Please try again later.",
                retry_after_seconds=decision.retry_after_seconds,
            )

    return dependency


def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> AuthUser:
    """
    Get current authenticated user from the access cookie or bearer token

    Raises:
        AuthenticationError: If token is missing, invalid or user not found
    """
    token = request.cookies.get(settings.cookie_name("access_token"))
    if not token and credentials:
        token = credentials.credentials
    if not token:
        raise AuthenticationError("Not authenticated")

    payload = decode_access_token(token)
    if not payload:
        raise AuthenticationError("Invalid or expired token")

    user = SqlAlchemyUserRepository(db).find_by_id(payload["sub"])
    if not user:
        raise AuthenticationError("User not found")
    return user
