"""Refresh token issuance, rotation and revocation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from app.core.exceptions import (
    InvalidRefreshTokenError,
    RefreshTokenExpiredError,
    SessionInvalidatedError,
    UserNotFoundError,
)
from app.core.security import create_access_token, generate_refresh_token, hash_token
from app.services.repositories import AuthUser, NewRefreshToken, RefreshTokenRepository, UserRepository
from app.services.session_policy import DEFAULT_SESSION_CONFIG, SessionConfig, has_user_agent_changed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionTokens:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_at: datetime


@dataclass(frozen=True)
class RotationResult:
    user: AuthUser
    tokens: SessionTokens


class TokenService:
    """Manage the refresh-token lifecycle for one pair of repositories."""

    def __init__(
        self,
        users: UserRepository,
        refresh_tokens: RefreshTokenRepository,
        *,
        session_config: SessionConfig = DEFAULT_SESSION_CONFIG,
        access_token_ttl: timedelta = timedelta(minutes=15),
        refresh_token_ttl: timedelta = timedelta(days=7),
    ) -> None:
        self.users = users
        self.refresh_tokens = refresh_tokens
        self.session_config = session_config
        self.access_token_ttl = access_token_ttl
        self.refresh_token_ttl = refresh_token_ttl

    @staticmethod
    def _utc(dt: datetime) -> datetime:
        return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt

    def issue_session(
        self,
        user: AuthUser,
        user_agent: Optional[str],
        now: Optional[datetime] = None,
    ) -> SessionTokens:
        """Create an access token and persist a new refresh token for ``user``."""
        now = now or datetime.now(timezone.utc)
        access_token = create_access_token(
            {"sub": user.id, "email": user.email, "role": user.role},
            expires_delta=self.access_token_ttl,
        )
        refresh_token = generate_refresh_token()
        expires_at = now + self.refresh_token_ttl
        self.refresh_tokens.create(
            NewRefreshToken(
                user_id=user.id,
                token_hash=hash_token(refresh_token),
                user_agent=user_agent,
                expires_at=expires_at,
            )
        )
        return SessionTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=int(self.access_token_ttl.total_seconds()),
            refresh_expires_at=expires_at,
        )

    def rotate(
        self,
        presented_token: str,
        user_agent: Optional[str],
        now: Optional[datetime] = None,
    ) -> RotationResult:
        """
        Exchange a refresh token for a new token pair

        The presented token is single-use: it is revoked before the new pair
        is issued. A token presented from a different OS or browser family
        revokes every session of its owner.

        Raises:
            InvalidRefreshTokenError: Unknown or already rotated token
            RefreshTokenExpiredError: Token is past its expiry
            SessionInvalidatedError: Device binding mismatch (possible theft)
            UserNotFoundError: Token owner no longer exists
        """
        now = now or datetime.now(timezone.utc)
        token_hash = hash_token(presented_token)

        record = self.refresh_tokens.find_by_hash(token_hash)
        if record is None or record.revoked:
            raise InvalidRefreshTokenError()

        if self._utc(record.expires_at) < now:
            self.refresh_tokens.revoke_by_hash(token_hash)
            raise RefreshTokenExpiredError()

        if (
            self.session_config.revoke_on_user_agent_change
            and record.user_agent
            and has_user_agent_changed(record.user_agent, user_agent)
        ):
            logger.warning(
                "Refresh token used with different user-agent - possible token theft "
                "user_id=%s expected=%r actual=%r",
                record.user_id,
                record.user_agent[:50],
                (user_agent or "")[:50],
            )
            self.refresh_tokens.revoke_all_for_user(record.user_id)
            raise SessionInvalidatedError()

        user = self.users.find_by_id(record.user_id)
        if user is None:
            raise UserNotFoundError()

        self.refresh_tokens.revoke_by_hash(token_hash)
        tokens = self.issue_session(user, user_agent, now=now)
        return RotationResult(user=user, tokens=tokens)

    def revoke(self, presented_token: str) -> bool:
        """Revoke a refresh token (logout). Returns False if it was not active."""
        token_hash = hash_token(presented_token)
        if self.refresh_tokens.find_by_hash(token_hash) is None:
            return False
        self.refresh_tokens.revoke_by_hash(token_hash)
        return True
