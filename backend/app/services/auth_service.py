"""Sign in with Apple orchestration: sign-in, refresh, logout, session management."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

import httpx
from prometheus_client import Counter

from app.core.exceptions import (
    AccountLockedError,
    AuthenticationError,
    CsrfStateMismatchError,
    MissingNonceError,
    MissingPkceVerifierError,
    TokenExchangeFailedError,
    TokenVerificationError,
)
from app.core.security import safe_compare
from app.services.account_lockout import (
    DEFAULT_LOCKOUT_CONFIG,
    LockoutConfig,
    check_lockout,
    format_lockout_duration,
    record_failed_attempt,
    reset_on_success,
)
from app.services.apple_auth import AuthorizationRequest, create_authorization_request
from app.services.identity_token import AppleUserInfo, IdentityTokenVerifier, authenticate_with_apple
from app.services.repositories import (
    AppleConfig,
    AuditEntry,
    AuditSink,
    AuthUser,
    NewAuthUser,
    RefreshTokenRepository,
    SessionInfo,
    UserLockoutState,
    UserRepository,
)
from app.services.session_policy import (
    DEFAULT_SESSION_CONFIG,
    SessionConfig,
    enforce_session_limits,
    get_user_sessions,
    revoke_all_sessions,
    revoke_session,
)
from app.services.token_service import RotationResult, SessionTokens, TokenService

logger = logging.getLogger(__name__)

AUTH_EVENTS = Counter(
    "apple_auth_events_total",
    "Authentication events by type and outcome",
    ["event", "outcome"],
)


@dataclass(frozen=True)
class SignInResult:
    user: AuthUser
    tokens: SessionTokens
    is_new_user: bool = False


class AuthService:
    """Per-request facade over the Apple flow, lockout policy and session tokens."""

    def __init__(
        self,
        users: UserRepository,
        refresh_tokens: RefreshTokenRepository,
        *,
        apple_config: AppleConfig,
        identity_verifier: IdentityTokenVerifier,
        audit: Optional[AuditSink] = None,
        lockout_config: LockoutConfig = DEFAULT_LOCKOUT_CONFIG,
        session_config: SessionConfig = DEFAULT_SESSION_CONFIG,
        access_token_ttl: timedelta = timedelta(minutes=15),
        refresh_token_ttl: timedelta = timedelta(days=7),
        http_client: Optional[httpx.Client] = None,
        exchange_timeout: float = 15.0,
    ) -> None:
        self.users = users
        self.refresh_tokens = refresh_tokens
        self.apple_config = apple_config
        self.identity_verifier = identity_verifier
        self.audit = audit
        self.lockout_config = lockout_config
        self.session_config = session_config
        self.http_client = http_client
        self.exchange_timeout = exchange_timeout
        self.tokens = TokenService(
            users,
            refresh_tokens,
            session_config=session_config,
            access_token_ttl=access_token_ttl,
            refresh_token_ttl=refresh_token_ttl,
        )

    def _audit(
        self,
        success: bool,
        reason: Optional[str] = None,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        **metadata: Any,
    ) -> None:
        if self.audit is None:
            return
        self.audit.log_auth_event(
            AuditEntry(user_id=user_id, success=success, reason=reason, ip_address=ip_address, metadata=metadata)
        )

    # ------------------------------------------------------------------
    # Sign-in
    # ------------------------------------------------------------------

    def start_sign_in(self) -> AuthorizationRequest:
        return create_authorization_request(self.apple_config)

    def complete_web_sign_in(
        self,
        *,
        code: str,
        state: str,
        saved_state: Optional[str],
        code_verifier: Optional[str],
        expected_nonce: Optional[str],
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> SignInResult:
        """
        Validate the callback's security cookies, then sign in

        Raises:
            CsrfStateMismatchError: State does not match the issued one
            MissingPkceVerifierError: Verifier cookie absent
            MissingNonceError: Nonce cookie absent
        """
        if not safe_compare(state, saved_state):
            self._audit(False, "Invalid state parameter", ip_address=ip_address)
            raise CsrfStateMismatchError()
        if not code_verifier:
            self._audit(False, "Missing PKCE verifier", ip_address=ip_address)
            raise MissingPkceVerifierError()
        if not expected_nonce:
            self._audit(False, "Missing nonce", ip_address=ip_address)
            raise MissingNonceError()

        return self.sign_in(code, code_verifier, expected_nonce, user_agent=user_agent, ip_address=ip_address)

    def sign_in(
        self,
        code: str,
        code_verifier: str,
        nonce: Optional[str],
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SignInResult:
        """Exchange an authorization code with Apple and open a session."""
        now = now or datetime.now(timezone.utc)
        try:
            apple_user = authenticate_with_apple(
                self.apple_config,
                code,
                code_verifier,
                nonce,
                verifier=self.identity_verifier,
                http_client=self.http_client,
                timeout=self.exchange_timeout,
                now=int(now.timestamp()),
            )
        except TokenExchangeFailedError as exc:
            logger.error("Apple token exchange failed status=%s", exc.status)
            AUTH_EVENTS.labels("sign_in", "exchange_failed").inc()
            self._audit(False, "token_exchange_failed", ip_address=ip_address)
            raise
        except TokenVerificationError as exc:
            self._record_verification_failure(exc, ip_address, now)
            raise

        return self._complete_sign_in(apple_user, user_agent, ip_address, now)

    def sign_in_native(
        self,
        identity_token: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SignInResult:
        """Sign in with an identity token obtained by a native client (no nonce binding)."""
        now = now or datetime.now(timezone.utc)
        try:
            apple_user = self.identity_verifier.verify(
                identity_token, self.apple_config.client_id, now=int(now.timestamp())
            )
        except TokenVerificationError as exc:
            self._record_verification_failure(exc, ip_address, now)
            raise

        return self._complete_sign_in(apple_user, user_agent, ip_address, now)

    def _complete_sign_in(
        self,
        apple_user: AppleUserInfo,
        user_agent: Optional[str],
        ip_address: Optional[str],
        now: datetime,
    ) -> SignInResult:
        user = self.users.find_by_apple_user_id(apple_user.sub)
        is_new_user = user is None

        if user is None:
            user = self.users.create(NewAuthUser(email=apple_user.email or "", apple_user_id=apple_user.sub))
            logger.info("New user created via Apple Sign-In user_id=%s", user.id)
        else:
            self._check_lockout(user, ip_address, now)

        enforce_session_limits(self.refresh_tokens, user.id, self.session_config)
        tokens = self.tokens.issue_session(user, user_agent, now=now)

        self.users.update_last_login(user.id, now)
        update_lockout_state = getattr(self.users, "update_lockout_state", None)
        if update_lockout_state is not None:
            update_lockout_state(user.id, reset_on_success())

        logger.info("User authenticated via Apple Sign-In user_id=%s", user.id)
        AUTH_EVENTS.labels("sign_in", "success").inc()
        self._audit(True, user_id=user.id, ip_address=ip_address, is_new_user=is_new_user)
        return SignInResult(user=user, tokens=tokens, is_new_user=is_new_user)

    def _check_lockout(self, user: AuthUser, ip_address: Optional[str], now: datetime) -> None:
        get_lockout_state = getattr(self.users, "get_lockout_state", None)
        if get_lockout_state is None:
            return
        state = get_lockout_state(user.id)
        if state is None:
            return

        result = check_lockout(state, now)
        if not result.is_locked:
            return

        AUTH_EVENTS.labels("sign_in", "locked").inc()
        self._audit(
            False,
            "account_locked",
            user_id=user.id,
            ip_address=ip_address,
            retry_after=result.retry_after_seconds,
        )
        wait = format_lockout_duration(timedelta(seconds=result.retry_after_seconds))
        raise AccountLockedError(
            result.retry_after_seconds,
            result.locked_until,
            message=f"Your account is temporarily locked. Please try again in {wait}.",
        )

    def _record_verification_failure(
        self,
        exc: TokenVerificationError,
        ip_address: Optional[str],
        now: datetime,
    ) -> None:
        logger.warning("Apple identity token rejected reason=%s", exc.reason)
        AUTH_EVENTS.labels("sign_in", exc.reason).inc()

        # Only failures after signature verification identify a real account.
        user = self.users.find_by_apple_user_id(exc.subject) if exc.subject else None
        self._audit(False, exc.reason, user_id=user.id if user else None, ip_address=ip_address)
        if user is None:
            return

        get_lockout_state = getattr(self.users, "get_lockout_state", None)
        update_lockout_state = getattr(self.users, "update_lockout_state", None)
        if get_lockout_state is None or update_lockout_state is None:
            return

        state = get_lockout_state(user.id) or UserLockoutState()
        result = record_failed_attempt(state, now, self.lockout_config)
        update_lockout_state(user.id, result.to_state(now))
        if result.should_lock:
            logger.warning(
                "Account locked user_id=%s attempts=%d duration=%s",
                user.id,
                result.new_failed_attempts,
                result.lock_duration,
            )

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def refresh(
        self,
        presented_token: str,
        user_agent: Optional[str],
        *,
        ip_address: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RotationResult:
        try:
            result = self.tokens.rotate(presented_token, user_agent, now=now)
        except AuthenticationError as exc:
            outcome = type(exc).__name__
            AUTH_EVENTS.labels("refresh", outcome).inc()
            self._audit(False, f"refresh_rejected:{outcome}", ip_address=ip_address)
            raise
        AUTH_EVENTS.labels("refresh", "success").inc()
        return result

    def logout(self, presented_token: Optional[str]) -> bool:
        if not presented_token:
            return False
        return self.tokens.revoke(presented_token)

    def list_sessions(self, user_id: str, current_token_hash: Optional[str] = None) -> List[SessionInfo]:
        return get_user_sessions(self.refresh_tokens, user_id, current_token_hash)

    def revoke_session(self, user_id: str, session_id: str) -> bool:
        return revoke_session(self.refresh_tokens, session_id, user_id)

    def revoke_all(self, user_id: str) -> None:
        revoke_all_sessions(self.refresh_tokens, user_id)
        logger.info("Revoked all sessions user_id=%s", user_id)
