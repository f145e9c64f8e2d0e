"""Domain records and the storage contracts the auth engine depends on.

Any storage engine plugs in by implementing ``UserRepository`` and
``RefreshTokenRepository``. The lockout methods on ``UserRepository`` are
optional; callers detect them with ``getattr``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Protocol, runtime_checkable


@dataclass(frozen=True)
class AppleConfig:
    """Apple Sign-In credentials, supplied once at startup."""

    client_id: str
    team_id: str
    key_id: str
    private_key: str  # PKCS#8 PEM, literal "\n" allowed
    redirect_uri: str


@dataclass
class AuthUser:
    id: str
    email: str
    role: str = "user"
    apple_user_id: Optional[str] = None
    created_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None


@dataclass
class NewAuthUser:
    email: str
    apple_user_id: str
    role: str = "user"


@dataclass
class UserLockoutState:
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_failed_attempt_at: Optional[datetime] = None


@dataclass
class RefreshTokenRecord:
    """Stored session. ``token_hash`` is the SHA-256 hex of the secret."""

    id: str
    user_id: str
    token_hash: str
    user_agent: Optional[str]
    expires_at: datetime
    created_at: datetime
    last_used_at: Optional[datetime] = None
    revoked: bool = False


@dataclass
class NewRefreshToken:
    user_id: str
    token_hash: str
    user_agent: Optional[str]
    expires_at: datetime


@dataclass
class SessionInfo:
    """Read view of a refresh token for session management screens."""

    id: str
    device_name: str
    device_type: str
    created_at: datetime
    last_used_at: Optional[datetime] = None
    is_current: bool = False


@dataclass
class AuditEntry:
    user_id: Optional[str]
    success: bool
    reason: Optional[str] = None
    ip_address: Optional[str] = None
    metadata: dict = field(default_factory=dict)


@runtime_checkable
class UserRepository(Protocol):
    """User storage used by sign-in and refresh."""

    def find_by_apple_user_id(self, apple_user_id: str) -> Optional[AuthUser]:
        ...

    def find_by_email(self, email: str) -> Optional[AuthUser]:
        ...

    def find_by_id(self, user_id: str) -> Optional[AuthUser]:
        ...

    def create(self, data: NewAuthUser) -> AuthUser:
        ...

    def update_last_login(self, user_id: str, timestamp: datetime) -> None:
        ...

    # Optional:
    #   get_lockout_state(user_id) -> Optional[UserLockoutState]
    #   update_lockout_state(user_id, state: UserLockoutState) -> None


@runtime_checkable
class RefreshTokenRepository(Protocol):
    """Refresh token storage.

    ``find_by_hash`` returns only non-revoked rows. ``find_active_by_user``
    returns non-revoked, non-expired rows in no particular order.
    """

    def find_by_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        ...

    def create(self, data: NewRefreshToken) -> RefreshTokenRecord:
        ...

    def revoke_by_hash(self, token_hash: str) -> None:
        ...

    def revoke_all_for_user(self, user_id: str) -> None:
        ...

    def find_active_by_user(self, user_id: str) -> List[RefreshTokenRecord]:
        ...

    def count_active_for_user(self, user_id: str) -> int:
        ...

    # Optional:
    #   delete_expired() -> int


class AuditSink(Protocol):
    """Receives security events. Never pass raw secrets."""

    def log_auth_event(self, entry: AuditEntry) -> None:
        ...
