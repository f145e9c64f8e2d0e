"""SQLAlchemy implementations of the user and refresh-token repositories."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.models.security import RefreshTokenModel
from app.models.user import AuthUserModel
from app.services.repositories import (
    AuthUser,
    NewAuthUser,
    NewRefreshToken,
    RefreshTokenRecord,
    UserLockoutState,
)


def _utc(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo; every stored timestamp is UTC.
    if dt is None:
        return None
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_user(row: AuthUserModel) -> AuthUser:
    return AuthUser(
        id=row.id,
        email=row.email,
        role=row.role,
        apple_user_id=row.apple_user_id,
        created_at=_utc(row.created_at),
        last_login_at=_utc(row.last_login_at),
    )


def _to_token(row: RefreshTokenModel) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        user_agent=row.user_agent,
        expires_at=_utc(row.expires_at),
        created_at=_utc(row.created_at),
        last_used_at=_utc(row.last_used_at),
        revoked=bool(row.revoked),
    )


class SqlAlchemyUserRepository:
    """User storage backed by the ``auth_users`` table."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def find_by_apple_user_id(self, apple_user_id: str) -> Optional[AuthUser]:
        row = self.db.query(AuthUserModel).filter(AuthUserModel.apple_user_id == apple_user_id).first()
        return _to_user(row) if row else None

    def find_by_email(self, email: str) -> Optional[AuthUser]:
        row = self.db.query(AuthUserModel).filter(AuthUserModel.email == email).first()
        return _to_user(row) if row else None

    def find_by_id(self, user_id: str) -> Optional[AuthUser]:
        row = self.db.query(AuthUserModel).filter(AuthUserModel.id == user_id).first()
        return _to_user(row) if row else None

    def create(self, data: NewAuthUser) -> AuthUser:
        row = AuthUserModel(
            email=data.email,
            apple_user_id=data.apple_user_id,
            role=data.role,
            created_at=_now(),
        )
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)
        return _to_user(row)

    def update_last_login(self, user_id: str, timestamp: datetime) -> None:
        self.db.query(AuthUserModel).filter(AuthUserModel.id == user_id).update(
            {AuthUserModel.last_login_at: timestamp}
        )
        self.db.commit()

    def get_lockout_state(self, user_id: str) -> Optional[UserLockoutState]:
        row = self.db.query(AuthUserModel).filter(AuthUserModel.id == user_id).first()
        if row is None:
            return None
        return UserLockoutState(
            failed_login_attempts=row.failed_login_attempts or 0,
            locked_until=_utc(row.locked_until),
            last_failed_attempt_at=_utc(row.last_failed_attempt_at),
        )

    def update_lockout_state(self, user_id: str, state: UserLockoutState) -> None:
        self.db.query(AuthUserModel).filter(AuthUserModel.id == user_id).update(
            {
                AuthUserModel.failed_login_attempts: state.failed_login_attempts,
                AuthUserModel.locked_until: state.locked_until,
                AuthUserModel.last_failed_attempt_at: state.last_failed_attempt_at,
            }
        )
        self.db.commit()


class SqlAlchemyRefreshTokenRepository:
    """Refresh token storage backed by the ``auth_refresh_tokens`` table."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def _active(self):
        return self.db.query(RefreshTokenModel).filter(RefreshTokenModel.revoked == False)  # noqa: E712

    def find_by_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        row = self._active().filter(RefreshTokenModel.token_hash == token_hash).first()
        return _to_token(row) if row else None

    def create(self, data: NewRefreshToken) -> RefreshTokenRecord:
        row = RefreshTokenModel(
            user_id=data.user_id,
            token_hash=data.token_hash,
            user_agent=data.user_agent,
            expires_at=data.expires_at,
            created_at=_now(),
            revoked=False,
        )
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)
        return _to_token(row)

    def revoke_by_hash(self, token_hash: str) -> None:
        self._active().filter(RefreshTokenModel.token_hash == token_hash).update(
            {RefreshTokenModel.revoked: True, RefreshTokenModel.revoked_at: _now()},
            synchronize_session=False,
        )
        self.db.commit()

    def revoke_all_for_user(self, user_id: str) -> None:
        self._active().filter(RefreshTokenModel.user_id == user_id).update(
            {RefreshTokenModel.revoked: True, RefreshTokenModel.revoked_at: _now()},
            synchronize_session=False,
        )
        self.db.commit()

    def find_active_by_user(self, user_id: str) -> List[RefreshTokenRecord]:
        rows = (
            self._active()
            .filter(RefreshTokenModel.user_id == user_id, RefreshTokenModel.expires_at > _now())
            .all()
        )
        return [_to_token(row) for row in rows]

    def count_active_for_user(self, user_id: str) -> int:
        return (
            self._active()
            .filter(RefreshTokenModel.user_id == user_id, RefreshTokenModel.expires_at > _now())
            .count()
        )

    def delete_expired(self) -> int:
        count = (
            self.db.query(RefreshTokenModel)
            .filter(or_(RefreshTokenModel.expires_at <= _now(), RefreshTokenModel.revoked == True))  # noqa: E712
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return count
