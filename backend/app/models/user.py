"""User model"""

import uuid

from sqlalchemy import CheckConstraint, Column, Integer, String, DateTime, Index, text
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from app.core.database import Base


class AuthUserModel(Base):
    """User account created on first Sign in with Apple"""

    __tablename__ = "auth_users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(255), nullable=False, default="")
    apple_user_id = Column(String(255), nullable=True)
    role = Column(String(20), default="user", nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    last_login_at = Column(DateTime(timezone=True))

    # Account lockout
    failed_login_attempts = Column(Integer, default=0, nullable=False)
    locked_until = Column(DateTime(timezone=True))
    last_failed_attempt_at = Column(DateTime(timezone=True))

    # Relationships
    refresh_tokens = relationship("RefreshTokenModel", back_populates="user", cascade="all, delete-orphan")

    __table_args__ = (
        Index(
            "auth_users_apple_user_id_idx",
            "apple_user_id",
            unique=True,
            postgresql_where=text("apple_user_id IS NOT NULL"),
            sqlite_where=text("apple_user_id IS NOT NULL"),
        ),
        Index("auth_users_email_idx", "email"),
        CheckConstraint("failed_login_attempts >= 0", name="chk_failed_login_attempts"),
        CheckConstraint("role IN ('user', 'admin')", name="chk_role"),
    )

    def __repr__(self):
        return f"<AuthUserModel(id={self.id}, apple_user_id='{self.apple_user_id}', role='{self.role}')>"
