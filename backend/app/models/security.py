"""Security-related persistence models."""

import uuid

from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, Index, Text
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from app.core.database import Base


class RefreshTokenModel(Base):
    """Refresh token record; only the SHA-256 hash of the secret is stored."""

    __tablename__ = "auth_refresh_tokens"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("auth_users.id", ondelete="CASCADE"), nullable=False, index=True)
    token_hash = Column(String(64), nullable=False)
    user_agent = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    revoked = Column(Boolean, default=False, nullable=False)
    revoked_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("AuthUserModel", back_populates="refresh_tokens")

    __table_args__ = (
        Index("auth_refresh_tokens_hash_idx", "token_hash", unique=True),
        Index("auth_refresh_tokens_expires_revoked_idx", "expires_at", "revoked"),
    )
