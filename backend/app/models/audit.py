"""Audit trail of sign-in and session events."""

from sqlalchemy import Boolean, Column, Integer, String, DateTime, ForeignKey, Text, Index
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from app.core.database import Base


class AuditEvent(Base):
    """Append-only authentication outcome. user_id is null when no account was identified."""

    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), ForeignKey("auth_users.id", ondelete="SET NULL"), nullable=True, index=True)
    action = Column(String(64), nullable=False, index=True)
    success = Column(Boolean, nullable=False)
    reason = Column(String(128), nullable=True, index=True)
    ip_address = Column(String(64), nullable=True)
    metadata_json = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    user = relationship("AuthUserModel")

    __table_args__ = (
        Index("idx_audit_events_created_at", "created_at"),
    )
