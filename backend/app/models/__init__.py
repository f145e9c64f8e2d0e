"""Database models"""

from app.models.user import AuthUserModel
from app.models.security import RefreshTokenModel
from app.models.audit import AuditEvent

__all__ = ["AuthUserModel", "RefreshTokenModel", "AuditEvent"]
