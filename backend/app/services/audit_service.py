"""Audit service for authentication events."""

from __future__ import annotations

import json
import logging
from typing import Optional

from sqlalchemy.orm import Session

from app.models.audit import AuditEvent
from app.services.repositories import AuditEntry

logger = logging.getLogger(__name__)


class AuditService:
    """Log security events and, when a session is given, persist them."""

    def __init__(self, db: Optional[Session] = None) -> None:
        self._db = db

    def log_auth_event(self, entry: AuditEntry) -> None:
        action = "auth.success" if entry.success else "auth.failure"
        log = logger.info if entry.success else logger.warning
        log(
            "%s user_id=%s reason=%s ip=%s",
            action,
            entry.user_id,
            entry.reason,
            entry.ip_address,
        )

        if self._db is None:
            return

        event = AuditEvent(
            user_id=entry.user_id,
            action=action,
            success=entry.success,
            reason=entry.reason,
            ip_address=entry.ip_address,
            metadata_json=json.dumps(entry.metadata, ensure_ascii=False) if entry.metadata else None,
        )
        self._db.add(event)
        self._db.commit()
