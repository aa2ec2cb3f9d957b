"""
Audit Service for two-factor events.

Provides:
- Centralized recording of enrollment, verification and configuration events
- Risk level derived from the action
- Per-user event queries
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from twofactor.models import TwoFactorEvent, TwoFactorAction, get_risk_for_action

logger = logging.getLogger(__name__)


class AuditService:
    """Service for managing two-factor audit events"""

    def __init__(self, db: Session):
        self.db = db

    def log(
        self,
        action: TwoFactorAction,
        user_id: str,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TwoFactorEvent:
        """
        Create an audit event.

        Args:
            action: The action being logged
            user_id: Identity the event belongs to
            description: Human-readable description
            metadata: Additional context (never secrets or codes)

        Returns:
            Created TwoFactorEvent entry
        """
        if description is None:
            description = "Two-factor authentication: " + action.value.replace("2fa_", "").replace("_", " ")

        entry = TwoFactorEvent(
            action=action.value,
            risk_level=get_risk_for_action(action).value,
            user_id=user_id,
            description=description,
            details=metadata,
        )

        self.db.add(entry)
        self.db.commit()
        self.db.refresh(entry)

        logger.debug(f"Audit event created: {action.value} for {user_id}")

        return entry

    def get_events(
        self,
        user_id: str,
        action: Optional[TwoFactorAction] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[TwoFactorEvent]:
        """Most recent events for a user, newest first"""
        query = self.db.query(TwoFactorEvent).filter(TwoFactorEvent.user_id == user_id)

        if action is not None:
            query = query.filter(TwoFactorEvent.action == action.value)
        if since is not None:
            query = query.filter(TwoFactorEvent.created_at >= since)

        return query.order_by(TwoFactorEvent.created_at.desc()).limit(limit).all()
