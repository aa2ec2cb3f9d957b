"""
Audit trail for two-factor events.

Every enrollment, verification and configuration change is recorded so that
security reviews can reconstruct who enabled, used or removed a second factor.
"""

from sqlalchemy import Column, String, DateTime, Text, JSON
from datetime import datetime
import uuid
import enum
from twofactor.database import Base


class TwoFactorAction(str, enum.Enum):
    """Types of auditable two-factor actions"""
    SETUP = "2fa_setup"
    ENABLE = "2fa_enable"
    ENABLE_FAILED = "2fa_enable_failed"
    VERIFIED_TOTP = "2fa_verified_totp"
    VERIFIED_BACKUP_CODE = "2fa_verified_backup_code"
    VERIFY_FAILED = "2fa_verify_failed"
    RATE_LIMITED = "2fa_rate_limited"
    DISABLE = "2fa_disable"
    BACKUP_CODES_REGENERATED = "2fa_backup_codes_regenerated"


class RiskLevel(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


_HIGH_RISK_ACTIONS = {
    TwoFactorAction.ENABLE_FAILED,
    TwoFactorAction.VERIFY_FAILED,
    TwoFactorAction.RATE_LIMITED,
    TwoFactorAction.DISABLE,
}

_LOW_RISK_ACTIONS = {
    TwoFactorAction.VERIFIED_TOTP,
}


def get_risk_for_action(action: TwoFactorAction) -> RiskLevel:
    """Map an action to the risk level recorded with it"""
    if action in _HIGH_RISK_ACTIONS:
        return RiskLevel.HIGH
    if action in _LOW_RISK_ACTIONS:
        return RiskLevel.LOW
    return RiskLevel.MEDIUM


class TwoFactorEvent(Base):
    """Audit log entry for a two-factor event"""
    __tablename__ = "twofactor_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    action = Column(String(50), nullable=False, index=True)
    risk_level = Column(String(10), nullable=False)
    user_id = Column(String(255), nullable=False, index=True)

    description = Column(Text, nullable=True)
    # Attribute name differs from the column: 'metadata' is reserved on declarative classes
    details = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<TwoFactorEvent(id={self.id}, action={self.action}, user_id={self.user_id})>"
