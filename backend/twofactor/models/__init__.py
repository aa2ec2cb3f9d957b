"""
SQLAlchemy models for the two-factor service.

All models are exported from this module for easy importing.
"""

from twofactor.models.credential import TwoFactorCredential, BackupCode, CredentialState
from twofactor.models.audit import TwoFactorEvent, TwoFactorAction, RiskLevel, get_risk_for_action

__all__ = [
    # Credential models
    "TwoFactorCredential",
    "BackupCode",
    "CredentialState",
    # Audit models
    "TwoFactorEvent",
    "TwoFactorAction",
    "RiskLevel",
    "get_risk_for_action",
]
