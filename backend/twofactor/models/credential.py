"""
Two-factor credential models.

A credential belongs to exactly one user identity and carries the TOTP shared
secret plus the current set of hashed backup codes. Re-enrolling replaces the
credential row, which removes the previous secret and its backup codes.
"""

from sqlalchemy import Column, String, DateTime, Boolean, Integer, BigInteger, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime
import uuid
import enum
from twofactor.database import Base


class CredentialState(str, enum.Enum):
    """Lifecycle of a user's second factor"""
    NOT_SET = "not_set"      # No credential row exists
    PENDING = "pending"      # Secret issued, waiting for the first live code
    ENABLED = "enabled"      # Confirmed, required at login
    # No DISABLED member: disable deletes the row (back to NOT_SET) and the
    # history is kept as a TwoFactorAction.DISABLE audit event.


class TwoFactorCredential(Base):
    """TOTP shared secret and enrollment state for one user"""
    __tablename__ = "twofactor_credentials"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(255), unique=True, nullable=False, index=True)

    # Base32-encoded shared secret
    secret = Column(String(128), nullable=False)
    state = Column(String(20), nullable=False, default=CredentialState.PENDING.value)

    # Anti-replay marker: highest time step already consumed
    last_used_step = Column(BigInteger, nullable=True)
    confirmed_at = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    backup_codes = relationship(
        "BackupCode",
        back_populates="credential",
        cascade="all, delete-orphan",
        order_by="BackupCode.position",
    )

    @property
    def credential_state(self) -> CredentialState:
        return CredentialState(self.state)

    def __repr__(self):
        return f"<TwoFactorCredential(id={self.id}, user_id={self.user_id}, state={self.state})>"


class BackupCode(Base):
    """Single-use recovery code (hash only, plaintext is never stored)"""
    __tablename__ = "twofactor_backup_codes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    credential_id = Column(
        String(36),
        ForeignKey("twofactor_credentials.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position = Column(Integer, nullable=False)

    # Salted PBKDF2 hash (passlib modular crypt format)
    code_hash = Column(String(255), nullable=False)

    # Usage is monotonic: used only ever goes False -> True
    used = Column(Boolean, default=False, nullable=False)
    used_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    credential = relationship("TwoFactorCredential", back_populates="backup_codes")

    def __repr__(self):
        return f"<BackupCode(id={self.id}, credential_id={self.credential_id}, used={self.used})>"
