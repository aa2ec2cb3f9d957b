"""
Credential repository over SQLAlchemy.

Narrow transactional operations used by the two-factor services:
- get / put (atomic replace) / delete
- transact: row-locked read-modify-write of one user's credential
- mark_backup_code_used: compare-and-swap on a single backup code
- replace_backup_codes: swap the whole backup-code set in one commit
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional, TypeVar

from sqlalchemy import update
from sqlalchemy.orm import Session

from twofactor.models import TwoFactorCredential, BackupCode

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CredentialRepository:
    """Persistence for TwoFactorCredential and its BackupCode set"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, user_id: str) -> Optional[TwoFactorCredential]:
        return self.db.query(TwoFactorCredential).filter(
            TwoFactorCredential.user_id == user_id
        ).first()

    def put(
        self,
        user_id: str,
        credential: TwoFactorCredential,
        backup_code_hashes: Optional[List[str]] = None,
    ) -> TwoFactorCredential:
        """
        Atomically replace whatever credential the user had.

        The previous row and its backup codes are deleted in the same commit
        that inserts the new one; nothing from the old secret generation survives.
        """
        credential.user_id = user_id
        try:
            existing = self.db.query(TwoFactorCredential).filter(
                TwoFactorCredential.user_id == user_id
            ).with_for_update().first()
            if existing is not None:
                self.db.delete(existing)
                self.db.flush()

            credential.backup_codes = [
                BackupCode(position=i, code_hash=code_hash)
                for i, code_hash in enumerate(backup_code_hashes or [])
            ]
            self.db.add(credential)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(credential)
        return credential

    def transact(self, user_id: str, fn: Callable[[Optional[TwoFactorCredential]], T]) -> T:
        """
        Run fn against the user's credential under a row lock and commit.

        fn may mutate the credential it receives; any exception rolls the
        transaction back and propagates.
        """
        try:
            credential = self.db.query(TwoFactorCredential).filter(
                TwoFactorCredential.user_id == user_id
            ).with_for_update().populate_existing().first()
            result = fn(credential)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return result

    def delete(self, user_id: str) -> bool:
        """Remove the credential and its backup codes. Returns False if none existed."""
        try:
            credential = self.db.query(TwoFactorCredential).filter(
                TwoFactorCredential.user_id == user_id
            ).with_for_update().first()
            if credential is None:
                return False
            self.db.delete(credential)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return True

    def get_backup_codes(self, credential_id: str) -> List[BackupCode]:
        return self.db.query(BackupCode).filter(
            BackupCode.credential_id == credential_id
        ).order_by(BackupCode.position).all()

    def count_unused_backup_codes(self, credential_id: str) -> int:
        return self.db.query(BackupCode).filter(
            BackupCode.credential_id == credential_id,
            BackupCode.used == False  # noqa: E712
        ).count()

    def mark_backup_code_used(self, code_id: int, used_at: datetime) -> bool:
        """
        Flip one backup code to used if, and only if, it is still unused.

        The conditional UPDATE is the single point of truth: of any number of
        concurrent callers exactly one sees rowcount == 1.
        """
        try:
            result = self.db.execute(
                update(BackupCode)
                .where(BackupCode.id == code_id, BackupCode.used == False)  # noqa: E712
                .values(used=True, used_at=used_at)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return result.rowcount == 1

    def replace_backup_codes(self, credential_id: str, backup_code_hashes: List[str]) -> None:
        """Delete the full prior set and insert the new one in a single commit"""
        try:
            self.db.query(BackupCode).filter(
                BackupCode.credential_id == credential_id
            ).delete(synchronize_session=False)
            self.db.add_all([
                BackupCode(credential_id=credential_id, position=i, code_hash=code_hash)
                for i, code_hash in enumerate(backup_code_hashes)
            ])
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.expire_all()
