"""
Backup code store.

Implements:
- Generation of single-use recovery codes from an unambiguous alphabet
- Salted PBKDF2 hashing (plaintext is returned once and never persisted)
- Atomic redemption (exactly one concurrent redeemer wins)
- Full-set regeneration
"""

import enum
import logging
import secrets
from typing import List, Optional

from passlib.context import CryptContext

from twofactor.exceptions import EntropyUnavailable
from twofactor.models import TwoFactorCredential
from twofactor.repository import CredentialRepository
from twofactor.utils.clock import Clock, system_clock, to_utc_naive

logger = logging.getLogger(__name__)

# Uppercase alphanumerics without the look-alikes 0/O, 1/I/L
BACKUP_CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"

BACKUP_CODES_COUNT = 10
BACKUP_CODE_LENGTH = 8
DEFAULT_HASH_ROUNDS = 29000


class RedeemResult(str, enum.Enum):
    SUCCESS = "success"
    ALREADY_USED = "already_used"
    NOT_FOUND = "not_found"
    EXHAUSTED = "exhausted"


def normalize_backup_code(code: str) -> str:
    """Strip separators and whitespace, uppercase"""
    return (code or "").replace("-", "").replace(" ", "").strip().upper()


class BackupCodeStore:
    """Generates, hashes and redeems backup codes for a credential"""

    def __init__(
        self,
        repository: CredentialRepository,
        count: int = BACKUP_CODES_COUNT,
        length: int = BACKUP_CODE_LENGTH,
        hash_rounds: int = DEFAULT_HASH_ROUNDS,
        clock: Clock = system_clock,
    ):
        self.repository = repository
        self.count = count
        self.length = length
        self.clock = clock
        self.hash_context = CryptContext(
            schemes=["pbkdf2_sha256"],
            pbkdf2_sha256__rounds=hash_rounds,
        )

    @classmethod
    def from_settings(cls, repository: CredentialRepository, settings, clock: Clock = system_clock) -> "BackupCodeStore":
        return cls(
            repository,
            count=settings.backup_codes_count,
            length=settings.backup_code_length,
            hash_rounds=settings.backup_code_hash_rounds,
            clock=clock,
        )

    def _random_code(self, length: int) -> str:
        try:
            while True:
                code = "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(length))
                # All-digit strings are reserved for TOTP codes
                if not code.isdigit():
                    return code
        except (NotImplementedError, OSError) as e:
            logger.critical(f"Secure random source unavailable while generating backup codes: {e}")
            raise EntropyUnavailable("Secure random source unavailable") from e

    def generate(self, count: Optional[int] = None, length: Optional[int] = None) -> List[str]:
        """
        Generate a fresh batch of plaintext codes.

        Returns:
            List of distinct codes, each `length` characters from BACKUP_CODE_ALPHABET
        """
        count = self.count if count is None else count
        length = self.length if length is None else length

        codes: List[str] = []
        while len(codes) < count:
            code = self._random_code(length)
            if code not in codes:
                codes.append(code)
        return codes

    def hash_code(self, code: str) -> str:
        """Salted one-way hash of a normalized code"""
        return self.hash_context.hash(normalize_backup_code(code))

    def hash_codes(self, codes: List[str]) -> List[str]:
        return [self.hash_code(c) for c in codes]

    def looks_like_backup_code(self, submitted: str) -> bool:
        """True if the submission has the backup-code shape rather than a TOTP shape"""
        code = normalize_backup_code(submitted)
        if len(code) != self.length or code.isdigit():
            return False
        return all(c in BACKUP_CODE_ALPHABET for c in code)

    def redeem(self, credential: TwoFactorCredential, submitted: str) -> RedeemResult:
        """
        Verify and consume a backup code.

        Every stored hash is checked; the winning entry is then marked used with
        a conditional update, so a concurrent redemption of the same code gets
        ALREADY_USED.
        """
        code = normalize_backup_code(submitted)
        entries = self.repository.get_backup_codes(credential.id)

        matched = None
        for entry in entries:
            if self.hash_context.verify(code, entry.code_hash) and matched is None:
                matched = entry

        if matched is None:
            if entries and all(e.used for e in entries):
                return RedeemResult.EXHAUSTED
            return RedeemResult.NOT_FOUND

        if matched.used:
            return RedeemResult.ALREADY_USED

        if not self.repository.mark_backup_code_used(matched.id, to_utc_naive(self.clock())):
            logger.info(f"Concurrent redemption lost for credential: {credential.id}")
            return RedeemResult.ALREADY_USED

        logger.info(f"Backup code used for credential: {credential.id}")
        return RedeemResult.SUCCESS

    def regenerate(self, credential: TwoFactorCredential) -> List[str]:
        """
        Replace the whole set. Old codes become unredeemable even if unused.

        Returns:
            The new plaintext codes (shown to the user once)
        """
        codes = self.generate()
        self.repository.replace_backup_codes(credential.id, self.hash_codes(codes))

        logger.info(f"Backup codes regenerated for credential: {credential.id}")

        return codes

    def remaining(self, credential: TwoFactorCredential) -> int:
        """Number of unused codes in the active set"""
        return self.repository.count_unused_backup_codes(credential.id)
