"""
Secret provisioning for two-factor enrollment.

Issues a fresh shared secret, its otpauth:// provisioning URI and a new batch
of backup codes, and stores the credential as PENDING in one atomic write.
"""

import base64
import logging
import secrets
from dataclasses import dataclass, field
from typing import List, Optional
from urllib.parse import quote, urlencode

from twofactor import metrics
from twofactor.exceptions import EntropyUnavailable
from twofactor.models import TwoFactorCredential, CredentialState, TwoFactorAction
from twofactor.repository import CredentialRepository
from twofactor.services.backup_codes import BackupCodeStore
from twofactor.services.totp_engine import TOTPEngine

logger = logging.getLogger(__name__)

MIN_SECRET_BYTES = 20


@dataclass
class ProvisioningResult:
    """Everything the enrollment screen needs. Plaintext codes are shown once."""
    secret: str
    provisioning_uri: str
    backup_codes: List[str] = field(default_factory=list)


def build_provisioning_uri(
    secret: str,
    account_label: str,
    issuer: str,
    algorithm: str = "SHA1",
    digits: int = 6,
    period: int = 30,
) -> str:
    """
    Key URI for authenticator apps:

        otpauth://totp/{issuer}:{label}?secret=...&issuer=...&algorithm=...&digits=...&period=...
    """
    label = f"{quote(issuer, safe='')}:{quote(account_label, safe='@')}"
    params = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": algorithm,
            "digits": digits,
            "period": period,
        },
        quote_via=quote,
    )
    return f"otpauth://totp/{label}?{params}"


def random_secret_bytes(length: int) -> bytes:
    """Read from the OS CSPRNG; there is no fallback source"""
    try:
        return secrets.token_bytes(length)
    except (NotImplementedError, OSError) as e:
        logger.critical(f"Secure random source unavailable: {e}")
        raise EntropyUnavailable("Secure random source unavailable") from e


class SecretProvisioner:
    """Creates PENDING credentials for enrollment"""

    def __init__(
        self,
        repository: CredentialRepository,
        backup_codes: BackupCodeStore,
        engine: TOTPEngine,
        issuer: str,
        secret_bytes: int = MIN_SECRET_BYTES,
        audit=None,
    ):
        self.repository = repository
        self.backup_codes = backup_codes
        self.engine = engine
        self.issuer = issuer
        self.secret_bytes = max(secret_bytes, MIN_SECRET_BYTES)
        self.audit = audit

    def generate_secret(
        self,
        user_id: str,
        account_label: str,
        issuer: Optional[str] = None,
    ) -> ProvisioningResult:
        """
        Generate a new TOTP secret and backup codes for the user.

        Any credential the user already had (pending or enabled) is replaced in
        full, so codes from the previous enrollment stop working.

        Args:
            user_id: Identity that owns the credential
            account_label: Label shown in the authenticator app (usually the email)
            issuer: Overrides the configured issuer name

        Returns:
            ProvisioningResult with base32 secret, URI and plaintext backup codes

        Raises:
            EntropyUnavailable: If the secure random source cannot be read
        """
        issuer = issuer or self.issuer

        raw = random_secret_bytes(self.secret_bytes)
        secret = base64.b32encode(raw).decode("ascii").rstrip("=")

        codes = self.backup_codes.generate()
        hashed_codes = self.backup_codes.hash_codes(codes)

        credential = TwoFactorCredential(
            user_id=user_id,
            secret=secret,
            state=CredentialState.PENDING.value,
            last_used_step=None,
            confirmed_at=None,
        )
        self.repository.put(user_id, credential, hashed_codes)

        provisioning_uri = build_provisioning_uri(
            secret,
            account_label,
            issuer,
            algorithm=self.engine.algorithm,
            digits=self.engine.digits,
            period=self.engine.period,
        )

        logger.info(f"TOTP secret generated for user: {user_id}")
        metrics.record_enrollment("provisioned")

        if self.audit is not None:
            self.audit.log(TwoFactorAction.SETUP, user_id, metadata={"issuer": issuer})

        return ProvisioningResult(
            secret=secret,
            provisioning_uri=provisioning_uri,
            backup_codes=codes,
        )
