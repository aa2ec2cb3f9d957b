"""
Verification coordinator for two-factor authentication.

Orchestrates the credential lifecycle:

    NOT_SET --provision--> PENDING --enroll_confirm--> ENABLED --disable--> NOT_SET

and the login-time check (rate limit, TOTP or backup code, counter update).
This is the only place where cross-cutting policy lives; the engine, the
backup-code store and the rate limiter stay independent of each other.
"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from twofactor import metrics
from twofactor.models import CredentialState, TwoFactorAction, TwoFactorCredential
from twofactor.repository import CredentialRepository
from twofactor.services.backup_codes import BackupCodeStore, RedeemResult
from twofactor.services.rate_limiter import RateLimiter, TWOFA_VERIFY_ACTION
from twofactor.services.totp_engine import TOTPEngine
from twofactor.utils.clock import Clock, system_clock, to_utc_naive

logger = logging.getLogger(__name__)

METHOD_TOTP = "totp"
METHOD_BACKUP_CODE = "backup_code"


class VerificationStatus(str, enum.Enum):
    SUCCESS = "success"
    INVALID_CODE = "invalid_code"
    RATE_LIMITED = "rate_limited"
    NOT_ENABLED = "not_enabled"
    NOT_PENDING = "not_pending"


@dataclass
class VerificationResult:
    """
    Typed outcome of a verification.

    `reason` carries the internal failure detail (no_match, replay,
    already_used, not_found, exhausted) for logging and audit only; callers
    facing end users should surface `status` alone.
    """
    status: VerificationStatus
    method: Optional[str] = None
    reason: Optional[str] = None
    attempts_remaining: Optional[int] = None
    locked_until: Optional[datetime] = None
    matched_step: Optional[int] = None
    backup_codes: Optional[List[str]] = None

    @property
    def ok(self) -> bool:
        return self.status == VerificationStatus.SUCCESS


@dataclass
class TwoFactorStatus:
    state: CredentialState
    confirmed_at: Optional[datetime]
    backup_codes_remaining: int
    locked: bool
    locked_until: Optional[datetime]
    attempts_remaining: int

    @property
    def enabled(self) -> bool:
        return self.state == CredentialState.ENABLED


class VerificationCoordinator:
    """Enrollment confirmation, login verification, disable and regeneration"""

    def __init__(
        self,
        repository: CredentialRepository,
        rate_limiter: RateLimiter,
        engine: TOTPEngine,
        backup_codes: BackupCodeStore,
        audit=None,
        clock: Clock = system_clock,
        action: str = TWOFA_VERIFY_ACTION,
    ):
        self.repository = repository
        self.rate_limiter = rate_limiter
        self.engine = engine
        self.backup_codes = backup_codes
        self.audit = audit
        self.clock = clock
        self.action = action

    def _audit(self, action: TwoFactorAction, user_id: str, **metadata) -> None:
        if self.audit is not None:
            self.audit.log(action, user_id, metadata=metadata or None)

    # ==================== Enrollment ====================

    def enroll_confirm(self, user_id: str, submitted_code: str) -> VerificationResult:
        """
        Confirm a PENDING credential with a live TOTP code.

        Backup codes are never accepted here and no rate limit applies (the
        caller already holds an authenticated session). A wrong code leaves the
        credential PENDING.
        """
        now = self.clock()

        def _confirm(credential: Optional[TwoFactorCredential]) -> VerificationResult:
            if credential is None or credential.state != CredentialState.PENDING.value:
                return VerificationResult(VerificationStatus.NOT_PENDING)

            result = self.engine.verify(credential.secret, submitted_code, now, credential.last_used_step)
            if not result.ok:
                return VerificationResult(
                    VerificationStatus.INVALID_CODE,
                    method=METHOD_TOTP,
                    reason=result.failure.value,
                )

            credential.state = CredentialState.ENABLED.value
            credential.confirmed_at = to_utc_naive(now)
            credential.last_used_step = result.matched_step
            return VerificationResult(
                VerificationStatus.SUCCESS,
                method=METHOD_TOTP,
                matched_step=result.matched_step,
            )

        outcome = self.repository.transact(user_id, _confirm)
        metrics.record_verification("enroll", METHOD_TOTP, outcome.status.value)

        if outcome.ok:
            logger.info(f"2FA enabled for user: {user_id}")
            metrics.record_enrollment("confirmed")
            self._audit(TwoFactorAction.ENABLE, user_id)
        elif outcome.status == VerificationStatus.INVALID_CODE:
            logger.warning(f"Invalid TOTP code during enrollment for user: {user_id}")
            self._audit(TwoFactorAction.ENABLE_FAILED, user_id, reason=outcome.reason)
        else:
            logger.info(f"Enrollment confirmation without pending credential for user: {user_id}")

        return outcome

    # ==================== Verification ====================

    def _verify_totp(self, user_id: str, submitted_code: str, now: float) -> VerificationResult:
        """Check the code and advance last_used_step under the credential row lock"""

        def _check(credential: Optional[TwoFactorCredential]) -> VerificationResult:
            if credential is None or credential.state != CredentialState.ENABLED.value:
                return VerificationResult(VerificationStatus.NOT_ENABLED)

            result = self.engine.verify(credential.secret, submitted_code, now, credential.last_used_step)
            if not result.ok:
                return VerificationResult(
                    VerificationStatus.INVALID_CODE,
                    method=METHOD_TOTP,
                    reason=result.failure.value,
                )

            credential.last_used_step = result.matched_step
            return VerificationResult(
                VerificationStatus.SUCCESS,
                method=METHOD_TOTP,
                matched_step=result.matched_step,
            )

        return self.repository.transact(user_id, _check)

    def _verify_backup_code(self, credential: TwoFactorCredential, submitted_code: str) -> VerificationResult:
        redeemed = self.backup_codes.redeem(credential, submitted_code)
        if redeemed != RedeemResult.SUCCESS:
            return VerificationResult(
                VerificationStatus.INVALID_CODE,
                method=METHOD_BACKUP_CODE,
                reason=redeemed.value,
            )

        metrics.record_backup_code_redeemed()
        return VerificationResult(VerificationStatus.SUCCESS, method=METHOD_BACKUP_CODE)

    def _blocked(self, user_id: str, flow: str, locked_until: Optional[datetime]) -> VerificationResult:
        logger.warning(f"2FA verification blocked by lockout for user: {user_id}")
        metrics.record_verification(flow, "none", VerificationStatus.RATE_LIMITED.value)
        self._audit(TwoFactorAction.RATE_LIMITED, user_id, flow=flow)
        return VerificationResult(
            VerificationStatus.RATE_LIMITED,
            attempts_remaining=0,
            locked_until=locked_until,
        )

    def _verify(self, user_id: str, submitted_code: str, flow: str) -> VerificationResult:
        now = self.clock()

        limit = self.rate_limiter.status(user_id, self.action)
        if limit.locked:
            return self._blocked(user_id, flow, limit.locked_until)

        credential = self.repository.get(user_id)
        if credential is None or credential.state != CredentialState.ENABLED.value:
            metrics.record_verification(flow, "none", VerificationStatus.NOT_ENABLED.value)
            return VerificationResult(VerificationStatus.NOT_ENABLED)

        # Counted as a failure before the check; success clears it below
        limit = self.rate_limiter.acquire_attempt(user_id, self.action)
        if not limit.allowed:
            return self._blocked(user_id, flow, limit.locked_until)

        if self.backup_codes.looks_like_backup_code(submitted_code):
            outcome = self._verify_backup_code(credential, submitted_code)
        else:
            outcome = self._verify_totp(user_id, submitted_code, now)

        if outcome.status == VerificationStatus.NOT_ENABLED:
            # Credential was removed between the read and the locked check
            metrics.record_verification(flow, "none", outcome.status.value)
            return outcome

        metrics.record_verification(flow, outcome.method, outcome.status.value)

        if outcome.ok:
            self.rate_limiter.record_success(user_id, self.action)
            if outcome.method == METHOD_BACKUP_CODE:
                self._audit(TwoFactorAction.VERIFIED_BACKUP_CODE, user_id, flow=flow)
            else:
                self._audit(TwoFactorAction.VERIFIED_TOTP, user_id, flow=flow)
            logger.info(f"2FA verification succeeded for user: {user_id} via {outcome.method}")
            return outcome

        outcome.attempts_remaining = limit.attempts_remaining
        if limit.locked:
            outcome.locked_until = limit.locked_until

        logger.warning(
            f"2FA verification failed for user: {user_id} "
            f"(method={outcome.method}, reason={outcome.reason}, remaining={limit.attempts_remaining})"
        )
        self._audit(TwoFactorAction.VERIFY_FAILED, user_id, flow=flow, method=outcome.method, reason=outcome.reason)

        if limit.just_locked:
            logger.warning(f"2FA verification locked for user: {user_id} until {limit.locked_until.isoformat()}")
            metrics.record_lockout(self.action)
            self._audit(TwoFactorAction.RATE_LIMITED, user_id, flow=flow, locked_until=limit.locked_until.isoformat())

        return outcome

    def verify_login(self, user_id: str, submitted_code: str) -> VerificationResult:
        """
        Login-time second factor check.

        1. Locked key -> RATE_LIMITED (even for a correct code)
        2. Credential not ENABLED -> NOT_ENABLED
        3. Reserve the attempt atomically (counted as a failure, RATE_LIMITED
           if a concurrent attempt has just locked the key)
        4. Backup-code shape -> redeem, otherwise TOTP with replay protection
        5. Success resets the counter; a failure keeps the reserved count
        """
        return self._verify(user_id, submitted_code, flow="login")

    # ==================== Lifecycle ====================

    def disable(self, user_id: str, submitted_code: str) -> VerificationResult:
        """
        Remove the second factor after a fresh successful verification.

        The secret and the whole backup-code set are discarded; the user is back
        to NOT_SET.
        """
        outcome = self._verify(user_id, submitted_code, flow="disable")
        if not outcome.ok:
            return outcome

        self.repository.delete(user_id)
        metrics.record_enrollment("disabled")
        self._audit(TwoFactorAction.DISABLE, user_id, method=outcome.method)

        logger.info(f"2FA disabled for user: {user_id}")

        return outcome

    def regenerate_backup_codes(self, user_id: str, submitted_code: str) -> VerificationResult:
        """
        Issue a new backup-code set after a fresh successful verification.

        On success the plaintext codes are returned in `backup_codes`; every
        previous code becomes unredeemable.
        """
        outcome = self._verify(user_id, submitted_code, flow="regenerate")
        if not outcome.ok:
            return outcome

        credential = self.repository.get(user_id)
        outcome.backup_codes = self.backup_codes.regenerate(credential)
        self._audit(TwoFactorAction.BACKUP_CODES_REGENERATED, user_id, count=len(outcome.backup_codes))

        return outcome

    def get_status(self, user_id: str) -> TwoFactorStatus:
        credential = self.repository.get(user_id)
        limit = self.rate_limiter.status(user_id, self.action)

        if credential is None:
            return TwoFactorStatus(
                state=CredentialState.NOT_SET,
                confirmed_at=None,
                backup_codes_remaining=0,
                locked=limit.locked,
                locked_until=limit.locked_until,
                attempts_remaining=limit.attempts_remaining,
            )

        return TwoFactorStatus(
            state=credential.credential_state,
            confirmed_at=credential.confirmed_at,
            backup_codes_remaining=self.backup_codes.remaining(credential),
            locked=limit.locked,
            locked_until=limit.locked_until,
            attempts_remaining=limit.attempts_remaining,
        )
