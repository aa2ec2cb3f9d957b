"""
Two-factor authentication API routes.

Endpoints:
- GET /2fa/status - Get 2FA status
- POST /2fa/setup - Start enrollment (secret, QR code, backup codes)
- POST /2fa/enable - Confirm enrollment with a live TOTP code
- POST /2fa/verify - Login-time second factor check
- POST /2fa/disable - Disable 2FA (requires a fresh code)
- POST /2fa/backup-codes/regenerate - Regenerate backup codes (requires a fresh code)
"""

import logging
import math

from fastapi import APIRouter, Depends, Request, status

from twofactor.dependencies import get_coordinator, get_current_user_id, get_provisioner
from twofactor.error_handlers import (
    ConflictError,
    InvalidCodeError,
    TooManyAttemptsError,
)
from twofactor.middleware.rate_limit import limiter, verification_limit
from twofactor.services.coordinator import (
    METHOD_BACKUP_CODE,
    VerificationCoordinator,
    VerificationResult,
    VerificationStatus,
)
from twofactor.services.provisioner import SecretProvisioner
from twofactor.services.qr import render_qr_png_base64
from twofactor.schemas.twofactor_schemas import (
    BackupCodesResponse,
    CodeRequest,
    DisableResponse,
    EnableResponse,
    SetupRequest,
    SetupResponse,
    StatusResponse,
    TOTPCodeRequest,
    VerifyResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/2fa", tags=["Two-Factor Authentication"])


def _raise_for_failure(result: VerificationResult, coordinator: VerificationCoordinator) -> None:
    """Translate a failed verification into an HTTP error. Internal reasons are not exposed."""
    if result.status == VerificationStatus.RATE_LIMITED:
        retry_after = math.ceil(result.locked_until.timestamp() - coordinator.clock())
        raise TooManyAttemptsError(retry_after, locked_until=result.locked_until.isoformat())

    if result.status == VerificationStatus.INVALID_CODE:
        raise InvalidCodeError(attempts_remaining=result.attempts_remaining)

    raise ConflictError("Two-factor authentication is not enabled")


@router.get(
    "/status",
    response_model=StatusResponse,
    status_code=status.HTTP_200_OK,
    summary="Get 2FA status"
)
async def get_2fa_status(
    user_id: str = Depends(get_current_user_id),
    coordinator: VerificationCoordinator = Depends(get_coordinator),
):
    """
    Get the current 2FA status for the authenticated user.

    **Returns:**
    - Credential state and whether 2FA is enabled
    - When 2FA was enabled (if enabled)
    - Number of remaining backup codes
    - Lockout state
    """
    result = coordinator.get_status(user_id)

    return StatusResponse(
        state=result.state.value,
        enabled=result.enabled,
        confirmed_at=result.confirmed_at,
        backup_codes_remaining=result.backup_codes_remaining,
        locked=result.locked,
        locked_until=result.locked_until,
        attempts_remaining=result.attempts_remaining,
    )


@router.post(
    "/setup",
    response_model=SetupResponse,
    status_code=status.HTTP_200_OK,
    summary="Start 2FA setup"
)
async def setup_2fa(
    setup_request: SetupRequest,
    user_id: str = Depends(get_current_user_id),
    provisioner: SecretProvisioner = Depends(get_provisioner),
):
    """
    Start the 2FA setup process.

    **Process:**
    1. Generates a new TOTP secret and backup codes
    2. Returns secret, QR code and backup codes
    3. User scans QR code with authenticator app
    4. User calls /2fa/enable with a code to complete setup

    **Note:**
    - Calling again replaces any existing credential, enabled or not
    - 2FA is not active until /2fa/enable succeeds
    """
    result = provisioner.generate_secret(
        user_id,
        setup_request.account_label,
        issuer=setup_request.issuer,
    )

    logger.info(f"2FA setup initiated for user: {user_id}")

    return SetupResponse(
        secret=result.secret,
        provisioning_uri=result.provisioning_uri,
        qr_code=render_qr_png_base64(result.provisioning_uri),
        backup_codes=result.backup_codes,
    )


@router.post(
    "/enable",
    response_model=EnableResponse,
    status_code=status.HTTP_200_OK,
    summary="Confirm and enable 2FA"
)
async def enable_2fa(
    enable_request: TOTPCodeRequest,
    user_id: str = Depends(get_current_user_id),
    coordinator: VerificationCoordinator = Depends(get_coordinator),
):
    """
    Verify a code from the authenticator app and enable 2FA.

    **Prerequisites:**
    - Must have called /2fa/setup first
    - Backup codes are not accepted here
    """
    result = coordinator.enroll_confirm(user_id, enable_request.code.strip())

    if result.status == VerificationStatus.NOT_PENDING:
        raise ConflictError("No pending two-factor setup. Call /2fa/setup first.")
    if not result.ok:
        raise InvalidCodeError()

    return EnableResponse(
        success=True,
        message="Two-factor authentication has been enabled."
    )


@router.post(
    "/verify",
    response_model=VerifyResponse,
    status_code=status.HTTP_200_OK,
    summary="Verify second factor"
)
@limiter.limit(verification_limit)
async def verify_2fa(
    request: Request,
    verify_request: CodeRequest,
    user_id: str = Depends(get_current_user_id),
    coordinator: VerificationCoordinator = Depends(get_coordinator),
):
    """
    Check a TOTP code or a backup code at login.

    **Responses:**
    - 200 when the code is accepted
    - 401 with attempts_remaining when it is not
    - 429 with Retry-After while locked (correct codes included)
    """
    result = coordinator.verify_login(user_id, verify_request.code)

    if result.status == VerificationStatus.NOT_ENABLED:
        # Same answer as a wrong code; do not reveal enrollment state here
        raise InvalidCodeError()
    if not result.ok:
        _raise_for_failure(result, coordinator)

    remaining = None
    if result.method == METHOD_BACKUP_CODE:
        remaining = coordinator.get_status(user_id).backup_codes_remaining

    return VerifyResponse(success=True, method=result.method, backup_codes_remaining=remaining)


@router.post(
    "/disable",
    response_model=DisableResponse,
    status_code=status.HTTP_200_OK,
    summary="Disable 2FA"
)
@limiter.limit(verification_limit)
async def disable_2fa(
    request: Request,
    disable_request: CodeRequest,
    user_id: str = Depends(get_current_user_id),
    coordinator: VerificationCoordinator = Depends(get_coordinator),
):
    """
    Disable 2FA for the current user.

    **Requirements:**
    - A current TOTP code or an unused backup code

    **What happens:**
    - Removes the TOTP secret
    - Discards all backup codes
    """
    result = coordinator.disable(user_id, disable_request.code)
    if not result.ok:
        _raise_for_failure(result, coordinator)

    return DisableResponse(
        success=True,
        message="Two-factor authentication has been disabled."
    )


@router.post(
    "/backup-codes/regenerate",
    response_model=BackupCodesResponse,
    status_code=status.HTTP_200_OK,
    summary="Regenerate backup codes"
)
@limiter.limit(verification_limit)
async def regenerate_backup_codes(
    request: Request,
    regenerate_request: CodeRequest,
    user_id: str = Depends(get_current_user_id),
    coordinator: VerificationCoordinator = Depends(get_coordinator),
):
    """
    Generate a new set of backup codes.

    **Important:**
    - All previous backup codes stop working
    - New codes are only shown once
    """
    result = coordinator.regenerate_backup_codes(user_id, regenerate_request.code)
    if not result.ok:
        _raise_for_failure(result, coordinator)

    return BackupCodesResponse(
        backup_codes=result.backup_codes,
        message="New backup codes generated. Previous codes are no longer valid."
    )
