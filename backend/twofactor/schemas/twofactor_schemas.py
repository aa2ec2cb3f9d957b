"""
Pydantic schemas for the two-factor API.
"""

from pydantic import BaseModel, Field, field_validator
from typing import List, Optional
from datetime import datetime


class CodeRequest(BaseModel):
    """A TOTP code or a backup code"""
    code: str = Field(..., min_length=6, max_length=16, description="6/8-digit TOTP code or backup code")

    @field_validator("code")
    @classmethod
    def strip_code(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("code must not be blank")
        return v


class TOTPCodeRequest(BaseModel):
    """Enrollment confirmation accepts TOTP codes only"""
    code: str = Field(..., min_length=6, max_length=8, pattern=r"^\s*\d{6,8}\s*$", description="Code from the authenticator app")


class SetupRequest(BaseModel):
    """Request to start enrollment"""
    account_label: str = Field(..., min_length=1, max_length=255, description="Label shown in the authenticator app, usually the email")
    issuer: Optional[str] = Field(None, max_length=100, description="Overrides the configured issuer")


class SetupResponse(BaseModel):
    """Response when starting 2FA setup"""
    secret: str = Field(..., description="Base32 encoded TOTP secret for manual entry")
    provisioning_uri: str = Field(..., description="otpauth:// URI")
    qr_code: str = Field(..., description="Base64-encoded QR code PNG image")
    backup_codes: List[str] = Field(..., description="Backup codes, shown once")


class EnableResponse(BaseModel):
    """Response when 2FA is enabled"""
    success: bool = Field(..., description="Whether 2FA was enabled")
    message: str = Field(..., description="Status message")


class VerifyResponse(BaseModel):
    """Response for a successful second-factor check"""
    success: bool = Field(..., description="Whether the code was accepted")
    method: str = Field(..., description="totp or backup_code")
    backup_codes_remaining: Optional[int] = Field(None, description="Unused backup codes left, when a backup code was used")


class DisableResponse(BaseModel):
    """Response when 2FA is disabled"""
    success: bool = Field(..., description="Whether 2FA was disabled")
    message: str = Field(..., description="Status message")


class StatusResponse(BaseModel):
    """2FA status for current user"""
    state: str = Field(..., description="not_set, pending or enabled")
    enabled: bool = Field(..., description="Whether 2FA is enabled")
    confirmed_at: Optional[datetime] = Field(None, description="When 2FA was enabled")
    backup_codes_remaining: int = Field(..., description="Number of unused backup codes")
    locked: bool = Field(..., description="Whether verification is currently locked")
    locked_until: Optional[datetime] = Field(None, description="When the lockout ends")
    attempts_remaining: int = Field(..., description="Failed attempts left before lockout")


class BackupCodesResponse(BaseModel):
    """Response with backup codes"""
    backup_codes: List[str] = Field(..., description="New backup codes, shown once")
    message: str = Field(..., description="Status message")
