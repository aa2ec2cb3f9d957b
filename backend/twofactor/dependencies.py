"""
FastAPI dependencies for the two-factor API.

Provides dependency injection functions for:
- The identity the second factor is checked for
- The shared rate-limit store and limiter
- Per-request provisioner and coordinator bound to a DB session

Host applications override `get_current_user_id` with their own
authentication (session, JWT, ...) via `app.dependency_overrides`.
"""

import logging
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from twofactor.config import get_settings
from twofactor.database import get_db
from twofactor.error_handlers import AuthenticationError
from twofactor.repository import CredentialRepository
from twofactor.services.audit_service import AuditService
from twofactor.services.backup_codes import BackupCodeStore
from twofactor.services.coordinator import VerificationCoordinator
from twofactor.services.provisioner import SecretProvisioner
from twofactor.services.rate_limit_store import (
    InMemoryRateLimitStore,
    RateLimitStore,
    RedisRateLimitStore,
)
from twofactor.services.rate_limiter import RateLimiter, policies_from_settings
from twofactor.services.totp_engine import TOTPEngine
from twofactor.utils.clock import Clock, system_clock

logger = logging.getLogger(__name__)


async def get_current_user_id(
    x_user_id: Optional[str] = Header(None, alias="X-User-ID"),
) -> str:
    """
    Identity established by the upstream authenticator.

    The default reads a trusted X-User-ID header set by a gateway; override it
    in the host application.

    Raises:
        AuthenticationError: 401 if no identity is present
    """
    if not x_user_id or not x_user_id.strip():
        raise AuthenticationError("Not authenticated")
    return x_user_id.strip()


def get_clock() -> Clock:
    return system_clock


@lru_cache()
def get_rate_limit_store() -> RateLimitStore:
    """One store per process; counters must outlive a single request"""
    settings = get_settings()
    if settings.rate_limit_backend == "redis":
        logger.info("Using Redis rate-limit store")
        return RedisRateLimitStore.from_url(settings.redis_url)
    logger.info("Using in-memory rate-limit store")
    return InMemoryRateLimitStore()


def get_rate_limiter(
    store: RateLimitStore = Depends(get_rate_limit_store),
    clock: Clock = Depends(get_clock),
) -> RateLimiter:
    return RateLimiter(store, policies_from_settings(get_settings()), clock=clock)


def get_engine() -> TOTPEngine:
    return TOTPEngine.from_settings(get_settings())


def get_backup_code_store(
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> BackupCodeStore:
    return BackupCodeStore.from_settings(CredentialRepository(db), get_settings(), clock=clock)


def get_provisioner(
    db: Session = Depends(get_db),
    backup_codes: BackupCodeStore = Depends(get_backup_code_store),
    engine: TOTPEngine = Depends(get_engine),
) -> SecretProvisioner:
    settings = get_settings()
    return SecretProvisioner(
        CredentialRepository(db),
        backup_codes,
        engine,
        issuer=settings.totp_issuer,
        secret_bytes=settings.totp_secret_bytes,
        audit=AuditService(db),
    )


def get_coordinator(
    db: Session = Depends(get_db),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    backup_codes: BackupCodeStore = Depends(get_backup_code_store),
    engine: TOTPEngine = Depends(get_engine),
    clock: Clock = Depends(get_clock),
) -> VerificationCoordinator:
    return VerificationCoordinator(
        CredentialRepository(db),
        rate_limiter,
        engine,
        backup_codes,
        audit=AuditService(db),
        clock=clock,
    )
