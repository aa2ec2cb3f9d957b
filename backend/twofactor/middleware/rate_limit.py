"""
Per-client request throttling

Coarse slowapi limits keyed by client address, applied to the code-accepting
endpoints. This sits in front of the per-identity lockout in
`twofactor.services.rate_limiter`, which is what actually bounds guessing.
"""
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from fastapi import Request, Response
from fastapi.responses import JSONResponse
import logging

from twofactor.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["100/minute"],
    storage_uri=settings.redis_url if settings.rate_limit_backend == "redis" else "memory://",
    enabled=settings.request_rate_limit_enabled,
)


def verification_limit() -> str:
    """Limit string for endpoints that accept codes"""
    return get_settings().request_rate_limit


async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> Response:
    """
    Handler for slowapi limit breaches

    Returns:
        JSONResponse with 429 status code
    """
    logger.warning(
        f"Request rate limit exceeded for {get_remote_address(request)} on {request.url.path}"
    )

    return JSONResponse(
        status_code=429,
        content={
            "error": "RATE_LIMITED",
            "message": f"Too many requests. Limit: {exc.detail}",
            "path": request.url.path,
        },
        headers={"Retry-After": "60"},
    )
