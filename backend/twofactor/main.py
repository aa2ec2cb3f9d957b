from fastapi import FastAPI
import logging
from contextlib import asynccontextmanager

from twofactor.config import get_settings
from twofactor.database import check_db_connection, init_db
from twofactor.api.routes import router as twofactor_router
from twofactor.metrics import metrics_router, metrics_middleware
from twofactor.logging_config import setup_logging, log_requests_middleware
from twofactor.error_handlers import register_error_handlers
from twofactor.middleware.rate_limit import limiter, rate_limit_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

settings = get_settings()

setup_logging(
    log_level=settings.log_level,
    log_dir=settings.log_dir,
    app_name="twofactor-api",
    enable_json=settings.log_json
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown tasks"""
    logger.info("Starting two-factor service...")

    init_db()
    logger.info("Database tables ready")

    yield

    logger.info("Shutting down two-factor service...")


app = FastAPI(
    title=settings.app_name,
    description="TOTP two-factor authentication service",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

# Per-client request throttling
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
app.add_middleware(SlowAPIMiddleware)

register_error_handlers(app)

if settings.enable_request_logging:
    app.middleware("http")(log_requests_middleware)

app.include_router(twofactor_router, prefix="/api")
app.include_router(metrics_router)

app.middleware("http")(metrics_middleware)


@app.get("/health")
async def health_check():
    """Health check endpoint with database connectivity test"""
    db_connected = check_db_connection()

    logger.debug("Health check performed", extra={"db_connected": db_connected})

    return {
        "status": "healthy" if db_connected else "unhealthy",
        "service": settings.app_name,
        "database": "connected" if db_connected else "disconnected"
    }
