"""
Test Configuration and Fixtures

Uses in-memory SQLite per test and a controllable clock, so TOTP windows and
lockout expiry can be exercised without sleeping.
"""

import os

# Settings are read once and cached; pin the test environment before any import
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("BACKUP_CODE_HASH_ROUNDS", "1000")
os.environ.setdefault("REQUEST_RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")
os.environ.setdefault("ENABLE_REQUEST_LOGGING", "false")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from twofactor.database import Base
from twofactor.repository import CredentialRepository
from twofactor.services.audit_service import AuditService
from twofactor.services.backup_codes import BackupCodeStore
from twofactor.services.coordinator import VerificationCoordinator
from twofactor.services.provisioner import SecretProvisioner
from twofactor.services.rate_limit_store import InMemoryRateLimitStore
from twofactor.services.rate_limiter import RateLimiter, RateLimitPolicy, TWOFA_VERIFY_ACTION
from twofactor.services.totp_engine import TOTPEngine

TEST_HASH_ROUNDS = 1000
START_TIME = 1_700_000_010.0  # 10s into a 30s step


class FakeClock:
    """Callable clock returning unix seconds that tests move by hand"""

    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(scope="function")
def db_engine():
    """Fresh in-memory database per test"""
    import twofactor.models  # noqa: F401

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(db_engine):
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = TestingSessionLocal()

    yield session

    session.close()


@pytest.fixture
def repository(db_session):
    return CredentialRepository(db_session)


@pytest.fixture
def totp_engine():
    return TOTPEngine()


@pytest.fixture
def backup_store(repository, clock):
    return BackupCodeStore(repository, hash_rounds=TEST_HASH_ROUNDS, clock=clock)


@pytest.fixture
def rate_store(clock):
    return InMemoryRateLimitStore(clock=clock)


@pytest.fixture
def rate_limiter(rate_store, clock):
    policies = {TWOFA_VERIFY_ACTION: RateLimitPolicy(max_attempts=3, window_seconds=900, lockout_seconds=900)}
    return RateLimiter(rate_store, policies, clock=clock)


@pytest.fixture
def audit(db_session):
    return AuditService(db_session)


@pytest.fixture
def provisioner(repository, backup_store, totp_engine, audit):
    return SecretProvisioner(repository, backup_store, totp_engine, issuer="NataCarePM", audit=audit)


@pytest.fixture
def coordinator(repository, rate_limiter, totp_engine, backup_store, audit, clock):
    return VerificationCoordinator(
        repository,
        rate_limiter,
        totp_engine,
        backup_store,
        audit=audit,
        clock=clock,
    )


@pytest.fixture
def pending_user(provisioner):
    """User with a PENDING credential. Returns (user_id, ProvisioningResult)."""
    result = provisioner.generate_secret("user-1", "alice@example.com")
    return "user-1", result


@pytest.fixture
def enabled_user(pending_user, coordinator, totp_engine, clock):
    """
    User with an ENABLED credential.

    The clock is moved one step past enrollment so the next code is fresh.
    """
    user_id, result = pending_user
    outcome = coordinator.enroll_confirm(user_id, totp_engine.code_at(result.secret, clock()))
    assert outcome.ok
    clock.advance(totp_engine.period)
    return user_id, result


@pytest.fixture
def client(db_session, clock):
    """TestClient sharing the test session, clock and rate-limit store"""
    from fastapi.testclient import TestClient

    from twofactor.database import get_db
    from twofactor.dependencies import get_clock, get_rate_limit_store
    from twofactor.main import app

    store = InMemoryRateLimitStore(clock=clock)

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_rate_limit_store] = lambda: store

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
