from pydantic_settings import BaseSettings
from pydantic import field_validator
from functools import lru_cache


class Settings(BaseSettings):
    # Application
    app_name: str = "NataCarePM Two-Factor Service"
    debug: bool = False

    # Database
    database_url: str = "sqlite:///./twofactor.db"

    # Logging
    log_level: str = "INFO"
    log_dir: str = ""
    log_json: bool = False  # Enable JSON logging for production
    enable_request_logging: bool = True

    # TOTP (RFC 6238)
    totp_issuer: str = "NataCarePM"
    totp_digits: int = 6
    totp_period: int = 30  # seconds per time step
    totp_algorithm: str = "SHA1"
    totp_valid_window: int = 1  # steps accepted either side of now
    totp_secret_bytes: int = 20  # 160 bits

    # Backup codes
    backup_codes_count: int = 10
    backup_code_length: int = 8
    backup_code_hash_rounds: int = 29000  # PBKDF2-SHA256 iterations

    # Verification lockout
    twofa_max_attempts: int = 3
    twofa_window_minutes: int = 15
    twofa_lockout_minutes: int = 15
    rate_limit_backend: str = "memory"  # memory | redis
    redis_url: str = "redis://redis:6379/0"

    # Per-client HTTP throttle (slowapi)
    request_rate_limit: str = "20/minute"
    request_rate_limit_enabled: bool = True

    @field_validator('totp_digits')
    @classmethod
    def validate_digits(cls, v):
        if v not in (6, 8):
            raise ValueError("totp_digits must be 6 or 8")
        return v

    @field_validator('totp_algorithm', mode='before')
    @classmethod
    def normalize_algorithm(cls, v):
        v = str(v).upper().replace('-', '')
        if v not in ("SHA1", "SHA256", "SHA512"):
            raise ValueError("totp_algorithm must be SHA1, SHA256 or SHA512")
        return v

    @field_validator('totp_secret_bytes')
    @classmethod
    def validate_secret_bytes(cls, v):
        if v < 20:
            raise ValueError("totp_secret_bytes must be at least 20 (160 bits)")
        return v

    @field_validator('rate_limit_backend')
    @classmethod
    def validate_backend(cls, v):
        v = v.lower()
        if v not in ("memory", "redis"):
            raise ValueError("rate_limit_backend must be 'memory' or 'redis'")
        return v

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    return Settings()
