"""
TOTP engine (RFC 6238 on top of RFC 4226 HOTP).

Pure functions: no I/O, no shared state, safe to call from any thread.

- Code derivation for a given time step
- Verification inside a drift window with constant-time comparison
- Replay detection against the last consumed time step
"""

import base64
import binascii
import enum
import hashlib
from dataclasses import dataclass
from typing import Optional

import pyotp
from pyotp.utils import strings_equal

from twofactor.exceptions import InvalidSecret, InvalidConfiguration

DEFAULT_PERIOD = 30
DEFAULT_DIGITS = 6
ALLOWED_DIGITS = (6, 8)

# RFC 4226 section 4: shared secret length MUST be at least 128 bits
MIN_SECRET_BYTES = 16

DIGESTS = {
    "SHA1": hashlib.sha1,
    "SHA256": hashlib.sha256,
    "SHA512": hashlib.sha512,
}


class TOTPFailure(str, enum.Enum):
    NO_MATCH = "no_match"
    REPLAY = "replay"


@dataclass(frozen=True)
class VerifyResult:
    """Outcome of a TOTP check. matched_step is set only on success."""
    matched_step: Optional[int] = None
    failure: Optional[TOTPFailure] = None

    @property
    def ok(self) -> bool:
        return self.matched_step is not None


def normalize_secret(secret: str) -> str:
    """
    Validate a base32 secret and return it in canonical form.

    Raises:
        InvalidSecret: If the secret is not base32 or decodes to fewer than 128 bits
    """
    if not secret or not isinstance(secret, str):
        raise InvalidSecret("Secret is empty")

    cleaned = secret.replace(" ", "").replace("-", "").upper().rstrip("=")
    padded = cleaned + "=" * (-len(cleaned) % 8)

    try:
        raw = base64.b32decode(padded)
    except (binascii.Error, ValueError):
        raise InvalidSecret("Secret is not valid base32")

    if len(raw) < MIN_SECRET_BYTES:
        raise InvalidSecret(f"Secret must decode to at least {MIN_SECRET_BYTES} bytes")

    return cleaned


def _digest(algorithm: str):
    try:
        return DIGESTS[algorithm.upper().replace("-", "")]
    except KeyError:
        raise InvalidConfiguration(f"Unsupported TOTP algorithm: {algorithm}")


def _check_digits(digits: int) -> None:
    if digits not in ALLOWED_DIGITS:
        raise InvalidConfiguration("digits must be 6 or 8")


def time_step(unix_time: float, period: int = DEFAULT_PERIOD) -> int:
    """Map a unix timestamp to its HOTP counter: floor(t / period)"""
    if period <= 0:
        raise InvalidConfiguration("period must be positive")
    return int(unix_time // period)


def compute_code(
    secret: str,
    step: int,
    digits: int = DEFAULT_DIGITS,
    algorithm: str = "SHA1",
) -> str:
    """
    Derive the code for a time step.

    Args:
        secret: Base32-encoded shared secret
        step: Time-step index (HOTP counter)
        digits: Code length, 6 or 8
        algorithm: HMAC hash (SHA1, SHA256, SHA512)

    Returns:
        Zero-padded decimal string of exactly `digits` characters
    """
    _check_digits(digits)
    if step < 0:
        raise ValueError("time step must be non-negative")

    hotp = pyotp.HOTP(normalize_secret(secret), digits=digits, digest=_digest(algorithm))
    return hotp.at(step)


def verify(
    secret: str,
    submitted_code: str,
    current_time: float,
    window_steps: int = 1,
    last_used_step: Optional[int] = None,
    digits: int = DEFAULT_DIGITS,
    period: int = DEFAULT_PERIOD,
    algorithm: str = "SHA1",
) -> VerifyResult:
    """
    Check a submitted code against every step in [now - window, now + window].

    All candidates are compared with a constant-time string comparison. A match
    at or below last_used_step is reported as REPLAY even though the digits are
    right.

    Raises:
        InvalidSecret: If the secret is malformed
    """
    _check_digits(digits)
    secret = normalize_secret(secret)
    hotp = pyotp.HOTP(secret, digits=digits, digest=_digest(algorithm))

    code = (submitted_code or "").replace(" ", "")
    if len(code) != digits or not code.isdigit():
        return VerifyResult(failure=TOTPFailure.NO_MATCH)

    now_step = time_step(current_time, period)
    fresh_match = None
    stale_match = False

    for offset in range(-window_steps, window_steps + 1):
        step = now_step + offset
        if step < 0:
            continue
        if strings_equal(hotp.at(step), code):
            if last_used_step is not None and step <= last_used_step:
                stale_match = True
            else:
                fresh_match = step

    if fresh_match is not None:
        return VerifyResult(matched_step=fresh_match)
    if stale_match:
        return VerifyResult(failure=TOTPFailure.REPLAY)
    return VerifyResult(failure=TOTPFailure.NO_MATCH)


class TOTPEngine:
    """TOTP parameters bound once, e.g. from settings"""

    def __init__(
        self,
        digits: int = DEFAULT_DIGITS,
        period: int = DEFAULT_PERIOD,
        algorithm: str = "SHA1",
        window_steps: int = 1,
    ):
        _check_digits(digits)
        _digest(algorithm)
        if period <= 0:
            raise InvalidConfiguration("period must be positive")
        if window_steps < 0:
            raise InvalidConfiguration("window_steps must not be negative")

        self.digits = digits
        self.period = period
        self.algorithm = algorithm.upper().replace("-", "")
        self.window_steps = window_steps

    @classmethod
    def from_settings(cls, settings) -> "TOTPEngine":
        return cls(
            digits=settings.totp_digits,
            period=settings.totp_period,
            algorithm=settings.totp_algorithm,
            window_steps=settings.totp_valid_window,
        )

    def time_step(self, unix_time: float) -> int:
        return time_step(unix_time, self.period)

    def compute_code(self, secret: str, step: int) -> str:
        return compute_code(secret, step, digits=self.digits, algorithm=self.algorithm)

    def code_at(self, secret: str, unix_time: float) -> str:
        return self.compute_code(secret, self.time_step(unix_time))

    def verify(
        self,
        secret: str,
        submitted_code: str,
        current_time: float,
        last_used_step: Optional[int] = None,
    ) -> VerifyResult:
        return verify(
            secret,
            submitted_code,
            current_time,
            window_steps=self.window_steps,
            last_used_step=last_used_step,
            digits=self.digits,
            period=self.period,
            algorithm=self.algorithm,
        )

    def looks_like_code(self, submitted_code: str) -> bool:
        code = (submitted_code or "").replace(" ", "")
        return len(code) == self.digits and code.isdigit()
