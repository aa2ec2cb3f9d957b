"""
Exceptions raised by the two-factor core.

Verification outcomes (wrong code, replay, used backup code, lockout) are
returned as result values; only conditions the caller cannot recover from by
asking the user for another code are raised.
"""


class TwoFactorError(Exception):
    """Base class for two-factor errors"""
    pass


class InvalidSecret(TwoFactorError):
    """Raised when a shared secret is not valid base32 or is too short"""
    pass


class EntropyUnavailable(TwoFactorError):
    """Raised when the secure random source cannot be read. Never degrade."""
    pass


class InvalidConfiguration(TwoFactorError):
    """Raised for unsupported TOTP parameters (digits, algorithm, period)"""
    pass
