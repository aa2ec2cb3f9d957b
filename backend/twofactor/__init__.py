"""TOTP two-factor authentication core and API."""

__version__ = "1.0.0"
