"""
Two-factor services.

- totp_engine: RFC 6238 code computation and windowed verification
- provisioner: secret issuance and provisioning URIs
- backup_codes: single-use recovery codes
- rate_limiter / rate_limit_store: failure counting with lockout
- coordinator: enrollment and verification policy
- audit_service: security event trail
- qr: QR rendering of provisioning URIs
"""
