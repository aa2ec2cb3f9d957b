"""Unit tests for the TOTP engine (totp_engine.py)"""
import base64

import pytest
import pyotp

from twofactor.exceptions import InvalidSecret, InvalidConfiguration
from twofactor.services.totp_engine import (
    TOTPEngine,
    TOTPFailure,
    compute_code,
    normalize_secret,
    time_step,
    verify,
)

# RFC 6238 appendix B seeds
SHA1_SECRET = base64.b32encode(b"12345678901234567890").decode()
SHA256_SECRET = base64.b32encode(b"12345678901234567890123456789012").decode()
SHA512_SECRET = base64.b32encode(b"1234567890" * 6 + b"1234").decode()

NOW = 1_700_000_010.0


@pytest.mark.unit
class TestReferenceVectors:
    """Published RFC test vectors"""

    def test_seed_encoding(self):
        assert SHA1_SECRET == "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"

    @pytest.mark.parametrize("unix_time,expected", [
        (59, "94287082"),
        (1111111109, "07081804"),
        (1111111111, "14050471"),
        (1234567890, "89005924"),
        (2000000000, "69279037"),
        (20000000000, "65353130"),
    ])
    def test_rfc6238_sha1(self, unix_time, expected):
        assert compute_code(SHA1_SECRET, time_step(unix_time), digits=8) == expected

    def test_rfc6238_sha256(self):
        assert compute_code(SHA256_SECRET, time_step(59), digits=8, algorithm="SHA256") == "46119246"

    def test_rfc6238_sha512(self):
        assert compute_code(SHA512_SECRET, time_step(59), digits=8, algorithm="SHA512") == "90693936"

    @pytest.mark.parametrize("counter,expected", list(enumerate([
        "755224", "287082", "359152", "969429", "338314",
        "254676", "287922", "162583", "399871", "520489",
    ])))
    def test_rfc4226_hotp(self, counter, expected):
        assert compute_code(SHA1_SECRET, counter, digits=6) == expected

    def test_leading_zero_preserved(self):
        code = compute_code(SHA1_SECRET, time_step(1111111109), digits=8)

        assert code.startswith("0")
        assert len(code) == 8

    def test_matches_authenticator_app_output(self):
        """Same value a standard TOTP implementation produces"""
        secret = pyotp.random_base32(length=32)

        assert compute_code(secret, time_step(NOW)) == pyotp.TOTP(secret).at(NOW)


@pytest.mark.unit
class TestTimeStep:
    """Test time-step mapping"""

    def test_step_boundaries(self):
        assert time_step(0) == 0
        assert time_step(29.999) == 0
        assert time_step(30) == 1
        assert time_step(59) == 1
        assert time_step(60) == 2

    def test_custom_period(self):
        assert time_step(119, period=60) == 1

    def test_invalid_period(self):
        with pytest.raises(InvalidConfiguration):
            time_step(100, period=0)


@pytest.mark.unit
class TestComputeCode:
    """Test code derivation guards"""

    def test_unsupported_digits(self):
        with pytest.raises(InvalidConfiguration):
            compute_code(SHA1_SECRET, 1, digits=7)

    def test_unsupported_algorithm(self):
        with pytest.raises(InvalidConfiguration):
            compute_code(SHA1_SECRET, 1, algorithm="MD5")

    def test_negative_step(self):
        with pytest.raises(ValueError):
            compute_code(SHA1_SECRET, -1)


@pytest.mark.unit
class TestSecretValidation:
    """Test secret normalization"""

    def test_accepts_lowercase_and_spacing(self):
        spaced = " ".join(SHA1_SECRET[i:i + 4] for i in range(0, len(SHA1_SECRET), 4)).lower()

        assert normalize_secret(spaced) == SHA1_SECRET

    def test_accepts_unpadded_secret(self):
        secret = base64.b32encode(b"a" * 21).decode().rstrip("=")

        assert normalize_secret(secret) == secret

    def test_rejects_non_base32(self):
        with pytest.raises(InvalidSecret):
            normalize_secret("NOT-BASE32-!!!!1111")

    def test_rejects_short_secret(self):
        # 10 bytes, below the 128-bit floor
        with pytest.raises(InvalidSecret):
            normalize_secret("JBSWY3DPEHPK3PXP")

    def test_rejects_empty_secret(self):
        with pytest.raises(InvalidSecret):
            normalize_secret("")

    def test_verify_with_invalid_secret_raises(self):
        with pytest.raises(InvalidSecret):
            verify("JBSWY3DPEHPK3PXP", "123456", NOW)


@pytest.mark.unit
class TestVerify:
    """Test drift window and replay handling"""

    def code_at_offset(self, steps):
        return compute_code(SHA1_SECRET, time_step(NOW) + steps)

    def test_current_code_accepted(self):
        result = verify(SHA1_SECRET, self.code_at_offset(0), NOW)

        assert result.ok
        assert result.matched_step == time_step(NOW)
        assert result.failure is None

    @pytest.mark.parametrize("offset", [-1, 1])
    def test_adjacent_steps_accepted(self, offset):
        """Codes 30 seconds early or late are accepted"""
        result = verify(SHA1_SECRET, self.code_at_offset(offset), NOW)

        assert result.ok
        assert result.matched_step == time_step(NOW) + offset

    @pytest.mark.parametrize("offset", [-3, 3])
    def test_codes_outside_window_rejected(self, offset):
        """Codes 90 seconds off are rejected"""
        result = verify(SHA1_SECRET, self.code_at_offset(offset), NOW)

        assert not result.ok
        assert result.failure == TOTPFailure.NO_MATCH

    def test_zero_window_only_accepts_current(self):
        assert verify(SHA1_SECRET, self.code_at_offset(0), NOW, window_steps=0).ok
        assert not verify(SHA1_SECRET, self.code_at_offset(-1), NOW, window_steps=0).ok

    def test_replay_of_consumed_step(self):
        step = time_step(NOW)
        result = verify(SHA1_SECRET, self.code_at_offset(0), NOW, last_used_step=step)

        assert not result.ok
        assert result.failure == TOTPFailure.REPLAY

    def test_older_step_than_consumed_is_replay(self):
        step = time_step(NOW)
        result = verify(SHA1_SECRET, self.code_at_offset(-1), NOW, last_used_step=step)

        assert result.failure == TOTPFailure.REPLAY

    def test_newer_step_than_consumed_accepted(self):
        step = time_step(NOW)
        result = verify(SHA1_SECRET, self.code_at_offset(1), NOW, last_used_step=step)

        assert result.ok
        assert result.matched_step == step + 1

    def test_same_code_accepted_once_per_step(self):
        code = self.code_at_offset(0)
        first = verify(SHA1_SECRET, code, NOW)
        second = verify(SHA1_SECRET, code, NOW + 5, last_used_step=first.matched_step)

        assert first.ok
        assert second.failure == TOTPFailure.REPLAY

    @pytest.mark.parametrize("submitted", ["", "12345", "1234567", "abcdef", "12 34 5", None])
    def test_malformed_input_is_no_match(self, submitted):
        result = verify(SHA1_SECRET, submitted, NOW)

        assert result.failure == TOTPFailure.NO_MATCH

    def test_spaces_inside_code_ignored(self):
        code = self.code_at_offset(0)

        assert verify(SHA1_SECRET, f"{code[:3]} {code[3:]}", NOW).ok

    def test_eight_digit_codes(self):
        code = compute_code(SHA1_SECRET, time_step(NOW), digits=8)

        assert verify(SHA1_SECRET, code, NOW, digits=8).ok
        assert not verify(SHA1_SECRET, code[:6], NOW, digits=8).ok

    def test_near_epoch_skips_negative_steps(self):
        code = compute_code(SHA1_SECRET, 0)

        assert verify(SHA1_SECRET, code, 10).matched_step == 0


@pytest.mark.unit
class TestTOTPEngine:
    """Test the parameter-bound engine"""

    def test_defaults(self):
        engine = TOTPEngine()

        assert engine.digits == 6
        assert engine.period == 30
        assert engine.algorithm == "SHA1"
        assert engine.window_steps == 1

    def test_from_settings(self):
        class FakeSettings:
            totp_digits = 8
            totp_period = 60
            totp_algorithm = "sha-256"
            totp_valid_window = 2

        engine = TOTPEngine.from_settings(FakeSettings())

        assert engine.digits == 8
        assert engine.period == 60
        assert engine.algorithm == "SHA256"
        assert engine.window_steps == 2

    def test_code_at_round_trips_through_verify(self):
        engine = TOTPEngine(digits=8, algorithm="SHA512")
        code = engine.code_at(SHA512_SECRET, NOW)

        assert len(code) == 8
        assert engine.verify(SHA512_SECRET, code, NOW).ok

    @pytest.mark.parametrize("kwargs", [
        {"digits": 5},
        {"algorithm": "MD5"},
        {"period": 0},
        {"window_steps": -1},
    ])
    def test_rejects_bad_configuration(self, kwargs):
        with pytest.raises(InvalidConfiguration):
            TOTPEngine(**kwargs)

    def test_looks_like_code(self):
        engine = TOTPEngine()

        assert engine.looks_like_code("123456")
        assert engine.looks_like_code("123 456")
        assert not engine.looks_like_code("ABCDEFGH")
        assert not engine.looks_like_code("1234567")
