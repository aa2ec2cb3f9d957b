"""Unit tests for BackupCodeStore (backup_codes.py)"""
import threading
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from twofactor.database import Base
from twofactor.exceptions import EntropyUnavailable
from twofactor.models import TwoFactorCredential, CredentialState, BackupCode
from twofactor.repository import CredentialRepository
from twofactor.services.backup_codes import (
    BACKUP_CODE_ALPHABET,
    BackupCodeStore,
    RedeemResult,
    normalize_backup_code,
)

TEST_HASH_ROUNDS = 1000


def make_credential(repository, store, user_id="user-1", codes=None):
    codes = codes if codes is not None else store.generate()
    credential = TwoFactorCredential(
        user_id=user_id,
        secret="GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ",
        state=CredentialState.ENABLED.value,
    )
    credential = repository.put(user_id, credential, store.hash_codes(codes))
    return credential, codes


@pytest.mark.unit
class TestGeneration:
    """Test backup code generation"""

    def test_default_batch(self, backup_store):
        codes = backup_store.generate()

        assert len(codes) == 10
        assert len(set(codes)) == 10
        for code in codes:
            assert len(code) == 8
            assert all(c in BACKUP_CODE_ALPHABET for c in code)

    def test_custom_count_and_length(self, backup_store):
        codes = backup_store.generate(count=4, length=12)

        assert len(codes) == 4
        assert all(len(c) == 12 for c in codes)

    def test_alphabet_excludes_ambiguous_characters(self):
        for c in "01OIL":
            assert c not in BACKUP_CODE_ALPHABET

    def test_codes_never_all_digits(self, backup_store):
        """All-digit strings are reserved for TOTP codes"""
        with patch("twofactor.services.backup_codes.secrets.choice", side_effect=list("23456789" + "ABCDEFGH")):
            code = backup_store._random_code(8)

        assert code == "ABCDEFGH"

    def test_entropy_failure_raises(self, backup_store):
        with patch("twofactor.services.backup_codes.secrets.choice", side_effect=OSError("no entropy")):
            with pytest.raises(EntropyUnavailable):
                backup_store.generate()


@pytest.mark.unit
class TestHashing:
    """Test hashing"""

    def test_hash_is_salted(self, backup_store):
        first = backup_store.hash_code("ABCD2345")
        second = backup_store.hash_code("ABCD2345")

        assert first != second
        assert "ABCD2345" not in first
        assert first.startswith("$pbkdf2-sha256$")

    def test_normalization(self):
        assert normalize_backup_code(" abcd-2345 ") == "ABCD2345"
        assert normalize_backup_code(None) == ""

    def test_looks_like_backup_code(self, backup_store):
        assert backup_store.looks_like_backup_code("ABCD2345")
        assert backup_store.looks_like_backup_code("abcd-2345")
        assert not backup_store.looks_like_backup_code("12345678")
        assert not backup_store.looks_like_backup_code("123456")
        assert not backup_store.looks_like_backup_code("ABCD234")
        assert not backup_store.looks_like_backup_code("ABCD2340")  # 0 not in alphabet


@pytest.mark.unit
class TestRedeem:
    """Test single-use redemption"""

    def test_valid_code_redeems_once(self, repository, backup_store):
        credential, codes = make_credential(repository, backup_store)

        assert backup_store.redeem(credential, codes[0]) == RedeemResult.SUCCESS
        assert backup_store.redeem(credential, codes[0]) == RedeemResult.ALREADY_USED

    def test_redeem_is_case_and_separator_insensitive(self, repository, backup_store):
        credential, codes = make_credential(repository, backup_store)
        code = codes[3]

        assert backup_store.redeem(credential, f"{code[:4].lower()}-{code[4:]}") == RedeemResult.SUCCESS

    def test_unknown_code(self, repository, backup_store):
        credential, codes = make_credential(repository, backup_store, codes=["ABCD2345", "EFGH6789"])

        assert backup_store.redeem(credential, "ZZZZ9999") == RedeemResult.NOT_FOUND

    def test_remaining_decreases(self, repository, backup_store):
        credential, codes = make_credential(repository, backup_store)

        assert backup_store.remaining(credential) == 10
        backup_store.redeem(credential, codes[0])
        backup_store.redeem(credential, codes[1])
        assert backup_store.remaining(credential) == 8

    def test_used_at_recorded_from_clock(self, repository, backup_store, db_session):
        credential, codes = make_credential(repository, backup_store, codes=["ABCD2345"])

        backup_store.redeem(credential, "ABCD2345")

        entry = db_session.query(BackupCode).filter(BackupCode.credential_id == credential.id).one()
        assert entry.used is True
        assert entry.used_at is not None

    def test_exhausted_when_every_code_used(self, repository, backup_store):
        credential, codes = make_credential(repository, backup_store, codes=["ABCD2345", "EFGH6789"])
        for code in codes:
            assert backup_store.redeem(credential, code) == RedeemResult.SUCCESS

        assert backup_store.redeem(credential, "ZZZZ9999") == RedeemResult.EXHAUSTED
        # A used code still reports as used, not exhausted
        assert backup_store.redeem(credential, "ABCD2345") == RedeemResult.ALREADY_USED

    def test_no_codes_is_not_found(self, repository, backup_store):
        credential, _ = make_credential(repository, backup_store, codes=[])

        assert backup_store.redeem(credential, "ABCD2345") == RedeemResult.NOT_FOUND

    def test_lost_race_reports_already_used(self, repository, backup_store):
        credential, codes = make_credential(repository, backup_store)

        with patch.object(repository, "mark_backup_code_used", return_value=False):
            assert backup_store.redeem(credential, codes[0]) == RedeemResult.ALREADY_USED


@pytest.mark.unit
class TestRegenerate:
    """Test full-set regeneration"""

    def test_old_codes_invalidated(self, repository, backup_store):
        credential, old_codes = make_credential(repository, backup_store)

        new_codes = backup_store.regenerate(credential)

        assert len(new_codes) == 10
        assert backup_store.remaining(credential) == 10
        # Unused old codes stop working too
        assert backup_store.redeem(credential, old_codes[0]) == RedeemResult.NOT_FOUND
        assert backup_store.redeem(credential, new_codes[0]) == RedeemResult.SUCCESS

    def test_regenerate_resets_used_state(self, repository, backup_store):
        credential, old_codes = make_credential(repository, backup_store)
        backup_store.redeem(credential, old_codes[0])

        backup_store.regenerate(credential)

        assert backup_store.remaining(credential) == 10


@pytest.mark.unit
class TestConcurrentRedeem:
    """Two sessions redeeming the same code: exactly one wins"""

    @pytest.fixture
    def file_engine(self, tmp_path):
        import twofactor.models  # noqa: F401

        engine = create_engine(
            f"sqlite:///{tmp_path / 'concurrent.db'}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        Base.metadata.create_all(bind=engine)
        yield engine
        engine.dispose()

    def test_exactly_one_winner(self, file_engine):
        Session = sessionmaker(autocommit=False, autoflush=False, bind=file_engine)

        setup_session = Session()
        setup_store = BackupCodeStore(CredentialRepository(setup_session), hash_rounds=TEST_HASH_ROUNDS)
        credential, codes = make_credential(CredentialRepository(setup_session), setup_store, codes=["ABCD2345"])
        credential_id = credential.id
        setup_session.close()

        barrier = threading.Barrier(2)
        results = []
        errors = []

        def worker():
            session = Session()
            try:
                store = BackupCodeStore(CredentialRepository(session), hash_rounds=TEST_HASH_ROUNDS)
                cred = session.get(TwoFactorCredential, credential_id)
                barrier.wait()
                results.append(store.redeem(cred, "ABCD2345"))
            except Exception as e:
                errors.append(e)
            finally:
                session.close()

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert sorted(r.value for r in results) == ["already_used", "success"]
