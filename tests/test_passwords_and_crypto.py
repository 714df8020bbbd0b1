"""Tests for password hashing, the strength policy and secret sealing."""

import pytest

from tenantauth.service.crypto import SecretCipher, SecretDecryptionError
from tenantauth.service.passwords import PasswordService


class TestPasswordHashing:
    def test_hash_is_argon2id_and_salted(self, passwords):
        first = passwords.hash_password("ValidPassword123!@#")
        second = passwords.hash_password("ValidPassword123!@#")

        assert first.startswith("$argon2id$")
        assert first != second

    def test_verify_accepts_only_the_right_password(self, passwords):
        pwd_hash = passwords.hash_password("ValidPassword123!@#")

        assert passwords.verify_password("ValidPassword123!@#", pwd_hash)
        assert not passwords.verify_password("ValidPassword123!@", pwd_hash)

    def test_verify_tolerates_garbage_hash(self, passwords):
        assert passwords.verify_password("anything", "not-a-hash") is False


class TestStrengthPolicy:
    def test_short_password_reports_four_violations(self):
        violations = PasswordService().validate_strength("short")

        assert len(violations) == 4
        assert "Password must be at least 12 characters long" in violations

    def test_strong_password_passes(self):
        assert PasswordService().validate_strength("ValidPassword123!@#") == []

    @pytest.mark.parametrize(
        "password, expected",
        [
            ("alllowercase1!", "uppercase"),
            ("ALLUPPERCASE1!", "lowercase"),
            ("NoDigitsHere!!", "digit"),
            ("NoSpecials1234", "special"),
        ],
    )
    def test_each_rule_is_reported(self, password, expected):
        violations = PasswordService().validate_strength(password)

        assert len(violations) == 1
        assert expected in violations[0]

    def test_empty_password_reports_everything(self):
        assert len(PasswordService().validate_strength("")) == 5


class TestSecretCipher:
    def test_encrypt_decrypt(self, cipher):
        sealed = cipher.encrypt("JBSWY3DPEHPK3PXP")

        assert sealed != "JBSWY3DPEHPK3PXP"
        assert cipher.decrypt(sealed) == "JBSWY3DPEHPK3PXP"

    def test_nonce_makes_ciphertexts_differ(self, cipher):
        assert cipher.encrypt("same") != cipher.encrypt("same")

    def test_wrong_key_fails_authentication(self, cipher):
        other = SecretCipher("f" * 64)

        with pytest.raises(SecretDecryptionError):
            other.decrypt(cipher.encrypt("secret"))

    def test_truncated_ciphertext_is_rejected(self, cipher):
        with pytest.raises(SecretDecryptionError):
            cipher.decrypt("AAAA")

    @pytest.mark.parametrize("key", ["abc", "z" * 64, "ab" * 16])
    def test_key_must_be_64_hex_characters(self, key):
        with pytest.raises(ValueError):
            SecretCipher(key)

    def test_hash_code_is_keyed_and_stable(self, cipher):
        other = SecretCipher("f" * 64)

        assert cipher.hash_code("12345678") == cipher.hash_code("12345678")
        assert cipher.hash_code("12345678") != cipher.hash_code("87654321")
        assert cipher.hash_code("12345678") != other.hash_code("12345678")
