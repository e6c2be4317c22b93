"""
Tests for the crypto core.

Covers encryption payload formats, key loading, password and data hashing,
API tokens, signatures and masking delegation.
"""

import base64
import json
import time
from unittest.mock import patch

import pytest

from gatekeeper.security.config import SecurityConfig
from gatekeeper.security.crypto import (
    ALGORITHM,
    IV_SIZE,
    TAG_SIZE,
    CryptoManager,
    EncryptedPayload,
    SignedMessage,
    generate_master_key,
    load_key_material,
)
from gatekeeper.security.masking import MaskingPolicy
from gatekeeper.util.errors import CryptoError, CryptoErrorKind


class TestKeyMaterial:
    """Test key loading from the supported encodings."""

    def test_raw_bytes(self, master_key):
        assert load_key_material(master_key) == master_key

    def test_hex_string(self, master_key):
        assert load_key_material(master_key.hex()) == master_key

    def test_base64_string(self, master_key):
        encoded = base64.urlsafe_b64encode(master_key).decode()
        assert load_key_material(encoded) == master_key

    def test_generated_master_key_loads(self):
        assert len(load_key_material(generate_master_key())) == 32

    def test_wrong_length_rejected(self):
        with pytest.raises(CryptoError) as exc_info:
            load_key_material(b"too-short")
        assert exc_info.value.kind is CryptoErrorKind.KEY_UNAVAILABLE

    def test_undecodable_rejected(self):
        with pytest.raises(CryptoError) as exc_info:
            load_key_material("!!! not a key !!!")
        assert exc_info.value.kind is CryptoErrorKind.KEY_UNAVAILABLE


class TestEncryption:
    """Test authenticated encryption behaviour."""

    def test_encrypt_without_key_fails_closed(self):
        manager = CryptoManager()
        with pytest.raises(CryptoError) as exc_info:
            manager.encrypt("secret")
        assert exc_info.value.kind is CryptoErrorKind.KEY_UNAVAILABLE

    def test_decrypt_without_key_fails_closed(self, crypto):
        payload = crypto.encrypt("secret")
        with pytest.raises(CryptoError) as exc_info:
            CryptoManager().decrypt(payload)
        assert exc_info.value.kind is CryptoErrorKind.KEY_UNAVAILABLE

    def test_payload_shape(self, crypto):
        payload = crypto.encrypt("hello")
        assert len(payload.iv) == IV_SIZE
        assert len(payload.tag) == TAG_SIZE
        assert payload.algorithm == ALGORITHM
        assert payload.ciphertext != b"hello"

    def test_fresh_iv_per_call(self, crypto):
        first = crypto.encrypt("same plaintext")
        second = crypto.encrypt("same plaintext")
        assert first.iv != second.iv
        assert first.ciphertext != second.ciphertext

    def test_text_round_trip(self, crypto):
        assert crypto.decrypt_text(crypto.encrypt("héllo wörld")) == "héllo wörld"

    def test_json_round_trip(self, crypto):
        data = {"user": "alice", "roles": ["admin"], "count": 3}
        assert crypto.decrypt_json(crypto.encrypt_json(data)) == data

    def test_wrong_key_is_integrity_failure(self, crypto):
        payload = crypto.encrypt("secret")
        other = CryptoManager(master_key=crypto.generate_key())
        with pytest.raises(CryptoError) as exc_info:
            other.decrypt(payload)
        assert exc_info.value.kind is CryptoErrorKind.INTEGRITY_FAILURE

    def test_wrong_iv_is_integrity_failure(self, crypto):
        payload = crypto.encrypt("secret")
        tampered = EncryptedPayload(ciphertext=payload.ciphertext, iv=bytes(IV_SIZE), tag=payload.tag)
        with pytest.raises(CryptoError) as exc_info:
            crypto.decrypt(tampered)
        assert exc_info.value.kind is CryptoErrorKind.INTEGRITY_FAILURE

    def test_truncated_tag_is_integrity_failure(self, crypto):
        payload = crypto.encrypt("secret")
        tampered = EncryptedPayload(ciphertext=payload.ciphertext, iv=payload.iv, tag=payload.tag[:8])
        with pytest.raises(CryptoError) as exc_info:
            crypto.decrypt(tampered)
        assert exc_info.value.kind is CryptoErrorKind.INTEGRITY_FAILURE

    def test_unknown_algorithm_rejected(self, crypto):
        payload = crypto.encrypt("secret")
        foreign = EncryptedPayload(payload.ciphertext, payload.iv, payload.tag, algorithm="aes-128-cbc")
        with pytest.raises(CryptoError) as exc_info:
            crypto.decrypt(foreign)
        assert exc_info.value.kind is CryptoErrorKind.INVALID_INPUT


class TestPayloadSerialization:
    """Test dict and compact byte forms of encrypted payloads."""

    def test_dict_form(self, crypto):
        payload = crypto.encrypt("hello")
        data = payload.to_dict()

        assert set(data) == {"encryptedData", "iv", "tag", "algorithm"}
        assert EncryptedPayload.from_dict(json.loads(json.dumps(data))) == payload

    def test_bytes_form(self, crypto):
        payload = crypto.encrypt("hello")
        restored = EncryptedPayload.from_bytes(payload.to_bytes())
        assert crypto.decrypt_text(restored) == "hello"

    def test_malformed_dict(self):
        with pytest.raises(CryptoError) as exc_info:
            EncryptedPayload.from_dict({"iv": "zz"})
        assert exc_info.value.kind is CryptoErrorKind.INVALID_INPUT

    def test_short_bytes(self):
        with pytest.raises(CryptoError):
            EncryptedPayload.from_bytes(b"\x00" * 10)


class TestHashing:
    """Test password and lookup-field hashing."""

    def test_hash_format(self, crypto):
        hashed = crypto.hash_password("p")
        parts = hashed.split("$")
        assert parts[0] == "scrypt"
        assert len(parts) == 6

    def test_password_hash_needs_no_key(self):
        manager = CryptoManager()
        assert manager.verify_password("p", manager.hash_password("p"))

    @pytest.mark.parametrize("malformed", ["", "plain", "bcrypt$1$2$3$aa$bb", "scrypt$x$8$1$aa$bb", "scrypt$16384$8$1$zz$bb"])
    def test_malformed_hash_returns_false(self, crypto, malformed):
        assert crypto.verify_password("p", malformed) is False

    def test_sensitive_data_hash_is_deterministic_per_salt(self, crypto):
        first = crypto.hash_sensitive_data("110101199001011234", salt="fixed")
        second = crypto.hash_sensitive_data("110101199001011234", salt="fixed")
        assert first["hash"] == second["hash"]
        assert first["algorithm"] == "scrypt"

    def test_sensitive_data_random_salt(self, crypto):
        first = crypto.hash_sensitive_data("value")
        second = crypto.hash_sensitive_data("value")
        assert first["salt"] != second["salt"]
        assert first["hash"] != second["hash"]

    def test_verify_hashed_data(self, crypto):
        record = crypto.hash_sensitive_data("value")
        assert crypto.verify_hashed_data("value", record["hash"], record["salt"])
        assert not crypto.verify_hashed_data("other", record["hash"], record["salt"])


class TestTokens:
    """Test random and API tokens."""

    def test_session_id_shape(self, crypto):
        session_id = crypto.generate_session_id()
        assert len(session_id) == 64
        int(session_id, 16)

    def test_api_token_round_trip(self, crypto):
        token = crypto.generate_api_token({"sub": "user-1"}, expires_in=60)
        claims = crypto.verify_api_token(token)

        assert claims["sub"] == "user-1"
        assert claims["exp"] - claims["iat"] == 60

    def test_expired_api_token(self, crypto):
        token = crypto.generate_api_token({"sub": "user-1"}, expires_in=60)
        with patch("gatekeeper.security.crypto.time.time", return_value=time.time() + 3600):
            assert crypto.verify_api_token(token) is None

    def test_api_token_wrong_key(self, crypto):
        token = crypto.generate_api_token({"sub": "user-1"})
        other = CryptoManager(master_key=crypto.generate_key())
        assert other.verify_api_token(token) is None

    def test_garbage_api_token(self, crypto):
        assert crypto.verify_api_token("not-a-token") is None


class TestSignatures:
    """Test HMAC signing."""

    def test_signature_is_deterministic(self, crypto):
        assert crypto.create_signature("payload") == crypto.create_signature("payload")

    def test_separate_signing_key(self, master_key):
        first = CryptoManager(master_key=master_key, signing_key="secret-a")
        second = CryptoManager(master_key=master_key, signing_key="secret-b")
        signature = first.create_signature("payload")

        assert first.verify_signature("payload", signature)
        assert not second.verify_signature("payload", signature)

    def test_signing_without_any_key(self):
        manager = CryptoManager()
        with pytest.raises(CryptoError) as exc_info:
            manager.create_signature("payload")
        assert exc_info.value.kind is CryptoErrorKind.KEY_UNAVAILABLE
        assert manager.verify_signature("payload", "00") is False

    def test_malformed_signature(self, crypto):
        assert crypto.verify_signature("payload", None) is False
        assert crypto.verify_signature("payload", "not-hex") is False

    def test_signed_message(self, crypto):
        message = crypto.sign_message("hello")
        assert crypto.verify_message(message)
        assert not crypto.verify_message(SignedMessage(payload="hello!", signature=message.signature))


class TestFromConfig:
    """Test building a manager from configuration."""

    def test_reads_named_env_vars(self, master_key, monkeypatch):
        config = SecurityConfig(master_key_env_var="TEST_GK_KEY", signing_key_env_var="TEST_GK_SIGN")
        monkeypatch.setenv("TEST_GK_KEY", master_key.hex())
        monkeypatch.setenv("TEST_GK_SIGN", "sign-secret")

        manager = CryptoManager.from_config(config)

        assert manager.master_key == master_key
        assert manager.signing_key == b"sign-secret"

    def test_missing_key_fails_closed(self, monkeypatch):
        config = SecurityConfig(master_key_env_var="TEST_GK_MISSING")
        monkeypatch.delenv("TEST_GK_MISSING", raising=False)

        manager = CryptoManager.from_config(config)

        with pytest.raises(CryptoError):
            manager.encrypt("x")

    def test_masking_policy_from_config(self):
        manager = CryptoManager.from_config(SecurityConfig(mask_two_char_names=True))
        assert manager.masking_policy == MaskingPolicy(mask_two_char_names=True)
        assert manager.mask_sensitive_data("张三", "name") == "张*"
