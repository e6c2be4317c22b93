"""
Cryptographic primitives used across the application.

Provides authenticated encryption of payloads, password hashing, secure
token generation, message signing and data masking. Key material is always
supplied by the host; nothing here generates or hard-codes a key implicitly.
"""

import base64
import binascii
import hashlib
import hmac
import json
import os
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from cryptography.exceptions import InvalidKey, InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from ..util.errors import CryptoError, CryptoErrorKind
from ..util.log import get_logger
from .masking import MaskingPolicy, mask_sensitive_data

logger = get_logger(__name__)

ALGORITHM = "aes-256-gcm"
KEY_SIZE = 32
IV_SIZE = 12
TAG_SIZE = 16
TOKEN_BYTES = 32

# scrypt cost parameters for password hashing
SCRYPT_N = 2**14
SCRYPT_R = 8
SCRYPT_P = 1
SCRYPT_SALT_SIZE = 16
SCRYPT_KEY_LENGTH = 32


@dataclass(frozen=True)
class EncryptedPayload:
    """Ciphertext, IV and authentication tag as one serializable unit."""

    ciphertext: bytes
    iv: bytes
    tag: bytes
    algorithm: str = ALGORITHM

    def to_dict(self) -> Dict[str, str]:
        return {
            "encryptedData": self.ciphertext.hex(),
            "iv": self.iv.hex(),
            "tag": self.tag.hex(),
            "algorithm": self.algorithm,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "EncryptedPayload":
        try:
            return cls(
                ciphertext=bytes.fromhex(data["encryptedData"]),
                iv=bytes.fromhex(data["iv"]),
                tag=bytes.fromhex(data["tag"]),
                algorithm=data.get("algorithm", ALGORITHM),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CryptoError(f"Malformed encrypted payload: {e}", kind=CryptoErrorKind.INVALID_INPUT)

    def to_bytes(self) -> bytes:
        """Compact form: ``iv || tag || ciphertext``."""
        return self.iv + self.tag + self.ciphertext

    @classmethod
    def from_bytes(cls, data: bytes) -> "EncryptedPayload":
        if len(data) < IV_SIZE + TAG_SIZE:
            raise CryptoError("Encrypted payload too short", kind=CryptoErrorKind.INVALID_INPUT)
        return cls(
            iv=data[:IV_SIZE],
            tag=data[IV_SIZE:IV_SIZE + TAG_SIZE],
            ciphertext=data[IV_SIZE + TAG_SIZE:],
        )


@dataclass(frozen=True)
class SignedMessage:
    """A payload together with its signature."""

    payload: str
    signature: str


def load_key_material(value: Union[str, bytes]) -> bytes:
    """Decode key material given as raw bytes, hex or base64.

    Raises:
        CryptoError: If the decoded key is not exactly 32 bytes
    """
    if isinstance(value, bytes):
        key = value
    else:
        value = value.strip()
        try:
            key = bytes.fromhex(value) if len(value) == KEY_SIZE * 2 else base64.urlsafe_b64decode(value)
        except (ValueError, binascii.Error) as e:
            raise CryptoError(f"Undecodable key material: {e}", kind=CryptoErrorKind.KEY_UNAVAILABLE)

    if len(key) != KEY_SIZE:
        raise CryptoError(
            f"Key must be exactly {KEY_SIZE} bytes, got {len(key)}",
            kind=CryptoErrorKind.KEY_UNAVAILABLE,
        )
    return key


class CryptoManager:
    """Main cryptographic operations manager."""

    def __init__(
        self,
        master_key: Optional[Union[str, bytes]] = None,
        signing_key: Optional[Union[str, bytes]] = None,
        masking_policy: MaskingPolicy = MaskingPolicy(),
    ):
        """Initialize crypto manager.

        Args:
            master_key: Encryption key (32 bytes, or its hex/base64 form)
            signing_key: HMAC secret; defaults to the master key
            masking_policy: Policy applied by ``mask_sensitive_data``
        """
        self.master_key = load_key_material(master_key) if master_key is not None else None
        if isinstance(signing_key, str):
            signing_key = signing_key.encode("utf-8")
        self.signing_key = signing_key
        self.masking_policy = masking_policy

    @classmethod
    def from_config(cls, config) -> "CryptoManager":
        """Build a manager from the key material named in a ``SecurityConfig``."""
        master_key = os.environ.get(config.master_key_env_var)
        signing_key = os.environ.get(config.signing_key_env_var)
        if not master_key:
            logger.warning(
                "No encryption key configured; encrypt/decrypt will fail closed",
                extra={"env_var": config.master_key_env_var},
            )
        return cls(
            master_key=master_key or None,
            signing_key=signing_key or None,
            masking_policy=MaskingPolicy(mask_two_char_names=config.mask_two_char_names),
        )

    def _require_key(self) -> AESGCM:
        if self.master_key is None:
            raise CryptoError("Encryption key is not available", kind=CryptoErrorKind.KEY_UNAVAILABLE)
        return AESGCM(self.master_key)

    def _require_signing_key(self) -> bytes:
        key = self.signing_key or self.master_key
        if key is None:
            raise CryptoError("Signing key is not available", kind=CryptoErrorKind.KEY_UNAVAILABLE)
        return key

    # Keys

    def generate_key(self) -> bytes:
        """Generate a new 32-byte key for the host to store."""
        return secrets.token_bytes(KEY_SIZE)

    @staticmethod
    def generate_csrf_token() -> str:
        """Random 64-character hex token for double-submit CSRF checks."""
        return secrets.token_hex(32)

    # Authenticated encryption

    def encrypt(self, plaintext: Union[str, bytes]) -> EncryptedPayload:
        """Encrypt with AES-256-GCM under a fresh random IV.

        Raises:
            CryptoError: If no key is configured
        """
        aesgcm = self._require_key()
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")

        iv = secrets.token_bytes(IV_SIZE)
        sealed = aesgcm.encrypt(iv, plaintext, None)
        return EncryptedPayload(ciphertext=sealed[:-TAG_SIZE], iv=iv, tag=sealed[-TAG_SIZE:])

    def decrypt(self, payload: EncryptedPayload) -> bytes:
        """Decrypt and authenticate a payload.

        Raises:
            CryptoError: ``INTEGRITY_FAILURE`` if the tag does not verify
        """
        aesgcm = self._require_key()
        if payload.algorithm != ALGORITHM:
            raise CryptoError(f"Unsupported algorithm: {payload.algorithm}", kind=CryptoErrorKind.INVALID_INPUT)
        if len(payload.iv) != IV_SIZE or len(payload.tag) != TAG_SIZE:
            raise CryptoError("Invalid IV or tag length", kind=CryptoErrorKind.INTEGRITY_FAILURE)

        try:
            return aesgcm.decrypt(payload.iv, payload.ciphertext + payload.tag, None)
        except InvalidTag:
            raise CryptoError(
                "Authentication tag verification failed",
                kind=CryptoErrorKind.INTEGRITY_FAILURE,
            ) from None

    def decrypt_text(self, payload: EncryptedPayload) -> str:
        return self.decrypt(payload).decode("utf-8")

    def encrypt_json(self, data: Any) -> EncryptedPayload:
        return self.encrypt(json.dumps(data, ensure_ascii=False, separators=(",", ":")))

    def decrypt_json(self, payload: EncryptedPayload) -> Any:
        return json.loads(self.decrypt_text(payload))

    # Password hashing

    def _scrypt(self, salt: bytes, n: int = SCRYPT_N, r: int = SCRYPT_R, p: int = SCRYPT_P) -> Scrypt:
        return Scrypt(salt=salt, length=SCRYPT_KEY_LENGTH, n=n, r=r, p=p)

    def hash_password(self, plaintext: str) -> str:
        """Hash a password with scrypt and a per-call random salt.

        Returns:
            ``scrypt$<n>$<r>$<p>$<salt_hex>$<hash_hex>``
        """
        salt = secrets.token_bytes(SCRYPT_SALT_SIZE)
        derived = self._scrypt(salt).derive(plaintext.encode("utf-8"))
        return f"scrypt${SCRYPT_N}${SCRYPT_R}${SCRYPT_P}${salt.hex()}${derived.hex()}"

    def verify_password(self, plaintext: str, hashed: str) -> bool:
        """Check a password against a stored hash. Never raises."""
        try:
            scheme, n, r, p, salt_hex, hash_hex = hashed.split("$")
            if scheme != "scrypt":
                return False
            kdf = self._scrypt(bytes.fromhex(salt_hex), int(n), int(r), int(p))
            kdf.verify(plaintext.encode("utf-8"), bytes.fromhex(hash_hex))
            return True
        except InvalidKey:
            return False
        except (AttributeError, ValueError, TypeError):
            logger.debug("Malformed password hash rejected")
            return False

    def hash_sensitive_data(self, data: str, salt: Optional[str] = None) -> Dict[str, str]:
        """One-way hash of a lookup field (e.g. an ID number)."""
        actual_salt = salt or secrets.token_hex(16)
        digest = hashlib.scrypt(
            data.encode("utf-8"),
            salt=actual_salt.encode("utf-8"),
            n=SCRYPT_N,
            r=SCRYPT_R,
            p=SCRYPT_P,
            dklen=SCRYPT_KEY_LENGTH,
        )
        return {
            "hash": digest.hex(),
            "salt": actual_salt,
            "algorithm": "scrypt",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    def verify_hashed_data(self, data: str, expected_hash: str, salt: str) -> bool:
        computed = self.hash_sensitive_data(data, salt)["hash"]
        return hmac.compare_digest(computed, expected_hash)

    # Tokens

    def generate_secure_token(self) -> str:
        """64 hex characters from 32 bytes of CSPRNG output."""
        return secrets.token_hex(TOKEN_BYTES)

    def generate_session_id(self) -> str:
        """Session identifier; same contract as ``generate_secure_token``."""
        return secrets.token_hex(TOKEN_BYTES)

    def generate_api_token(self, payload: Dict[str, Any], expires_in: int = 3600) -> str:
        """Encrypted, expiring API token rendered as URL-safe base64."""
        issued_at = int(time.time())
        token_data = {**payload, "iat": issued_at, "exp": issued_at + expires_in}
        sealed = self.encrypt_json(token_data).to_bytes()
        return base64.urlsafe_b64encode(sealed).decode("ascii")

    def verify_api_token(self, token: str) -> Optional[Dict[str, Any]]:
        """Return the token claims, or ``None`` if tampered, foreign or expired."""
        try:
            payload = EncryptedPayload.from_bytes(base64.urlsafe_b64decode(token.encode("ascii")))
            claims = self.decrypt_json(payload)
        except (CryptoError, ValueError, binascii.Error):
            return None

        if not isinstance(claims, dict):
            return None
        if claims.get("exp") is not None and claims["exp"] < int(time.time()):
            return None
        return claims

    # Signing

    def create_signature(self, data: Union[str, bytes]) -> str:
        """Deterministic HMAC-SHA256 signature, hex encoded."""
        if isinstance(data, str):
            data = data.encode("utf-8")
        return hmac.new(self._require_signing_key(), data, hashlib.sha256).hexdigest()

    def verify_signature(self, data: Union[str, bytes], signature: str) -> bool:
        """Constant-time signature check. Malformed input returns ``False``."""
        try:
            expected = self.create_signature(data)
            return hmac.compare_digest(expected, signature)
        except (TypeError, CryptoError):
            return False

    def sign_message(self, payload: str) -> SignedMessage:
        return SignedMessage(payload=payload, signature=self.create_signature(payload))

    def verify_message(self, message: SignedMessage) -> bool:
        return self.verify_signature(message.payload, message.signature)

    # Masking

    def mask_sensitive_data(self, value: str, category: str) -> str:
        return mask_sensitive_data(value, category, self.masking_policy)


def generate_master_key() -> str:
    """Generate a new master key encoded as URL-safe base64.

    Returns:
        Base64-encoded master key
    """
    return base64.urlsafe_b64encode(secrets.token_bytes(KEY_SIZE)).decode("ascii")
