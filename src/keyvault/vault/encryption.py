# Vault - Encryption Service
#
# Master passphrase -> encryption key (PBKDF2-HMAC-SHA256)
# Secret encryption (AES-256-CTR, fresh 128-bit nonce per call)
# SHA-256 integrity digests and URL-safe random secrets
#
# CTR mode carries no authentication tag: decrypting with the wrong key
# returns garbage instead of raising. Passphrase correctness is checked
# once at unlock through the vault's verification canary.

import base64
import hashlib
import hmac
import os
import secrets
from typing import List, Optional, Tuple

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..core.config import DEFAULT_KDF_ITERATIONS, MIN_KDF_ITERATIONS


class EncryptionService:
    """
    Key derivation and symmetric encryption for vault secrets.

    Flow:
    1. Operator enters master passphrase
    2. PBKDF2 derives a 256-bit key from passphrase + salt
    3. AES-256-CTR encrypts/decrypts each secret
    4. Each ciphertext carries its own random nonce as a prefix
    """

    PBKDF2_ITERATIONS = DEFAULT_KDF_ITERATIONS
    MIN_ITERATIONS = MIN_KDF_ITERATIONS
    KEY_LENGTH = 32  # 256 bits for AES-256
    SALT_LENGTH = 32
    MIN_SALT_LENGTH = 16  # 128 bits
    NONCE_LENGTH = 16  # full AES block, used as the initial CTR counter

    @staticmethod
    def derive_key(
        passphrase: str,
        salt: Optional[bytes] = None,
        iterations: int = PBKDF2_ITERATIONS,
    ) -> Tuple[bytes, bytes]:
        """
        Derive an encryption key from a passphrase using PBKDF2.

        Args:
            passphrase: Master passphrase
            salt: Salt stored with the vault; generated when omitted
            iterations: PBKDF2 rounds, never below MIN_ITERATIONS

        Returns:
            Tuple of (key, salt)
        """
        if iterations < EncryptionService.MIN_ITERATIONS:
            raise ValueError(
                f"PBKDF2 iterations must be >= {EncryptionService.MIN_ITERATIONS}"
            )
        if salt is None:
            salt = EncryptionService.generate_salt()
        if len(salt) < EncryptionService.MIN_SALT_LENGTH:
            raise ValueError(
                f"Salt must be at least {EncryptionService.MIN_SALT_LENGTH} bytes"
            )

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=EncryptionService.KEY_LENGTH,
            salt=salt,
            iterations=iterations,
        )
        return kdf.derive(passphrase.encode("utf-8")), salt

    @staticmethod
    def generate_salt() -> bytes:
        """Generate cryptographically random salt."""
        return os.urandom(EncryptionService.SALT_LENGTH)

    @staticmethod
    def _check_key(key: bytes) -> None:
        if len(key) != EncryptionService.KEY_LENGTH:
            raise ValueError(
                f"Encryption key must be {EncryptionService.KEY_LENGTH} bytes, "
                f"got {len(key)}"
            )

    @staticmethod
    def encrypt(plaintext: str, key: bytes) -> str:
        """
        Encrypt plaintext with AES-256-CTR.

        Returns:
            base64(nonce || ciphertext), ready to store as a JSON string
        """
        EncryptionService._check_key(key)
        # Must be unique per encryption under the same key
        nonce = os.urandom(EncryptionService.NONCE_LENGTH)

        encryptor = Cipher(algorithms.AES(key), modes.CTR(nonce)).encryptor()
        ciphertext = encryptor.update(plaintext.encode("utf-8")) + encryptor.finalize()

        return EncryptionService.encode_for_storage(nonce + ciphertext)

    @staticmethod
    def decrypt(blob: str, key: bytes) -> str:
        """
        Decrypt a blob produced by encrypt().

        A wrong key does not raise; it yields garbage text.
        """
        EncryptionService._check_key(key)
        combined = EncryptionService.decode_from_storage(blob)
        if len(combined) < EncryptionService.NONCE_LENGTH:
            raise ValueError("Ciphertext is shorter than the nonce")

        nonce = combined[:EncryptionService.NONCE_LENGTH]
        ciphertext = combined[EncryptionService.NONCE_LENGTH:]

        decryptor = Cipher(algorithms.AES(key), modes.CTR(nonce)).decryptor()
        plaintext_bytes = decryptor.update(ciphertext) + decryptor.finalize()

        return plaintext_bytes.decode("utf-8", errors="replace")

    @staticmethod
    def hash(value: str) -> str:
        """SHA-256 hex digest, used for integrity comparison only."""
        return hashlib.sha256(value.encode("utf-8")).hexdigest()

    @staticmethod
    def matches_hash(value: str, digest: str) -> bool:
        """Constant-time check of ``value`` against a stored digest."""
        return hmac.compare_digest(EncryptionService.hash(value), digest)

    @staticmethod
    def generate_secret(byte_length: int = 32) -> str:
        """Random bytes, base64url-encoded without padding."""
        if byte_length < 1:
            raise ValueError("byte_length must be positive")
        return secrets.token_urlsafe(byte_length)

    @staticmethod
    def encode_for_storage(data: bytes) -> str:
        """Encode binary data as base64 text for the JSON vault file."""
        return base64.b64encode(data).decode("utf-8")

    @staticmethod
    def decode_from_storage(data: str) -> bytes:
        """Decode base64 text from the vault file."""
        return base64.b64decode(data.encode("utf-8"))


def passphrase_weaknesses(passphrase: str) -> List[str]:
    """
    Advisory strength check for a new master passphrase.

    The vault accepts any non-empty passphrase; the CLI shows these
    warnings at ``init`` so the operator can choose again.

    Returns:
        Human-readable weaknesses (empty when none were found)
    """
    issues = []
    if len(passphrase) < 12:
        issues.append("shorter than 12 characters")
    if not any(c.isupper() for c in passphrase):
        issues.append("no uppercase letter")
    if not any(c.islower() for c in passphrase):
        issues.append("no lowercase letter")
    if not any(c.isdigit() for c in passphrase):
        issues.append("no digit")

    common = {
        "password123", "Password123", "Admin123456",
        "Welcome12345", "Passw0rd123", "123456789012",
    }
    if passphrase in common:
        issues.append("appears in the list of common passwords")

    return issues
