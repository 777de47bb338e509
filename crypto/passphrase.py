"""
Secret-to-key derivation using PBKDF2-HMAC-SHA512.

The derived key opens the tenant database and the attachment blobs. The
secret itself is never persisted; only the salt is stored next to the vault.
"""

import os
import hashlib

from config import config


class KeyDerivation:
    """Derives 256-bit encryption keys from user secrets."""

    HASH_NAME = "sha512"
    KEY_LEN = 32  # 256 bits for AES-256
    MIN_SALT_LEN = 16

    def __init__(self, iterations: int | None = None, salt_len: int | None = None):
        """
        Args:
            iterations: PBKDF2 iteration count (defaults to config)
            salt_len: Length of generated salts in bytes (defaults to config)
        """
        self.iterations = iterations or config.PBKDF2_ITERATIONS
        self.salt_len = salt_len or config.SALT_LEN

    def derive(self, secret: str | bytes, salt: bytes) -> bytes:
        """
        Derive a 256-bit key from a secret and salt.

        Deterministic: the same (secret, salt) always yields the same key.

        Raises:
            ValueError: If the secret is empty or the salt is too short
        """
        if isinstance(secret, str):
            secret = secret.encode("utf-8")
        if not secret:
            raise ValueError("Secret must not be empty")
        if not salt or len(salt) < self.MIN_SALT_LEN:
            raise ValueError(f"Salt must be at least {self.MIN_SALT_LEN} bytes")

        return hashlib.pbkdf2_hmac(
            self.HASH_NAME,
            secret,
            salt,
            self.iterations,
            dklen=self.KEY_LEN,
        )

    def generate_salt(self) -> bytes:
        """Generate a fresh random salt from the OS CSPRNG."""
        return os.urandom(self.salt_len)

    def describe(self) -> dict:
        """KDF parameters, for manifests and cloud metadata."""
        return {
            "function": "PBKDF2",
            "hash": "SHA-512",
            "iterations": self.iterations,
        }
