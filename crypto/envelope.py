"""
AES-256-GCM envelope used for the database file, attachments and cloud
archives.

Blob layout: nonce (12 bytes) + ciphertext + tag (16 bytes).
"""

import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

NONCE_LEN = 12  # 96 bits for AES-GCM
TAG_LEN = 16

__all__ = ["seal", "open_sealed", "InvalidTag", "NONCE_LEN", "TAG_LEN"]


def seal(key: bytes, plaintext: bytes, associated_data: Optional[bytes] = None) -> bytes:
    """Encrypt with a fresh random nonce and return nonce + ciphertext."""
    nonce = os.urandom(NONCE_LEN)
    aesgcm = AESGCM(key)
    return nonce + aesgcm.encrypt(nonce, plaintext, associated_data)


def open_sealed(key: bytes, blob: bytes, associated_data: Optional[bytes] = None) -> bytes:
    """
    Decrypt a blob produced by seal().

    Raises:
        InvalidTag: Wrong key, wrong associated data, or tampered/truncated blob
    """
    if len(blob) < NONCE_LEN + TAG_LEN:
        raise InvalidTag()
    nonce = blob[:NONCE_LEN]
    aesgcm = AESGCM(key)
    return aesgcm.decrypt(nonce, blob[NONCE_LEN:], associated_data)
