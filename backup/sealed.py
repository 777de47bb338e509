"""
End-to-end sealing of archives before they leave the machine.

Sealed file layout: salt (32 bytes) + nonce (12 bytes) + AES-GCM ciphertext.
The salt is the tenant's KDF salt at upload time, so a backup made before a
password change can still be opened with the old password.
"""

import hmac
import logging
from pathlib import Path
from typing import Any, Optional

from crypto.envelope import seal, open_sealed, InvalidTag
from crypto.passphrase import KeyDerivation
from errors import InvalidCredentials
from fileutil import atomic_write_bytes

logger = logging.getLogger(__name__)

SEALED_SALT_LEN = 32
SEALED_FORMAT = "gestvault-sealed-v1"


def encryption_metadata(kdf: KeyDerivation) -> dict[str, Any]:
    """Description of the sealing scheme sent along with an upload."""
    return {
        "algorithm": "AES-256-GCM",
        "kdf": kdf.describe(),
        "format": SEALED_FORMAT,
        "salt_bytes": SEALED_SALT_LEN,
    }


def seal_file(src: Path, dest: Path, key: bytes, salt: bytes) -> None:
    if len(salt) != SEALED_SALT_LEN:
        raise ValueError(f"Salt must be {SEALED_SALT_LEN} bytes")
    atomic_write_bytes(dest, salt + seal(key, Path(src).read_bytes()))


def sealed_salt(path: Path) -> bytes:
    with open(path, "rb") as f:
        return f.read(SEALED_SALT_LEN)


def unseal_file(
    src: Path,
    dest: Path,
    session_key: bytes,
    session_salt: bytes,
    kdf: KeyDerivation,
    secret: Optional[str] = None,
) -> None:
    """
    Decrypt a sealed archive.

    The session key is used when the file was sealed under the current salt;
    otherwise the key is derived from ``secret``.

    Raises:
        InvalidCredentials: Foreign salt and no (or a wrong) secret, or tampered file
    """
    blob = Path(src).read_bytes()
    if len(blob) <= SEALED_SALT_LEN:
        raise InvalidCredentials("truncated-archive")
    salt, body = blob[:SEALED_SALT_LEN], blob[SEALED_SALT_LEN:]

    if hmac.compare_digest(salt, session_salt):
        key = session_key
    elif secret:
        key = kdf.derive(secret, salt)
    else:
        raise InvalidCredentials("foreign-salt")

    try:
        plaintext = open_sealed(key, body)
    except InvalidTag:
        logger.warning(f"Sealed archive {Path(src).name} failed authentication")
        raise InvalidCredentials("tag-mismatch")
    atomic_write_bytes(dest, plaintext)
