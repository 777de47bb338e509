"""
Encrypted attachment storage (expense receipts, logos, imported documents).

Each blob is stored as ``{attachments_dir}/{opaque_name}`` where the opaque
name is random and the original filename lives only in the encrypted
database. The opaque name is bound as AES-GCM associated data.
"""

import re
import uuid
import logging
from pathlib import Path

from crypto.envelope import seal, open_sealed, InvalidTag
from errors import AttachmentNotFound, DecryptionFailed
from fileutil import atomic_write_bytes

logger = logging.getLogger(__name__)

_OPAQUE_NAME = re.compile(r"^[0-9a-f]{32}\.enc$")


class AttachmentCipher:
    """Encrypts and decrypts attachment blobs in one tenant directory."""

    def __init__(self, attachments_dir: Path):
        self.attachments_dir = Path(attachments_dir)

    @staticmethod
    def generate_name() -> str:
        return f"{uuid.uuid4().hex}.enc"

    @staticmethod
    def is_valid_name(name: str) -> bool:
        return bool(_OPAQUE_NAME.match(name or ""))

    def _path_for(self, opaque_name: str) -> Path:
        if not self.is_valid_name(opaque_name):
            raise AttachmentNotFound()
        return self.attachments_dir / opaque_name

    def encrypt(self, plaintext: bytes, key: bytes) -> tuple[str, bytes]:
        """
        Encrypt plaintext under a fresh nonce and store it under a new name.

        Returns:
            Tuple of (opaque_name, ciphertext)
        """
        opaque_name = self.generate_name()
        ciphertext = seal(key, plaintext, opaque_name.encode("ascii"))
        atomic_write_bytes(self.attachments_dir / opaque_name, ciphertext)
        return opaque_name, ciphertext

    def decrypt(self, opaque_name: str, key: bytes) -> bytes:
        """
        Raises:
            AttachmentNotFound: Unknown or malformed name
            DecryptionFailed: Wrong key or corrupted file
        """
        path = self._path_for(opaque_name)
        if not path.is_file():
            raise AttachmentNotFound()
        try:
            return open_sealed(key, path.read_bytes(), opaque_name.encode("ascii"))
        except InvalidTag as e:
            logger.warning(f"Attachment {opaque_name} failed authentication")
            raise DecryptionFailed() from e

    def reencrypt(self, opaque_name: str, old_key: bytes, new_key: bytes) -> bytes:
        """Return the blob re-sealed under new_key, keeping its name. Nothing is written."""
        plaintext = self.decrypt(opaque_name, old_key)
        return seal(new_key, plaintext, opaque_name.encode("ascii"))

    def delete(self, opaque_name: str) -> None:
        path = self._path_for(opaque_name)
        if path.exists():
            path.unlink()

    def list_names(self) -> list[str]:
        if not self.attachments_dir.exists():
            return []
        return sorted(p.name for p in self.attachments_dir.iterdir() if self.is_valid_name(p.name))
