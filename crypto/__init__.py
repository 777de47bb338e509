"""
Cryptographic module for GestVault Companion.

Handles:
- Key derivation from passwords (PBKDF2-HMAC-SHA512)
- AES-256-GCM sealing of the database, attachments and cloud archives
- Passkey storage in the OS credential vault
"""

from .passphrase import KeyDerivation
from .secret_store import SecretStore
from .attachments import AttachmentCipher

__all__ = ["KeyDerivation", "SecretStore", "AttachmentCipher"]
