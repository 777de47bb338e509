"""
OS credential vault integration for passkey unlock.

A copy of the tenant's derived key is kept in the platform keyring
(Keychain, Windows Credential Manager, Secret Service). It is an opt-in
second path to the same key and never replaces the password.
"""

import logging
from typing import Any, Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from config import config
from errors import CapabilityUnavailable

logger = logging.getLogger(__name__)


class SecretStore:
    """Stores and retrieves wrapped tenant keys in the OS keyring."""

    def __init__(self, service: Optional[str] = None, backend: Any = None):
        """
        Args:
            service: Keyring service name (defaults to config)
            backend: Keyring backend instance; the active system keyring if None
        """
        self.service = service or config.KEYRING_SERVICE
        self._backend = backend

    @property
    def backend(self):
        return self._backend if self._backend is not None else keyring.get_keyring()

    @staticmethod
    def _username(tenant_id: str) -> str:
        return f"tenant:{tenant_id}"

    def is_available(self) -> bool:
        """True if a real credential backend (not the fail/null one) is active."""
        backend = self.backend
        module = type(backend).__module__
        if module.startswith("keyring.backends.fail") or module.startswith("keyring.backends.null"):
            return False
        try:
            return backend.priority >= 1
        except Exception:
            # Some backends compute priority lazily and raise when unusable
            return False

    def wrap_and_store(self, tenant_id: str, key: bytes) -> None:
        """
        Store the key for tenant_id.

        Raises:
            CapabilityUnavailable: No usable OS credential store
        """
        if not self.is_available():
            raise CapabilityUnavailable()
        try:
            self.backend.set_password(self.service, self._username(tenant_id), key.hex())
        except KeyringError as e:
            logger.warning(f"Keyring refused to store credential: {type(e).__name__}")
            raise CapabilityUnavailable() from e
        logger.info(f"Passkey stored for tenant {tenant_id}")

    def unwrap(self, tenant_id: str) -> Optional[bytes]:
        """Return the stored key, or None if there is none or it is unreadable."""
        if not self.is_available():
            return None
        try:
            value = self.backend.get_password(self.service, self._username(tenant_id))
        except KeyringError as e:
            logger.warning(f"Keyring read failed: {type(e).__name__}")
            return None
        if not value:
            return None
        try:
            return bytes.fromhex(value)
        except ValueError:
            logger.warning(f"Stored passkey for tenant {tenant_id} is malformed")
            return None

    def clear(self, tenant_id: str) -> None:
        """Remove the stored key. Safe to call when nothing is stored."""
        if not self.is_available():
            return
        try:
            self.backend.delete_password(self.service, self._username(tenant_id))
        except PasswordDeleteError:
            pass
        except KeyringError as e:
            logger.warning(f"Keyring delete failed: {type(e).__name__}")
