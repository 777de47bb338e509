"""
Per-tenant encrypted vault lifecycle.

Tenant directory layout::

    {data_dir}/
        db.enc                  nonce + AES-GCM(SQLite image)
        salt                    32 random bytes, KDF salt
        attachments/*.enc       AttachmentCipher blobs
        secretstore-marker      present while passkey unlock is enabled
        .lock                   advisory process lock
        .rekey/                 only during (or after an interrupted) password change

The database is only ever decrypted into an in-memory SQLite connection.
"""

import os
import json
import uuid
import shutil
import sqlite3
import logging
import threading
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterator, Optional
from datetime import datetime, timezone
from contextlib import contextmanager, nullcontext

from config import config
from crypto.attachments import AttachmentCipher
from crypto.envelope import seal, open_sealed, InvalidTag
from crypto.passphrase import KeyDerivation
from crypto.secret_store import SecretStore
from errors import (
    AlreadyConfigured,
    CapabilityUnavailable,
    DecryptionFailed,
    InvalidCredentials,
    NotConfigured,
    PasskeyUnavailable,
    SessionRequired,
    StorageError,
    TenantBusy,
    WeakSecret,
)
from fileutil import atomic_write_bytes, atomic_write_text, fsync_dir
from tenants.lockfile import TenantLock, LOCK_NAME
from tenants.registry import TenantInfo, TenantRegistry
from tenants.schema import apply_base_schema
from tenants.session import DatabaseHandle, Session

logger = logging.getLogger(__name__)

DB_FILE = "db.enc"
SALT_FILE = "salt"
ATTACHMENTS_DIR = "attachments"
MARKER_FILE = "secretstore-marker"
REKEY_DIR = ".rekey"
DONE_MARKER = "DONE"

# Never part of a tenant's data set (backups, relocation digests)
TRANSIENT_NAMES = {LOCK_NAME, REKEY_DIR}


class VaultState(str, Enum):
    LOCKED = "locked"
    UNLOCKING = "unlocking"
    UNLOCKED = "unlocked"
    CONFIGURING = "configuring"


def has_vault(data_dir: Path) -> bool:
    data_dir = Path(data_dir)
    return (data_dir / DB_FILE).is_file() and (data_dir / SALT_FILE).is_file()


def has_tenant_content(data_dir: Path) -> bool:
    """True if the directory holds anything besides a stale lock file."""
    data_dir = Path(data_dir)
    if not data_dir.is_dir():
        return False
    return any(p.name != LOCK_NAME for p in data_dir.iterdir())


def read_salt(data_dir: Path) -> bytes:
    path = Path(data_dir) / SALT_FILE
    try:
        salt = path.read_bytes()
    except FileNotFoundError:
        raise InvalidCredentials("missing-salt")
    if len(salt) < KeyDerivation.MIN_SALT_LEN:
        raise InvalidCredentials("missing-salt")
    return salt


def decrypt_database(data_dir: Path, key: bytes) -> bytes:
    """
    Decrypt db.enc into a SQLite image held in memory.

    Raises:
        InvalidCredentials: Missing file or authentication failure
    """
    path = Path(data_dir) / DB_FILE
    try:
        blob = path.read_bytes()
    except FileNotFoundError:
        raise InvalidCredentials("missing-database")
    try:
        return open_sealed(key, blob)
    except InvalidTag:
        raise InvalidCredentials("tag-mismatch")


class VaultManager:
    """
    Owns the single active session of this process.

    All state transitions run under one re-entrant lock, so ``lock()`` issued
    while an unlock is deriving its key waits for that unlock to finish.
    """

    def __init__(
        self,
        registry: TenantRegistry,
        kdf: Optional[KeyDerivation] = None,
        secret_store: Optional[SecretStore] = None,
        min_secret_len: Optional[int] = None,
    ):
        self.registry = registry
        self.kdf = kdf or KeyDerivation()
        self.secret_store = secret_store or SecretStore()
        self.min_secret_len = min_secret_len if min_secret_len is not None else config.MIN_SECRET_LEN

        self._lock = threading.RLock()
        self._state = VaultState.LOCKED
        self._session: Optional[Session] = None
        self._tenant_lock: Optional[TenantLock] = None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def state(self) -> VaultState:
        return self._state

    def current_session(self) -> Optional[Session]:
        return self._session

    def require_session(self, tenant_id: Optional[str] = None) -> Session:
        """
        Raises:
            SessionRequired: Nothing unlocked, or a different tenant is unlocked
        """
        session = self._session
        if session is None or not session.is_active:
            raise SessionRequired()
        if tenant_id is not None and session.tenant_id != tenant_id:
            raise SessionRequired()
        return session

    def _active_for(self, tenant_id: str) -> Optional[Session]:
        session = self._session
        if session is not None and session.tenant_id == tenant_id:
            return session
        return None

    def status(self, tenant_id: str) -> dict[str, bool]:
        info = self.registry.get(tenant_id)
        data_dir = self.registry.data_dir(info)
        return {
            "is_configured": has_vault(data_dir),
            "has_encrypted_db": (data_dir / DB_FILE).is_file(),
            "is_unlocked": self._active_for(tenant_id) is not None,
            "passkey_supported": self.secret_store.is_available(),
            "passkey_enabled": (data_dir / MARKER_FILE).is_file(),
        }

    def _check_secret(self, secret: str) -> None:
        if not secret or len(secret) < self.min_secret_len:
            raise WeakSecret(f"The password must have at least {self.min_secret_len} characters")

    # ------------------------------------------------------------------
    # Create / unlock / lock
    # ------------------------------------------------------------------

    def create(self, tenant_id: str, secret: str) -> Session:
        """
        Create the encrypted vault of a registered tenant and unlock it.

        Raises:
            WeakSecret: Secret shorter than the minimum
            AlreadyConfigured: db.enc or other data already present
            StorageError: The vault could not be written
        """
        self._check_secret(secret)
        with self._lock:
            info = self.registry.get(tenant_id)
            data_dir = self.registry.data_dir(info)
            if has_vault(data_dir) or has_tenant_content(data_dir):
                raise AlreadyConfigured()

            if self._session is not None:
                self.lock()
            self._state = VaultState.CONFIGURING

            salt = self.kdf.generate_salt()
            key = self.kdf.derive(secret, salt)
            staging = data_dir.parent / f".{data_dir.name}.staging-{uuid.uuid4().hex[:8]}"
            try:
                conn = sqlite3.connect(":memory:")
                try:
                    apply_base_schema(conn)
                    image = conn.serialize()
                finally:
                    conn.close()

                (staging / ATTACHMENTS_DIR).mkdir(parents=True)
                atomic_write_bytes(staging / SALT_FILE, salt)
                atomic_write_bytes(staging / DB_FILE, seal(key, image))
                fsync_dir(staging)

                if data_dir.exists():
                    # Only a stale lock file can be left here
                    shutil.rmtree(data_dir)
                os.replace(staging, data_dir)
                fsync_dir(data_dir.parent)
            except OSError as e:
                shutil.rmtree(staging, ignore_errors=True)
                self._state = VaultState.LOCKED
                logger.error(f"Creating vault for tenant {tenant_id} failed: {e}")
                raise StorageError() from e
            except BaseException:
                shutil.rmtree(staging, ignore_errors=True)
                self._state = VaultState.LOCKED
                raise

            logger.info(f"Vault created for tenant {tenant_id}")
            return self._unlock(info, lambda _salt: key, via="password")

    def unlock(self, tenant_id: str, secret: str) -> Session:
        """
        Derive the key from the secret and open the tenant's database.

        Raises:
            InvalidCredentials: Wrong secret, or missing/corrupt vault files
            TenantBusy: Another process has the tenant open
        """
        with self._lock:
            info = self.registry.get(tenant_id)
            if not secret:
                raise InvalidCredentials("empty-secret")
            return self._unlock(info, lambda salt: self.kdf.derive(secret, salt), via="password")

    def unlock_with_secret_store(self, tenant_id: str) -> Session:
        """
        Open the vault with the key held by the OS credential store.

        Raises:
            PasskeyUnavailable: Not enabled, not stored, or the stored key is stale
        """
        with self._lock:
            info = self.registry.get(tenant_id)
            data_dir = self.registry.data_dir(info)
            if not (data_dir / MARKER_FILE).is_file():
                raise PasskeyUnavailable()
            key = self.secret_store.unwrap(tenant_id)
            if key is None:
                raise PasskeyUnavailable()
            try:
                return self._unlock(info, lambda _salt: key, via="passkey")
            except InvalidCredentials as e:
                logger.warning(f"Stored passkey for tenant {tenant_id} no longer opens the vault ({e.reason}), disabling it")
                self._disable_passkey(tenant_id, data_dir)
                raise PasskeyUnavailable() from e

    def _unlock(self, info: TenantInfo, resolve_key: Callable[[bytes], bytes], via: str) -> Session:
        """
        Open info's vault and make it the active session.

        The previous session is only closed once the new one has opened, so
        a wrong secret leaves whatever was unlocked untouched.
        """
        current = self._session
        reopening = current is not None and current.tenant_id == info.id
        self._state = VaultState.UNLOCKING

        data_dir = self.registry.data_dir(info)
        tenant_lock = None
        # A commit between reading the image and closing the old handle would be lost
        with current.db.writing() if reopening else nullcontext():
            try:
                if not data_dir.is_dir():
                    raise InvalidCredentials("missing-directory")
                if reopening:
                    # This process already holds the tenant lock
                    current.db.seal()
                else:
                    tenant_lock = TenantLock(data_dir)
                    tenant_lock.acquire()
                    self.recover_pending_rekey(data_dir)

                salt = read_salt(data_dir)
                key = resolve_key(salt)
                image = decrypt_database(data_dir, key)
                try:
                    handle = DatabaseHandle.from_image(image)
                except sqlite3.DatabaseError:
                    raise InvalidCredentials("corrupt-database")
            except InvalidCredentials as e:
                logger.warning(f"Unlock failed for tenant {info.id} ({e.reason})")
                self._abort_unlock(tenant_lock)
                raise
            except BaseException:
                self._abort_unlock(tenant_lock)
                raise

            if current is not None:
                if reopening:
                    tenant_lock, self._tenant_lock = self._tenant_lock, None
                try:
                    self.lock()
                except StorageError:
                    handle.close()
                    if tenant_lock is not None:
                        tenant_lock.release()
                    raise

        session = Session(tenant=info, data_dir=data_dir, key=key, salt=salt, db=handle, via=via)
        handle.bind(lambda image: self._write_database(session, image))
        self._session = session
        self._tenant_lock = tenant_lock
        self._state = VaultState.UNLOCKED
        self.registry.set_last_used(info.id)
        logger.info(f"Tenant {info.id} unlocked ({via})")
        return session

    def _abort_unlock(self, tenant_lock: Optional[TenantLock]) -> None:
        if tenant_lock is not None:
            tenant_lock.release()
        self._state = VaultState.UNLOCKED if self._session is not None else VaultState.LOCKED

    def _write_database(self, session: Session, image: bytes) -> None:
        atomic_write_bytes(session.data_dir / DB_FILE, seal(session.require_key(), image))

    def seal(self) -> None:
        """Persist the active session's database without locking it."""
        with self._lock:
            if self._session is not None:
                self._session.db.seal()

    def lock(self) -> None:
        """
        Seal and close the active session and drop its key.

        Safe to call repeatedly; waits for an unlock in progress.
        """
        with self._lock:
            session, tenant_lock = self._session, self._tenant_lock
            self._session = None
            self._tenant_lock = None
            if session is None:
                self._state = VaultState.LOCKED
                return

            error = None
            try:
                session.db.seal()
            except (OSError, sqlite3.Error) as e:
                error = e
                logger.error(f"Sealing database of tenant {session.tenant_id} failed: {e}")
            finally:
                session.db.close()
                session.wipe()
                if tenant_lock is not None:
                    tenant_lock.release()
                self._state = VaultState.LOCKED

            logger.info(f"Tenant {session.tenant_id} locked")
            if error is not None:
                raise StorageError("Changes since the last save could not be written") from error

    @contextmanager
    def released(self, tenant_id: str) -> Iterator[None]:
        """
        Hold a tenant's files still while they are copied or replaced.

        For the active tenant the database is sealed and the process lock
        released; afterwards the session follows the tenant to whatever data
        directory the registry then points at.
        """
        with self._lock:
            session = self._active_for(tenant_id)
            if session is None:
                data_dir = self.registry.data_dir(self.registry.get(tenant_id))
                temp_lock = TenantLock(data_dir) if data_dir.is_dir() else None
                if temp_lock is not None:
                    temp_lock.acquire()
                try:
                    yield
                finally:
                    if temp_lock is not None:
                        temp_lock.release()
                return

            # Writes from other threads would otherwise land in the old directory
            with session.db.writing():
                session.db.seal()
                if self._tenant_lock is not None:
                    self._tenant_lock.release()
                    self._tenant_lock = None
                try:
                    yield
                finally:
                    info = self.registry.get(tenant_id)
                    session.tenant = info
                    session.data_dir = self.registry.data_dir(info)
                    tenant_lock = TenantLock(session.data_dir)
                    tenant_lock.acquire()
                    self._tenant_lock = tenant_lock

    def delete_tenant(self, tenant_id: str) -> None:
        """Remove a tenant that is not currently unlocked."""
        with self._lock:
            if self._active_for(tenant_id) is not None:
                raise TenantBusy("Lock the company before deleting it")
            self.secret_store.clear(tenant_id)
            self.registry.remove(tenant_id)
            logger.info(f"Tenant {tenant_id} deleted")

    # ------------------------------------------------------------------
    # Password change
    # ------------------------------------------------------------------

    def verify_secret(self, tenant_id: str, secret: str) -> bytes:
        """Return the tenant key if secret opens its vault."""
        info = self.registry.get(tenant_id)
        data_dir = self.registry.data_dir(info)
        if not secret:
            raise InvalidCredentials("empty-secret")
        key = self.kdf.derive(secret, read_salt(data_dir))
        decrypt_database(data_dir, key)
        return key

    def change_secret(self, tenant_id: str, current_secret: str, new_secret: str) -> None:
        """
        Re-key a tenant under a fresh salt.

        Until the swap completes the tenant stays openable with the current
        secret; an interrupted swap is rolled back on the next open.

        Raises:
            WeakSecret: New secret too short
            InvalidCredentials: Current secret wrong
            StorageError: Writing the new vault failed (nothing changed)
        """
        self._check_secret(new_secret)
        with self._lock:
            info = self.registry.get(tenant_id)
            data_dir = self.registry.data_dir(info)
            session = self._active_for(tenant_id)
            temp_lock = None
            if session is None:
                if not has_vault(data_dir):
                    raise NotConfigured()
                temp_lock = TenantLock(data_dir)
                temp_lock.acquire()

            # Commits and attachment writes of the open session wait until
            # the session carries the new key
            with session.db.writing() if session is not None else nullcontext():
                try:
                    self.recover_pending_rekey(data_dir)
                    if session is not None:
                        session.db.seal()

                    if not current_secret:
                        raise InvalidCredentials("empty-secret")
                    old_key = self.kdf.derive(current_secret, read_salt(data_dir))
                    image = decrypt_database(data_dir, old_key)

                    new_salt = self.kdf.generate_salt()
                    new_key = self.kdf.derive(new_secret, new_salt)
                    try:
                        self._stage_rekey(data_dir, image, old_key, new_salt, new_key)
                        self._swap_in(data_dir)
                    except StorageError:
                        self.recover_pending_rekey(data_dir)
                        raise
                    except OSError as e:
                        logger.error(f"Password change for tenant {tenant_id} failed: {e}")
                        self.recover_pending_rekey(data_dir)
                        raise StorageError() from e
                    self.recover_pending_rekey(data_dir)
                finally:
                    if temp_lock is not None:
                        temp_lock.release()

                if session is not None:
                    session.key = new_key
                    session.salt = new_salt

            if (data_dir / MARKER_FILE).is_file():
                try:
                    self.secret_store.wrap_and_store(tenant_id, new_key)
                except CapabilityUnavailable:
                    logger.warning(f"Could not refresh passkey for tenant {tenant_id}, disabling it")
                    self._disable_passkey(tenant_id, data_dir)

            logger.info(f"Password changed for tenant {tenant_id}")

    def _stage_rekey(self, data_dir: Path, image: bytes, old_key: bytes, new_salt: bytes, new_key: bytes) -> None:
        """Write and verify the re-keyed vault under .rekey/new."""
        rekey = data_dir / REKEY_DIR
        if rekey.exists():
            shutil.rmtree(rekey)
        new_root = rekey / "new"
        (new_root / ATTACHMENTS_DIR).mkdir(parents=True)

        atomic_write_bytes(new_root / SALT_FILE, new_salt)
        atomic_write_bytes(new_root / DB_FILE, seal(new_key, image))

        cipher = AttachmentCipher(data_dir / ATTACHMENTS_DIR)
        staged = []
        for name in cipher.list_names():
            try:
                blob = cipher.reencrypt(name, old_key, new_key)
            except DecryptionFailed:
                # Already unreadable; left in place untouched
                logger.warning(f"Attachment {name} could not be decrypted and keeps its old encryption")
                continue
            atomic_write_bytes(new_root / ATTACHMENTS_DIR / name, blob)
            staged.append(name)

        try:
            if open_sealed(new_key, (new_root / DB_FILE).read_bytes()) != image:
                raise StorageError("The re-encrypted database did not verify")
            for name in staged:
                open_sealed(new_key, (new_root / ATTACHMENTS_DIR / name).read_bytes(), name.encode("ascii"))
        except InvalidTag as e:
            raise StorageError("The re-encrypted data did not verify") from e
        fsync_dir(new_root)

    def _swap_in(self, data_dir: Path) -> None:
        """Move every staged file into place, keeping the replaced one under .rekey/old."""
        rekey = data_dir / REKEY_DIR
        new_root = rekey / "new"
        old_root = rekey / "old"
        for src in sorted(p for p in new_root.rglob("*") if p.is_file()):
            rel = src.relative_to(new_root)
            live = data_dir / rel
            backup = old_root / rel
            backup.parent.mkdir(parents=True, exist_ok=True)
            if live.exists():
                os.replace(live, backup)
            os.replace(src, live)
        fsync_dir(data_dir)
        fsync_dir(data_dir / ATTACHMENTS_DIR)
        atomic_write_bytes(rekey / DONE_MARKER, b"")

    def recover_pending_rekey(self, data_dir: Path) -> bool:
        """
        Finish or undo a password change that did not clean up after itself.

        Returns:
            True if anything was recovered
        """
        rekey = Path(data_dir) / REKEY_DIR
        if not rekey.exists():
            return False
        try:
            if (rekey / DONE_MARKER).exists():
                logger.info(f"Completing password change in {data_dir}")
            else:
                old_root = rekey / "old"
                if old_root.exists():
                    for backup in sorted(p for p in old_root.rglob("*") if p.is_file()):
                        os.replace(backup, Path(data_dir) / backup.relative_to(old_root))
                    fsync_dir(data_dir)
                logger.warning(f"Rolled back interrupted password change in {data_dir}")
            shutil.rmtree(rekey)
        except OSError as e:
            logger.error(f"Recovering password change in {data_dir} failed: {e}")
            raise StorageError() from e
        return True

    # ------------------------------------------------------------------
    # Passkey
    # ------------------------------------------------------------------

    def enable_passkey(self, tenant_id: str, secret: str) -> None:
        """
        Raises:
            InvalidCredentials: Secret does not open the vault
            CapabilityUnavailable: No OS credential store
        """
        with self._lock:
            key = self.verify_secret(tenant_id, secret)
            data_dir = self.registry.data_dir(self.registry.get(tenant_id))
            self.secret_store.wrap_and_store(tenant_id, key)
            atomic_write_text(
                data_dir / MARKER_FILE,
                json.dumps({"enabled_at": datetime.now(timezone.utc).isoformat()}),
            )
            logger.info(f"Passkey enabled for tenant {tenant_id}")

    def disable_passkey(self, tenant_id: str) -> None:
        with self._lock:
            data_dir = self.registry.data_dir(self.registry.get(tenant_id))
            self._disable_passkey(tenant_id, data_dir)
            logger.info(f"Passkey disabled for tenant {tenant_id}")

    def _disable_passkey(self, tenant_id: str, data_dir: Path) -> None:
        self.secret_store.clear(tenant_id)
        marker = data_dir / MARKER_FILE
        if marker.exists():
            marker.unlink()

    def passkey_info(self, tenant_id: str) -> dict[str, Any]:
        data_dir = self.registry.data_dir(self.registry.get(tenant_id))
        return {
            "supported": self.secret_store.is_available(),
            "enabled": (data_dir / MARKER_FILE).is_file(),
        }
