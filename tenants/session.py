"""
Unlocked-tenant session objects.

A ``Session`` exists only between unlock and lock. It holds the session key
in memory and the open database handle; nothing in it is ever written to disk
in clear.
"""

import sqlite3
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Optional
from datetime import datetime
from contextlib import contextmanager
from dataclasses import dataclass, field

from crypto.attachments import AttachmentCipher
from errors import AttachmentNotFound, SessionRequired
from tenants.registry import TenantInfo

logger = logging.getLogger(__name__)


class DatabaseHandle:
    """
    In-memory SQLite connection backed by an encrypted image on disk.

    ``commit()`` commits and re-seals the image through ``sealer``; the
    database is never materialised as a plaintext file.
    """

    def __init__(self, conn: sqlite3.Connection, sealer: Optional[Callable[[bytes], None]] = None):
        self._conn = conn
        self._sealer = sealer
        self._lock = threading.RLock()
        self._sealed_changes = conn.total_changes
        self._closed = False

    @classmethod
    def from_image(cls, image: Optional[bytes], sealer: Optional[Callable[[bytes], None]] = None) -> "DatabaseHandle":
        """Open a handle on a serialized SQLite image (None for an empty database)."""
        conn = sqlite3.connect(":memory:", check_same_thread=False)
        try:
            if image:
                conn.deserialize(image)
            conn.row_factory = sqlite3.Row
            # Fails on a garbage image
            conn.execute("SELECT count(*) FROM sqlite_master").fetchone()
            conn.execute("PRAGMA foreign_keys = ON")
        except sqlite3.DatabaseError:
            conn.close()
            raise
        return cls(conn, sealer)

    def bind(self, sealer: Callable[[bytes], None]) -> None:
        """Set the callback that persists the encrypted image."""
        self._sealer = sealer

    @contextmanager
    def writing(self) -> Iterator["DatabaseHandle"]:
        """
        Hold the handle exclusively for the duration of the block.

        No other thread can touch the database until it exits. Re-keying
        and relocation run inside it, so a concurrent commit lands before
        or after them, never in between.
        """
        with self._lock:
            yield self

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_open(self):
        if self._closed:
            raise sqlite3.ProgrammingError("Database handle is closed")

    def execute(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
        with self._lock:
            self._check_open()
            return self._conn.execute(sql, tuple(params))

    def executemany(self, sql: str, seq_of_params: Iterable[Iterable[Any]]) -> sqlite3.Cursor:
        with self._lock:
            self._check_open()
            return self._conn.executemany(sql, seq_of_params)

    def query(self, sql: str, params: Iterable[Any] = ()) -> list[dict[str, Any]]:
        """Run a SELECT and return rows as dictionaries."""
        with self._lock:
            self._check_open()
            return [dict(row) for row in self._conn.execute(sql, tuple(params)).fetchall()]

    def commit(self) -> None:
        """Commit the current transaction and persist the encrypted image."""
        with self._lock:
            self._check_open()
            self._conn.commit()
            self.seal(force=True)

    def rollback(self) -> None:
        with self._lock:
            self._check_open()
            self._conn.rollback()

    def seal(self, force: bool = False) -> bool:
        """
        Write the encrypted image if anything changed since the last seal.

        Returns:
            True if an image was written
        """
        with self._lock:
            self._check_open()
            if self._conn.in_transaction:
                self._conn.commit()
            if not force and self._conn.total_changes == self._sealed_changes:
                return False
            if self._sealer is None:
                raise RuntimeError("No sealer bound to database handle")
            self._sealer(self._conn.serialize())
            self._sealed_changes = self._conn.total_changes
            return True

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._conn.close()


@dataclass
class Session:
    """One unlocked tenant. Passed explicitly to whoever needs the vault."""
    tenant: TenantInfo
    data_dir: Path
    key: Optional[bytes] = field(repr=False)
    salt: bytes = field(repr=False)
    db: DatabaseHandle = field(repr=False)
    via: str = "password"
    unlocked_at: datetime = field(default_factory=datetime.now)

    @property
    def tenant_id(self) -> str:
        return self.tenant.id

    @property
    def is_active(self) -> bool:
        return self.key is not None and not self.db.closed

    @property
    def attachments_dir(self) -> Path:
        return self.data_dir / "attachments"

    @property
    def attachments(self) -> AttachmentCipher:
        return AttachmentCipher(self.attachments_dir)

    def require_key(self) -> bytes:
        if self.key is None:
            raise SessionRequired()
        return self.key

    def encrypt_attachment(self, plaintext: bytes) -> tuple[str, bytes]:
        """Encrypt and store a blob under the session key."""
        with self.db.writing():
            return self.attachments.encrypt(plaintext, self.require_key())

    def decrypt_attachment(self, opaque_name: str) -> bytes:
        with self.db.writing():
            return self.attachments.decrypt(opaque_name, self.require_key())

    # Attachment index (adjuntos table)

    def store_attachment(
        self,
        original_name: str,
        content: bytes,
        mime_type: Optional[str] = None,
        expense_id: Optional[int] = None,
    ) -> dict[str, Any]:
        """Encrypt a document and record its original name in the database."""
        with self.db.writing():
            opaque_name, _ = self.encrypt_attachment(content)
            try:
                self.db.execute(
                    "INSERT INTO adjuntos (nombre_cifrado, nombre_original, tipo_mime, tamano, gasto_id) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (opaque_name, original_name, mime_type, len(content), expense_id),
                )
                self.db.commit()
            except sqlite3.Error:
                self.db.rollback()
                self.attachments.delete(opaque_name)
                raise
            logger.info(f"Stored attachment {opaque_name} ({len(content)} bytes)")
            return self.attachment_record(opaque_name)

    def attachment_record(self, opaque_name: str) -> dict[str, Any]:
        rows = self.db.query("SELECT * FROM adjuntos WHERE nombre_cifrado = ?", (opaque_name,))
        if not rows:
            raise AttachmentNotFound()
        return rows[0]

    def list_attachments(self, expense_id: Optional[int] = None) -> list[dict[str, Any]]:
        if expense_id is None:
            return self.db.query("SELECT * FROM adjuntos ORDER BY id")
        return self.db.query("SELECT * FROM adjuntos WHERE gasto_id = ? ORDER BY id", (expense_id,))

    def remove_attachment(self, opaque_name: str) -> None:
        with self.db.writing():
            self.attachment_record(opaque_name)
            self.db.execute("DELETE FROM adjuntos WHERE nombre_cifrado = ?", (opaque_name,))
            self.db.commit()
            self.attachments.delete(opaque_name)

    def wipe(self) -> None:
        """Drop key material. The handle must already be closed."""
        self.key = None

    def info(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant.id,
            "tenant_name": self.tenant.name,
            "unlocked_at": self.unlocked_at.isoformat(),
            "via": self.via,
        }
