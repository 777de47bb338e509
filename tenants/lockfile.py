"""
Advisory lock on a tenant directory.

Held from unlock until lock so a second process cannot open (and later
overwrite) the same db.enc.
"""

import os
import logging
from pathlib import Path
from typing import Optional

from errors import TenantBusy

logger = logging.getLogger(__name__)

LOCK_NAME = ".lock"


class TenantLock:
    """Exclusive, non-blocking file lock on ``{tenant_dir}/.lock``."""

    def __init__(self, tenant_dir: Path):
        self.lockfile = Path(tenant_dir) / LOCK_NAME
        self._f = None

    @property
    def is_held(self) -> bool:
        return self._f is not None

    def acquire(self) -> None:
        """
        Raises:
            TenantBusy: Another process (or handle) holds the lock
        """
        if self._f is not None:
            return
        self.lockfile.parent.mkdir(parents=True, exist_ok=True)
        f = open(self.lockfile, "a+b")
        try:
            if os.name == "nt":
                import msvcrt
                f.seek(0)
                msvcrt.locking(f.fileno(), msvcrt.LK_NBLCK, 1)
            else:
                import fcntl
                fcntl.flock(f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            f.close()
            logger.warning(f"Tenant directory {self.lockfile.parent} is locked by another process")
            raise TenantBusy() from e
        f.seek(0)
        f.truncate()
        f.write(str(os.getpid()).encode("ascii"))
        f.flush()
        self._f = f

    def release(self) -> None:
        f: Optional[object] = self._f
        if f is None:
            return
        self._f = None
        try:
            if os.name == "nt":
                import msvcrt
                f.seek(0)
                msvcrt.locking(f.fileno(), msvcrt.LK_UNLCK, 1)
            else:
                import fcntl
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        except OSError as e:
            logger.warning(f"Releasing tenant lock failed: {e}")
        finally:
            f.close()

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
