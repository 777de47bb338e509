"""
Moving a tenant's data directory between the default location and a
user-chosen folder (for example an external drive).

Always copy, verify, switch the registry, then delete the original.
"""

import os
import sys
import uuid
import shutil
import string
import getpass
import logging
from pathlib import Path
from typing import Any, Optional

from errors import NotConfigured, RelocationFailed, TargetExists
from fileutil import fsync_dir, tree_digest
from tenants.registry import TenantInfo
from tenants.vault import TRANSIENT_NAMES, VaultManager, has_tenant_content, has_vault

logger = logging.getLogger(__name__)

FOLDER_PREFIX = "GestVault-"
WRITE_TEST_PREFIX = ".gestvault_write_test_"


def data_digest(root: Path) -> dict[str, str]:
    """tree_digest without lock files and password-change leftovers."""
    return {
        rel: digest
        for rel, digest in tree_digest(root).items()
        if rel.split("/", 1)[0] not in TRANSIENT_NAMES
    }


def is_writable_dir(path: Path) -> bool:
    """True if a scratch file can be written to path and removed again."""
    scratch = Path(path) / f"{WRITE_TEST_PREFIX}{uuid.uuid4().hex[:8]}"
    try:
        scratch.write_bytes(b"test")
        scratch.unlink()
    except OSError:
        return False
    return True


def volume_roots() -> list[Path]:
    """Folders under which this platform mounts removable drives."""
    if sys.platform == "darwin":
        return [Path("/Volumes")]
    user = getpass.getuser()
    return [Path("/media") / user, Path("/run/media") / user, Path("/mnt")]


def _windows_drives() -> list[Path]:
    system_drive = os.environ.get("SystemDrive", "C:").upper()
    drives = []
    for letter in string.ascii_uppercase:
        if f"{letter}:" == system_drive:
            continue
        root = Path(f"{letter}:\\")
        if root.exists():
            drives.append(root)
    return drives


def detect_volumes(roots: Optional[list[Path]] = None) -> list[dict[str, Any]]:
    """
    List mounted external volumes a tenant could be moved to.

    The system volume is skipped. ``available`` tells whether a file could
    actually be written there.

    Args:
        roots: Mount folders to scan instead of the platform's own

    Returns:
        [{"name": str, "path": str, "available": bool}]
    """
    if roots is None and os.name == "nt":
        candidates = _windows_drives()
    else:
        candidates = []
        for root in roots if roots is not None else volume_roots():
            try:
                entries = sorted(p for p in Path(root).iterdir() if p.is_dir())
            except OSError as e:
                logger.debug(f"Cannot scan {root}: {e}")
                continue
            candidates.extend(p for p in entries if os.path.realpath(p) != os.path.abspath(os.sep))

    volumes = []
    for path in candidates:
        volumes.append({
            "name": path.name or str(path),
            "path": str(path),
            "available": is_writable_dir(path),
        })
    logger.debug(f"Detected {len(volumes)} external volumes")
    return volumes


class DataRelocator:
    """Relocates tenant directories all-or-nothing."""

    def __init__(self, vault: VaultManager):
        self.vault = vault
        self.registry = vault.registry

    def migrate(self, tenant_id: str, new_path: Path) -> TenantInfo:
        """
        Move a tenant into ``{new_path}/GestVault-{id}``.

        Raises:
            RelocationFailed: new_path is not a writable folder, or copying failed
            TargetExists: The destination already holds files
        """
        parent = Path(new_path).expanduser()
        if not parent.is_dir():
            raise RelocationFailed("The destination folder does not exist")
        if not is_writable_dir(parent):
            raise RelocationFailed("The destination folder is not writable")
        target = parent / f"{FOLDER_PREFIX}{tenant_id}"
        return self._relocate(tenant_id, target, str(target))

    def default_path(self) -> Path:
        """Folder that holds tenants stored at the default location."""
        return self.registry.default_root

    def reset_to_default(self, tenant_id: str) -> TenantInfo:
        """Move a tenant back under the application's own data folder."""
        return self._relocate(tenant_id, self.registry.default_dir(tenant_id), None)

    def _relocate(self, tenant_id: str, target: Path, data_path: Optional[str]) -> TenantInfo:
        info = self.registry.get(tenant_id)
        source = self.registry.data_dir(info)
        if source.resolve() == target.resolve():
            return info
        if not has_vault(source):
            raise NotConfigured()
        if has_tenant_content(target):
            raise TargetExists()

        staging = target.parent / f".{target.name}.moving-{uuid.uuid4().hex[:8]}"
        with self.vault.released(tenant_id):
            self.vault.recover_pending_rekey(source)
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copytree(source, staging, ignore=shutil.ignore_patterns(*TRANSIENT_NAMES))
                if data_digest(staging) != data_digest(source):
                    raise RelocationFailed("The copied data did not match the original")
                if target.exists():
                    # Stale lock file only
                    shutil.rmtree(target)
                os.replace(staging, target)
                fsync_dir(target.parent)
            except OSError as e:
                shutil.rmtree(staging, ignore_errors=True)
                logger.error(f"Relocating tenant {tenant_id} to {target} failed: {e}")
                raise RelocationFailed() from e
            except BaseException:
                shutil.rmtree(staging, ignore_errors=True)
                raise
            info = self.registry.update_data_path(tenant_id, data_path)

        try:
            shutil.rmtree(source)
        except OSError as e:
            logger.warning(f"Could not remove old data directory {source}: {e}")

        logger.info(f"Tenant {tenant_id} relocated to {target}")
        return info
