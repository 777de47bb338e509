"""
Cloud backup flows that combine packaging, sealing and transfer.

Temporary archives live in the application's temp folder and are removed
whatever the outcome.
"""

import uuid
import asyncio
import logging
from pathlib import Path
from typing import Optional
from datetime import date

from backup.packager import BackupPackager
from backup.sealed import encryption_metadata, seal_file, unseal_file
from cloud.account import CloudAccount
from cloud.client import RemoteBackup
from cloud.progress import CancelToken, ProgressReporter
from tenants.registry import TenantInfo
from tenants.session import Session

logger = logging.getLogger(__name__)


def _discard(*paths: Path) -> None:
    for path in paths:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove temporary file {path}: {e}")


async def upload_backup(
    session: Session,
    packager: BackupPackager,
    account: CloudAccount,
    temp_dir: Path,
    notes: Optional[str] = None,
    progress: Optional[ProgressReporter] = None,
    cancel: Optional[CancelToken] = None,
) -> RemoteBackup:
    """Export the unlocked tenant, seal it end-to-end and upload it."""
    stem = f"gestvault-cloud-{uuid.uuid4().hex}"
    archive = Path(temp_dir) / f"{stem}.zip"
    sealed = Path(temp_dir) / f"{stem}.enc"
    filename = f"gestvault-backup-{date.today().isoformat()}.zip.enc"
    try:
        await asyncio.to_thread(packager.export, session.tenant_id, archive, notes or "")
        await asyncio.to_thread(seal_file, archive, sealed, session.require_key(), session.salt)
        _discard(archive)
        async with account.client() as client:
            return await client.upload(
                sealed,
                filename,
                encryption_metadata(packager.vault.kdf),
                notes=notes,
                progress=progress,
                cancel=cancel,
            )
    finally:
        _discard(archive, sealed)


async def download_backup(
    session: Session,
    packager: BackupPackager,
    account: CloudAccount,
    backup_id: int,
    dest: Path,
    temp_dir: Path,
    secret: Optional[str] = None,
    progress: Optional[ProgressReporter] = None,
    cancel: Optional[CancelToken] = None,
) -> Path:
    """Download a backup and save it, unsealed, as a regular archive at dest."""
    sealed = Path(temp_dir) / f"gestvault-dl-{uuid.uuid4().hex}.enc"
    try:
        async with account.client() as client:
            await client.download(backup_id, sealed, progress=progress, cancel=cancel)
        await asyncio.to_thread(
            unseal_file, sealed, Path(dest), session.require_key(), session.salt, packager.vault.kdf, secret
        )
    finally:
        _discard(sealed)
    return Path(dest)


async def import_backup(
    session: Session,
    packager: BackupPackager,
    account: CloudAccount,
    backup_id: int,
    temp_dir: Path,
    secret: Optional[str] = None,
    replace: bool = False,
    progress: Optional[ProgressReporter] = None,
    cancel: Optional[CancelToken] = None,
) -> tuple[TenantInfo, str]:
    """
    Download, unseal, validate and restore a backup.

    With ``replace`` the unlocked tenant is overwritten (and locked);
    otherwise the backup becomes a separate tenant.
    """
    archive = Path(temp_dir) / f"gestvault-import-{uuid.uuid4().hex}.zip"
    tenant_id = session.tenant_id
    try:
        await download_backup(session, packager, account, backup_id, archive, temp_dir, secret, progress, cancel)
        return await asyncio.to_thread(
            packager.import_,
            archive,
            tenant_id if replace else None,
            replace,
        )
    finally:
        _discard(archive)
