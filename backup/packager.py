"""
Portable backup archives of one tenant.

Archive layout (zip)::

    db.enc              encrypted database, byte for byte
    attachments/*.enc   encrypted attachment blobs, names preserved
    manifest.json       written last

The archive never contains plaintext: db.enc and the blobs are copied as
they are at rest. The KDF salt travels in the manifest because db.enc cannot
be opened without it.
"""

import os
import zlib
import json
import uuid
import base64
import shutil
import hashlib
import logging
import zipfile
from pathlib import Path
from typing import Any, Optional
from datetime import datetime, timezone
from contextlib import nullcontext

from config import ARCHIVE_FORMAT_VERSION, VERSION
from crypto.attachments import AttachmentCipher
from errors import CorruptArchive, ExportFailed, ImportFailed, TargetExists, UnsupportedFormat
from fileutil import atomic_write_bytes, dir_size, fsync_dir
from tenants.registry import TenantInfo
from tenants.vault import (
    ATTACHMENTS_DIR,
    DB_FILE,
    SALT_FILE,
    VaultManager,
    has_tenant_content,
)

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
_CHUNK = 1024 * 1024


def _is_safe_member(name: str) -> bool:
    """Only db.enc and opaque attachment names are accepted inside an archive."""
    if name == DB_FILE:
        return True
    prefix = f"{ATTACHMENTS_DIR}/"
    return name.startswith(prefix) and AttachmentCipher.is_valid_name(name[len(prefix):])


class BackupPackager:
    """Exports and imports tenant archives."""

    def __init__(self, vault: VaultManager):
        self.vault = vault
        self.registry = vault.registry

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def export(self, tenant_id: str, dest: Path, note: str = "") -> dict[str, Any]:
        """
        Write an archive of the unlocked tenant to dest.

        Returns:
            The manifest that was written

        Raises:
            SessionRequired: The tenant is not the unlocked one
            ExportFailed: Any I/O error (dest is left untouched)
        """
        session = self.vault.require_session(tenant_id)

        dest = Path(dest)
        part = dest.with_name(dest.name + ".part")
        files = []
        # Archive the files as one consistent set; commits wait until done
        with session.db.writing():
            session.db.seal()
            data_dir = session.data_dir
            try:
                dest.parent.mkdir(parents=True, exist_ok=True)
                with zipfile.ZipFile(part, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                    members = [(DB_FILE, data_dir / DB_FILE)]
                    for name in session.attachments.list_names():
                        members.append((f"{ATTACHMENTS_DIR}/{name}", session.attachments_dir / name))

                    for arcname, path in members:
                        # Single read so the hash matches what went into the zip
                        data = path.read_bytes()
                        zf.writestr(arcname, data)
                        files.append({
                            "name": arcname,
                            "sha256": hashlib.sha256(data).hexdigest(),
                            "size": len(data),
                        })

                    manifest = {
                        "formatVersion": ARCHIVE_FORMAT_VERSION,
                        "tenantId": session.tenant.id,
                        "tenantName": session.tenant.name,
                        "createdAt": datetime.now(timezone.utc).isoformat(),
                        "appVersion": VERSION,
                        "note": note or "",
                        "files": files,
                        "uncompressedSize": sum(f["size"] for f in files),
                        "compressedSize": sum(i.compress_size for i in zf.infolist()),
                        "kdf": {
                            **self.vault.kdf.describe(),
                            "salt": base64.b64encode(session.salt).decode("ascii"),
                        },
                    }
                    zf.writestr(MANIFEST_NAME, json.dumps(manifest, indent=2, ensure_ascii=False))

                with open(part, "rb") as f:
                    os.fsync(f.fileno())
                os.replace(part, dest)
            except OSError as e:
                logger.error(f"Export of tenant {tenant_id} failed: {e}")
                try:
                    part.unlink()
                except OSError:
                    pass
                raise ExportFailed() from e

        logger.info(f"Exported tenant {tenant_id} to {dest} ({len(files)} files)")
        return manifest

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _read_manifest(self, zf: zipfile.ZipFile) -> dict[str, Any]:
        try:
            raw = zf.read(MANIFEST_NAME)
        except KeyError:
            raise CorruptArchive("The backup file is damaged: manifest.json is missing")
        try:
            manifest = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            raise CorruptArchive("The backup file is damaged: manifest.json is not valid JSON")
        if not isinstance(manifest, dict):
            raise CorruptArchive("The backup file is damaged: manifest.json is not an object")

        version = manifest.get("formatVersion")
        if not isinstance(version, int) or version < 1:
            raise CorruptArchive("The backup file is damaged: manifest.json has no format version")
        if version > ARCHIVE_FORMAT_VERSION:
            raise UnsupportedFormat(
                f"The backup uses format {version}; this version of the application reads up to {ARCHIVE_FORMAT_VERSION}"
            )

        if not isinstance(manifest.get("tenantId"), str) or not manifest["tenantId"]:
            raise CorruptArchive("The backup file is damaged: manifest.json has no tenant id")
        files = manifest.get("files")
        if not isinstance(files, list):
            raise CorruptArchive("The backup file is damaged: manifest.json has no file list")
        for entry in files:
            if not isinstance(entry, dict) or not {"name", "sha256", "size"} <= entry.keys():
                raise CorruptArchive("The backup file is damaged: manifest.json has a malformed file entry")
            if not _is_safe_member(str(entry["name"])):
                raise CorruptArchive(f"The backup file is damaged: unexpected file name {entry['name']!r}")
        if DB_FILE not in {e["name"] for e in files}:
            raise CorruptArchive("The backup file is damaged: db.enc is missing from the manifest")

        kdf = manifest.get("kdf")
        if not isinstance(kdf, dict):
            kdf = {}
        try:
            salt = base64.b64decode(kdf.get("salt", ""), validate=True)
        except (TypeError, ValueError):
            salt = b""
        if len(salt) < self.vault.kdf.MIN_SALT_LEN:
            raise CorruptArchive("The backup file is damaged: manifest.json has no key salt")
        if kdf.get("iterations") not in (None, self.vault.kdf.iterations):
            raise UnsupportedFormat("The backup was encrypted with unsupported key settings")
        return manifest

    def _check_member(self, zf: zipfile.ZipFile, entry: dict[str, Any]) -> None:
        name = entry["name"]
        try:
            zinfo = zf.getinfo(name)
        except KeyError:
            raise CorruptArchive(f"The backup file is damaged: {name} is missing")
        if zinfo.file_size != entry["size"]:
            raise CorruptArchive(f"The backup file is damaged: {name} has the wrong size")

        h = hashlib.sha256()
        size = 0
        try:
            with zf.open(zinfo) as f:
                for chunk in iter(lambda: f.read(_CHUNK), b""):
                    h.update(chunk)
                    size += len(chunk)
        except (zipfile.BadZipFile, zlib.error) as e:
            raise CorruptArchive(f"The backup file is damaged: {name} cannot be read") from e
        if size != entry["size"] or h.hexdigest() != entry["sha256"]:
            raise CorruptArchive(f"The backup file is damaged: {name} does not match its checksum")

    def inspect(self, archive_path: Path) -> dict[str, Any]:
        """
        Validate an archive completely and return its manifest.

        Raises:
            CorruptArchive: Unreadable zip, bad manifest, checksum or size mismatch, stray entries
            UnsupportedFormat: Written by a newer format version
        """
        try:
            with zipfile.ZipFile(archive_path) as zf:
                manifest = self._read_manifest(zf)
                listed = {e["name"] for e in manifest["files"]}
                for name in zf.namelist():
                    if name != MANIFEST_NAME and name not in listed:
                        raise CorruptArchive(f"The backup file is damaged: unexpected entry {name!r}")
                for entry in manifest["files"]:
                    self._check_member(zf, entry)
        except zipfile.BadZipFile as e:
            raise CorruptArchive("The backup file is damaged: it is not a readable archive") from e
        except FileNotFoundError as e:
            raise ImportFailed("The backup file does not exist") from e
        return manifest

    # ------------------------------------------------------------------
    # Import
    # ------------------------------------------------------------------

    def import_(
        self,
        archive_path: Path,
        target_tenant_id: Optional[str] = None,
        replace: bool = False,
        name: Optional[str] = None,
    ) -> tuple[TenantInfo, str]:
        """
        Restore an archive as a tenant.

        Without a target the archive's own tenant id is used, or a fresh id
        when that tenant already exists here. Overwriting an existing tenant
        needs both ``target_tenant_id`` and ``replace=True``.

        Returns:
            Tuple of (tenant info, user-facing message)
        """
        manifest = self.inspect(archive_path)

        if target_tenant_id is not None:
            existing = self.registry.get(target_tenant_id)
            if not replace:
                raise TargetExists("The company already exists; confirm to replace its data")
            info = TenantInfo(
                id=existing.id,
                name=name or existing.name,
                data_path=existing.data_path,
                created_at=existing.created_at,
            )
        else:
            tenant_id = manifest["tenantId"]
            restored_name = name or manifest.get("tenantName") or "Restored company"
            if self.registry.exists(tenant_id):
                tenant_id = str(uuid.uuid4())
                restored_name = name or f"{restored_name} (restored)"
            info = TenantInfo(
                id=tenant_id,
                name=restored_name,
                created_at=datetime.now(timezone.utc).isoformat(),
            )

        replacing = target_tenant_id is not None
        target = self.registry.data_dir(info)
        if not replacing and has_tenant_content(target):
            raise TargetExists()

        active = self.vault.current_session()
        if replacing and active is not None and active.tenant_id == target_tenant_id:
            # The restored data may use another password
            self.vault.lock()

        staging = target.parent / f".{target.name}.import-{uuid.uuid4().hex[:8]}"
        try:
            self._unpack(archive_path, manifest, staging)
            with self.vault.released(info.id) if replacing and target.exists() else nullcontext():
                self._swap_into_place(staging, target)
        except OSError as e:
            logger.error(f"Import of {archive_path} failed: {e}")
            shutil.rmtree(staging, ignore_errors=True)
            raise ImportFailed() from e
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise

        self.registry.register(info)
        if replacing:
            self.vault.secret_store.clear(info.id)

        logger.info(f"Imported archive into tenant {info.id}")
        created = manifest.get("createdAt", "")
        message = f"Backup of '{info.name}' from {created} restored" if created else f"Backup of '{info.name}' restored"
        return info, message

    def _unpack(self, archive_path: Path, manifest: dict[str, Any], staging: Path) -> None:
        (staging / ATTACHMENTS_DIR).mkdir(parents=True)
        with zipfile.ZipFile(archive_path) as zf:
            for entry in manifest["files"]:
                dest = staging / entry["name"]
                h = hashlib.sha256()
                with zf.open(entry["name"]) as src, open(dest, "wb") as out:
                    for chunk in iter(lambda: src.read(_CHUNK), b""):
                        h.update(chunk)
                        out.write(chunk)
                    out.flush()
                    os.fsync(out.fileno())
                # The archive could have changed since inspect()
                if h.hexdigest() != entry["sha256"]:
                    raise CorruptArchive(f"The backup file is damaged: {entry['name']} does not match its checksum")
        atomic_write_bytes(staging / SALT_FILE, base64.b64decode(manifest["kdf"]["salt"]))
        fsync_dir(staging)

    def _swap_into_place(self, staging: Path, target: Path) -> None:
        """Rename staging onto target; an existing target is removed only after the swap."""
        if target.exists():
            old = target.parent / f".{target.name}.replaced-{uuid.uuid4().hex[:8]}"
            os.replace(target, old)
            try:
                os.replace(staging, target)
            except OSError:
                os.replace(old, target)
                raise
            fsync_dir(target.parent)
            try:
                shutil.rmtree(old)
            except OSError as e:
                logger.warning(f"Could not remove replaced data at {old}: {e}")
        else:
            os.replace(staging, target)
            fsync_dir(target.parent)

    # ------------------------------------------------------------------
    # Info
    # ------------------------------------------------------------------

    def data_path_info(self, tenant_id: str) -> dict[str, Any]:
        info = self.registry.get(tenant_id)
        data_dir = self.registry.data_dir(info)
        attachments = AttachmentCipher(data_dir / ATTACHMENTS_DIR)
        names = attachments.list_names()
        db_path = data_dir / DB_FILE
        return {
            "data_dir": str(data_dir),
            "default_dir": str(self.registry.default_dir(tenant_id)),
            "is_custom": not self.registry.is_default_location(info),
            "exists": data_dir.is_dir(),
            "db_size": db_path.stat().st_size if db_path.is_file() else 0,
            "attachment_count": len(names),
            "attachments_size": dir_size(data_dir / ATTACHMENTS_DIR),
        }
