"""
Tenant (empresa) index.

The index lives outside every vault so the company list can be shown before
anything is unlocked. Layout of ``tenants.json``::

    {
      "tenants": [{"id", "name", "data_path", "created_at"}],
      "last_tenant_id": "..."
    }

``data_path`` is null for the default location ``{tenants_dir}/{id}``.
"""

import json
import uuid
import shutil
import logging
from pathlib import Path
from typing import Any, Optional
from datetime import datetime, timezone
from dataclasses import dataclass, asdict

from errors import TenantNotFound
from fileutil import atomic_write_text

logger = logging.getLogger(__name__)


@dataclass
class TenantInfo:
    """One company as recorded in the index."""
    id: str
    name: str
    data_path: Optional[str] = None
    created_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TenantInfo":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            data_path=data.get("data_path"),
            created_at=data.get("created_at", ""),
        )


class TenantRegistry:
    """Reads and writes the tenant index file."""

    def __init__(self, index_path: Path, default_root: Path):
        """
        Args:
            index_path: Path of the JSON index file
            default_root: Parent of tenant directories that use the default location
        """
        self.index_path = Path(index_path)
        self.default_root = Path(default_root)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> dict[str, Any]:
        if not self.index_path.exists():
            return {"tenants": [], "last_tenant_id": None}
        try:
            data = json.loads(self.index_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.error(f"Tenant index unreadable, treating as empty: {e}")
            return {"tenants": [], "last_tenant_id": None}
        data.setdefault("tenants", [])
        data.setdefault("last_tenant_id", None)
        return data

    def _save(self, data: dict[str, Any]) -> None:
        atomic_write_text(self.index_path, json.dumps(data, indent=2, ensure_ascii=False))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_tenants(self) -> list[TenantInfo]:
        return [TenantInfo.from_dict(t) for t in self._load()["tenants"]]

    def get(self, tenant_id: str) -> TenantInfo:
        for info in self.list_tenants():
            if info.id == tenant_id:
                return info
        raise TenantNotFound()

    def exists(self, tenant_id: str) -> bool:
        return any(info.id == tenant_id for info in self.list_tenants())

    @property
    def last_tenant_id(self) -> Optional[str]:
        return self._load()["last_tenant_id"]

    def default_dir(self, tenant_id: str) -> Path:
        return self.default_root / tenant_id

    def data_dir(self, info: TenantInfo) -> Path:
        """Directory holding this tenant's db.enc, salt and attachments."""
        if info.data_path:
            return Path(info.data_path)
        return self.default_dir(info.id)

    def is_default_location(self, info: TenantInfo) -> bool:
        return not info.data_path

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add(self, name: str, data_path: Optional[str] = None) -> TenantInfo:
        """Register a new company with a fresh id. Directories are created by the vault."""
        info = TenantInfo(
            id=str(uuid.uuid4()),
            name=name.strip() or "My Company",
            data_path=str(data_path) if data_path else None,
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        self.register(info)
        return info

    def register(self, info: TenantInfo) -> None:
        """Insert or replace an entry and make it the last used one."""
        data = self._load()
        data["tenants"] = [t for t in data["tenants"] if t["id"] != info.id]
        data["tenants"].append(info.to_dict())
        data["last_tenant_id"] = info.id
        self._save(data)
        logger.info(f"Tenant registered: {info.id}")

    def rename(self, tenant_id: str, name: str) -> TenantInfo:
        data = self._load()
        for entry in data["tenants"]:
            if entry["id"] == tenant_id:
                entry["name"] = name.strip()
                self._save(data)
                return TenantInfo.from_dict(entry)
        raise TenantNotFound()

    def update_data_path(self, tenant_id: str, data_path: Optional[str]) -> TenantInfo:
        data = self._load()
        for entry in data["tenants"]:
            if entry["id"] == tenant_id:
                entry["data_path"] = str(data_path) if data_path else None
                self._save(data)
                return TenantInfo.from_dict(entry)
        raise TenantNotFound()

    def set_last_used(self, tenant_id: str) -> None:
        data = self._load()
        if not any(t["id"] == tenant_id for t in data["tenants"]):
            raise TenantNotFound()
        data["last_tenant_id"] = tenant_id
        self._save(data)

    def remove(self, tenant_id: str, delete_data: bool = True) -> None:
        """
        Drop a company from the index.

        Its directory tree is deleted only when it lives under the default
        root; custom locations (external volumes) are left untouched.
        """
        info = self.get(tenant_id)
        if delete_data and self.is_default_location(info):
            data_dir = self.data_dir(info)
            if data_dir.exists():
                shutil.rmtree(data_dir)
                logger.info(f"Deleted data directory for tenant {tenant_id}")

        data = self._load()
        data["tenants"] = [t for t in data["tenants"] if t["id"] != tenant_id]
        if data["last_tenant_id"] == tenant_id:
            data["last_tenant_id"] = data["tenants"][0]["id"] if data["tenants"] else None
        self._save(data)
