"""
Tenant (empresa) management for GestVault Companion.

Provides:
- Registry of companies, readable while everything is locked
- Vault lifecycle: create, unlock, lock and password change
- Sessions holding the in-memory database of the unlocked company
"""

from .registry import TenantInfo, TenantRegistry
from .session import DatabaseHandle, Session
from .vault import VaultManager, VaultState

__all__ = ["TenantInfo", "TenantRegistry", "DatabaseHandle", "Session", "VaultManager", "VaultState"]
