"""
Backup and restore for GestVault Companion.

Handles:
- Zip archives of one tenant with a checksummed manifest
- Relocating tenant data between the default and a custom folder
- End-to-end sealing of archives sent to the cloud
"""

from .packager import BackupPackager
from .relocate import DataRelocator

__all__ = ["BackupPackager", "DataRelocator"]
