"""
Cloud backup integration for GestVault Companion.

Handles:
- REST client for the backup service (list, upload, download, delete)
- Device linking and stored account credentials
- Transfer progress streams and cancellation
"""

from .client import CloudSyncClient, RemoteBackup
from .account import CloudAccount
from .progress import CancelToken, ProgressReporter, ProgressStream
from .deep_link import DeepLinkQueue, parse_deep_link

__all__ = [
    "CloudSyncClient",
    "RemoteBackup",
    "CloudAccount",
    "CancelToken",
    "ProgressReporter",
    "ProgressStream",
    "DeepLinkQueue",
    "parse_deep_link",
]
